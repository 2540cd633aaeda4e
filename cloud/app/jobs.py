from __future__ import annotations

from typing import Optional

import pydantic

from gradeline.errors import InfrastructureError
from gradeline.model import SUPPORTED_SCHEMA_VERSION, Job, Manifest

from .models import Submission, TestSetup


def submission_download_url(base_url: str, submission_id: str) -> str:
    return f"{base_url.rstrip('/')}/api/v1/worker/submissions/{submission_id}/download"


def testsetup_download_url(base_url: str, test_setup_id: str) -> str:
    return f"{base_url.rstrip('/')}/api/v1/worker/testsetups/{test_setup_id}/download"


def build_job(submission: Submission, setup: Optional[TestSetup], base_url: str) -> Job:
    """
    Job descriptor for a freshly claimed submission.

    Raises:
        InfrastructureError: Setup missing, manifest undecodable or of an
            unsupported schema version
    """
    if setup is None:
        raise InfrastructureError(
            "test setup not found for claimed submission",
            {"submission": submission.id, "test_setup": submission.test_setup_id},
        )

    try:
        manifest = Manifest.model_validate(setup.manifest)
    except pydantic.ValidationError as e:
        raise InfrastructureError("stored manifest cannot be decoded", {"test_setup": setup.id, "error": str(e)})

    if manifest.schema_version != SUPPORTED_SCHEMA_VERSION:
        raise InfrastructureError(
            f"unsupported manifest schemaVersion {manifest.schema_version}",
            {"test_setup": setup.id},
        )

    return Job(
        submission_id=submission.id,
        test_setup_id=setup.id,
        attempt_number=submission.attempt_number,
        submission_url=submission_download_url(base_url, submission.id),
        test_setup_url=testsetup_download_url(base_url, setup.id),
        manifest=manifest,
        submission_filename=submission.filename,
    )
