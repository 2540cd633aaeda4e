"""
Submission dispatch state machine.

    pending -> assigned -> complete
    browser-complete  (preview graded in the browser; a linked pending
                       re-run is created next to it)

Every status change is a single conditional UPDATE, so two workers can
never both move the same row out of `pending`. Each operation commits its
own work on the session it is given.
"""
from __future__ import annotations

import logging
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from gradeline.model import TestOutcomeCollection
from gradeline.notebook import merge_for_grading

from .blobstore import LocalBlobStore
from .models import Result, Submission, SubmissionStatus, TestSetup, now_utc

logger = logging.getLogger(__name__)

# Lost-race retries per claim before reporting nothing available.
CLAIM_ATTEMPTS = 5

SOURCE_WORKER = "worker"
SOURCE_BROWSER = "browser"


async def next_attempt_number(session: AsyncSession, test_setup_id: str, user_id: Optional[str]) -> int:
    """1 + prior submissions by this user for this setup, ignoring worker re-runs."""
    q = sa.select(sa.func.count()).select_from(Submission).where(
        Submission.test_setup_id == test_setup_id,
        Submission.user_id == user_id,
        Submission.preview_of_id.is_(None),
    )
    return int((await session.execute(q)).scalar_one()) + 1


async def enqueue(
    session: AsyncSession,
    test_setup_id: str,
    artifact_path: str,
    *,
    user_id: Optional[str] = None,
    filename: Optional[str] = None,
    status: str = SubmissionStatus.PENDING,
    preview_of_id: Optional[str] = None,
) -> Submission:
    """Create a submission. A re-run shares the attempt number of the preview it re-grades."""
    if preview_of_id is not None:
        preview = await session.get(Submission, preview_of_id)
        attempt = preview.attempt_number if preview else 1
    else:
        attempt = await next_attempt_number(session, test_setup_id, user_id)

    submission = Submission(
        test_setup_id=test_setup_id,
        artifact_path=artifact_path,
        user_id=user_id,
        filename=filename,
        status=status,
        attempt_number=attempt,
        preview_of_id=preview_of_id,
        submitted_at=now_utc(),
    )
    session.add(submission)
    await session.commit()
    return submission


async def _pending_count(session: AsyncSession) -> int:
    q = sa.select(sa.func.count()).select_from(Submission).where(Submission.status == SubmissionStatus.PENDING)
    return int((await session.execute(q)).scalar_one())


async def claim_next(session: AsyncSession, worker_id: str, *, attempts: int = CLAIM_ATTEMPTS) -> Optional[Submission]:
    """
    Atomically move the oldest pending submission to `assigned`.

    Returns:
        The claimed submission, or None when nothing is pending (or every
        retry lost its race to another claimer)
    """
    # Aliased so the subquery is not correlated to the UPDATE target.
    candidate = aliased(Submission)
    oldest = (
        sa.select(candidate.id)
        .where(candidate.status == SubmissionStatus.PENDING)
        .order_by(candidate.submitted_at, candidate.id)
        .limit(1)
        .scalar_subquery()
    )
    stmt = (
        sa.update(Submission)
        .where(Submission.id == oldest, Submission.status == SubmissionStatus.PENDING)
        .values(status=SubmissionStatus.ASSIGNED, worker_id=worker_id, assigned_at=now_utc())
        .returning(Submission.id)
        .execution_options(synchronize_session=False)
    )

    for attempt in range(attempts):
        claimed_id = (await session.execute(stmt)).scalar_one_or_none()
        await session.commit()
        if claimed_id is not None:
            logger.info("submission %s assigned to %s", claimed_id, worker_id)
            return await session.get(Submission, claimed_id, populate_existing=True)

        remaining = await _pending_count(session)
        await session.commit()
        if remaining == 0:
            return None
        logger.debug("claim race lost by %s (attempt %d), %d pending", worker_id, attempt + 1, remaining)
    return None


async def _store_result(session: AsyncSession, collection: TestOutcomeCollection, source: str) -> Result:
    result = Result(
        submission_id=collection.submission_id,
        source=source,
        collection_json=collection.to_json(),
        received_at=now_utc(),
    )
    session.add(result)
    await session.flush()
    return result


async def report_result(
    session: AsyncSession,
    collection: TestOutcomeCollection,
    *,
    source: str = SOURCE_WORKER,
    worker_id: Optional[str] = None,
) -> Result:
    """
    Persist a worker report and complete its submission.

    Unknown submissions and duplicate reports are accepted: the result is
    kept and a warning logged. A failed build still completes the submission.
    """
    result = await _store_result(session, collection, source)
    now = now_utc()
    stmt = (
        sa.update(Submission)
        .where(
            Submission.id == collection.submission_id,
            Submission.status.in_([SubmissionStatus.PENDING, SubmissionStatus.ASSIGNED]),
        )
        .values(
            status=SubmissionStatus.COMPLETE,
            assigned_at=sa.func.coalesce(Submission.assigned_at, now),
            worker_id=sa.func.coalesce(Submission.worker_id, worker_id),
        )
        .returning(Submission.id, Submission.worker_id)
        .execution_options(synchronize_session=False)
    )
    row = (await session.execute(stmt)).first()
    await session.commit()

    if row is None:
        existing = await session.get(Submission, collection.submission_id, populate_existing=True)
        if existing is None:
            logger.warning("result for unknown submission %s stored", collection.submission_id)
        else:
            logger.warning(
                "duplicate result for submission %s (status %s) stored",
                collection.submission_id,
                existing.status,
            )
        return result

    assigned_to = row[1]
    if worker_id and assigned_to and assigned_to != worker_id:
        logger.warning(
            "submission %s assigned to %s but reported by %s",
            collection.submission_id,
            assigned_to,
            worker_id,
        )
    logger.info(
        "submission %s complete: build=%s %d/%d passed",
        collection.submission_id,
        collection.build_status.value,
        collection.pass_count,
        collection.total_tests,
    )
    return result


async def submit_browser_result(
    session: AsyncSession,
    blobs: LocalBlobStore,
    setup: TestSetup,
    notebook: bytes,
    collection: TestOutcomeCollection,
    user_id: Optional[str] = None,
) -> tuple[Submission, Submission]:
    """
    Record a browser-graded notebook and queue its authoritative re-run.

    The student notebook is merged with the instructor's test cells
    (fail-closed) before it is stored, so the worker never grades tests the
    student edited.

    Returns:
        (preview submission in browser-complete, pending re-run)

    Raises:
        NotebookFormatError: Either notebook is malformed
    """
    if setup.notebook_path:
        notebook = merge_for_grading(notebook, blobs.read(setup.notebook_path), fail_open=False)
    artifact = blobs.write("submissions", notebook, ".ipynb")

    preview = await enqueue(
        session,
        setup.id,
        artifact,
        user_id=user_id,
        filename="submission.ipynb",
        status=SubmissionStatus.BROWSER_COMPLETE,
    )
    scoped = collection.model_copy(
        update={
            "submission_id": preview.id,
            "test_setup_id": setup.id,
            "attempt_number": preview.attempt_number,
        }
    )
    await _store_result(session, scoped, SOURCE_BROWSER)
    await session.commit()

    rerun = await enqueue(
        session,
        setup.id,
        artifact,
        user_id=user_id,
        filename="submission.ipynb",
        preview_of_id=preview.id,
    )
    logger.info("browser result for %s stored, re-run queued as %s", preview.id, rerun.id)
    return preview, rerun


async def latest_result(
    session: AsyncSession,
    submission_id: str,
    source: str = SOURCE_WORKER,
) -> Optional[TestOutcomeCollection]:
    """
    Newest result of `source` for a submission.

    For a browser preview, worker results are looked up on its linked re-run.
    """
    ids = [submission_id]
    if source == SOURCE_WORKER:
        reruns = await session.execute(sa.select(Submission.id).where(Submission.preview_of_id == submission_id))
        ids.extend(reruns.scalars().all())

    q = (
        sa.select(Result)
        .where(Result.submission_id.in_(ids), Result.source == source)
        .order_by(Result.received_at.desc())
        .limit(1)
    )
    row = (await session.execute(q)).scalar_one_or_none()
    if row is None:
        return None
    return TestOutcomeCollection.model_validate_json(row.collection_json)
