# model.py
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

SUPPORTED_SCHEMA_VERSION = 1


class WireModel(BaseModel):
    """Base for everything that crosses the worker <-> server boundary (camelCase JSON)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class TestTier(str, Enum):
    PUBLIC = "public"    # shown to the student immediately
    RELEASE = "release"  # hidden until release
    SECRET = "secret"    # never shown to the student
    STUDENT = "student"  # student-written tests


class TestStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"
    TIMEOUT = "timeout"

    @property
    def default_short_result(self) -> str:
        return {
            TestStatus.PASS: "passed",
            TestStatus.FAIL: "failed",
            TestStatus.ERROR: "error",
            TestStatus.TIMEOUT: "timed out",
        }[self]


class BuildStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class GradingMode(str, Enum):
    BROWSER = "browser"
    WORKER = "worker"


# ----------------------------------------------------------------------
# Manifest
# ----------------------------------------------------------------------

class TestSuiteEntry(WireModel):
    """One suite of the manifest: a pytest module / notebook, or a plain script."""
    tier: TestTier = TestTier.PUBLIC
    module: Optional[str] = None
    script: Optional[str] = None

    @model_validator(mode="after")
    def _exactly_one_target(self) -> "TestSuiteEntry":
        if bool(self.module) == bool(self.script):
            raise ValueError("test suite needs exactly one of 'module' or 'script'")
        return self

    @property
    def target(self) -> str:
        return self.script or self.module or ""


class ResourceLimits(WireModel):
    time_limit_seconds: int = Field(default=10, gt=0)
    memory_limit_mb: Optional[int] = Field(default=None, gt=0)


class ManifestOptions(WireModel):
    allow_partial_credit: bool = False


class Manifest(WireModel):
    schema_version: int
    grading_mode: GradingMode = GradingMode.WORKER
    required_files: list[str] = Field(default_factory=list)
    test_suites: list[TestSuiteEntry] = Field(default_factory=list)
    limits: ResourceLimits = Field(default_factory=ResourceLimits)
    options: ManifestOptions = Field(default_factory=ManifestOptions)

    @property
    def is_supported(self) -> bool:
        return self.schema_version == SUPPORTED_SCHEMA_VERSION


# ----------------------------------------------------------------------
# Job (returned by a successful claim)
# ----------------------------------------------------------------------

class Job(WireModel):
    submission_id: str = Field(alias="submissionID")
    test_setup_id: str = Field(alias="testSetupID")
    attempt_number: int = Field(default=1, ge=1)
    submission_url: str = Field(alias="submissionURL")
    test_setup_url: str = Field(alias="testSetupURL")
    manifest: Manifest
    # Set when the submission is a raw file rather than a zip.
    submission_filename: Optional[str] = None


# ----------------------------------------------------------------------
# Outcomes
# ----------------------------------------------------------------------

class TestOutcome(WireModel):
    test_name: str
    test_class: Optional[str] = None
    tier: TestTier = TestTier.PUBLIC
    status: TestStatus
    short_result: str
    long_result: Optional[str] = None
    execution_time_ms: int = 0
    memory_usage_bytes: Optional[int] = None
    score: Optional[float] = None
    attempt_number: int = 1
    is_first_pass_success: bool = False


class TestOutcomeCollection(WireModel):
    submission_id: str = Field(alias="submissionID")
    test_setup_id: str = Field(alias="testSetupID")
    attempt_number: int = 1
    build_status: BuildStatus
    compiler_output: Optional[str] = None
    outcomes: list[TestOutcome] = Field(default_factory=list)
    total_tests: int = 0
    pass_count: int = 0
    fail_count: int = 0
    error_count: int = 0
    timeout_count: int = 0
    execution_time_ms: int = 0
    runner_version: str
    timestamp: datetime

    @model_validator(mode="after")
    def _outcomes_match_build_status(self) -> "TestOutcomeCollection":
        # A failed build has no outcomes and a passed one has at least one.
        # Skipped builds carry whatever the runner reported.
        if self.build_status == BuildStatus.FAILED and self.outcomes:
            raise ValueError("a failed build cannot carry test outcomes")
        if self.build_status == BuildStatus.PASSED and not self.outcomes:
            raise ValueError("a passed build must carry at least one test outcome")
        return self

    @classmethod
    def from_outcomes(
        cls,
        *,
        submission_id: str,
        test_setup_id: str,
        attempt_number: int,
        outcomes: list[TestOutcome],
        runner_version: str,
        execution_time_ms: int,
        build_status: BuildStatus | None = None,
        compiler_output: str | None = None,
        timestamp: datetime | None = None,
    ) -> "TestOutcomeCollection":
        """
        Build a collection, deriving the aggregate counts from the outcomes.

        Without an explicit build_status, a run that produced no outcomes is
        a failed build and anything else passed.
        """
        if build_status is None:
            build_status = BuildStatus.PASSED if outcomes else BuildStatus.FAILED
        return cls(
            submission_id=submission_id,
            test_setup_id=test_setup_id,
            attempt_number=attempt_number,
            build_status=build_status,
            compiler_output=compiler_output,
            outcomes=outcomes,
            execution_time_ms=execution_time_ms,
            runner_version=runner_version,
            timestamp=timestamp or datetime.now(timezone.utc),
            **_counts(outcomes),
        )

    def restricted_to(self, tiers: Iterable[TestTier | str]) -> "TestOutcomeCollection":
        """Copy holding only outcomes of the given tiers, with counts recomputed."""
        wanted = {TestTier(t) for t in tiers}
        kept = [o for o in self.outcomes if o.tier in wanted]
        return self.model_copy(update={"outcomes": kept, **_counts(kept)})


def _counts(outcomes: list[TestOutcome]) -> dict[str, int]:
    return {
        "total_tests": len(outcomes),
        "pass_count": sum(1 for o in outcomes if o.status == TestStatus.PASS),
        "fail_count": sum(1 for o in outcomes if o.status == TestStatus.FAIL),
        "error_count": sum(1 for o in outcomes if o.status == TestStatus.ERROR),
        "timeout_count": sum(1 for o in outcomes if o.status == TestStatus.TIMEOUT),
    }


# ----------------------------------------------------------------------
# Grading script payload (stdout of run_tests.*)
# ----------------------------------------------------------------------

class RunnerOutcome(WireModel):
    test_name: str
    test_class: Optional[str] = None
    tier: Optional[TestTier] = None
    status: TestStatus
    short_result: str = ""
    long_result: Optional[str] = None
    execution_time_ms: int = 0
    memory_usage_bytes: Optional[int] = None
    score: Optional[float] = None


class RunnerResult(WireModel):
    runner_version: str
    build_status: BuildStatus
    compiler_output: Optional[str] = None
    execution_time_ms: int = 0
    outcomes: list[RunnerOutcome] = Field(default_factory=list)
