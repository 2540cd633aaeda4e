from __future__ import annotations

import json
from datetime import datetime, timezone

import pydantic
import pytest

from gradeline import model


def outcome(name, tier, status):
    return model.TestOutcome(
        test_name=name,
        tier=tier,
        status=status,
        short_result=status,
    )


def make_collection(outcomes):
    return model.TestOutcomeCollection.from_outcomes(
        submission_id="s1",
        test_setup_id="t1",
        attempt_number=2,
        outcomes=outcomes,
        runner_version="r/1",
        execution_time_ms=10,
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


def test_counts_derived_from_outcomes():
    c = make_collection(
        [
            outcome("a", "public", "pass"),
            outcome("b", "public", "fail"),
            outcome("c", "secret", "pass"),
            outcome("d", "release", "timeout"),
            outcome("e", "student", "error"),
        ]
    )
    assert (c.total_tests, c.pass_count, c.fail_count, c.error_count, c.timeout_count) == (5, 2, 1, 1, 1)


def test_restricted_to_recomputes_counts():
    c = make_collection(
        [
            outcome("a", "public", "pass"),
            outcome("c", "secret", "pass"),
            outcome("d", "release", "fail"),
        ]
    )
    visible = c.restricted_to(["public", "student"])
    assert [o.test_name for o in visible.outcomes] == ["a"]
    assert (visible.total_tests, visible.pass_count, visible.fail_count) == (1, 1, 0)
    # original untouched
    assert c.total_tests == 3


def test_wire_format_uses_camel_case_and_id_aliases():
    data = json.loads(make_collection([outcome("a", "public", "pass")]).to_json())
    assert data["submissionID"] == "s1"
    assert data["testSetupID"] == "t1"
    assert data["buildStatus"] == "passed"
    assert data["outcomes"][0]["shortResult"] == "pass"
    assert data["outcomes"][0]["isFirstPassSuccess"] is False


def test_failed_build_cannot_carry_outcomes():
    with pytest.raises(pydantic.ValidationError):
        model.TestOutcomeCollection(
            submission_id="s",
            test_setup_id="t",
            build_status="failed",
            outcomes=[outcome("a", "public", "pass")],
            runner_version="r",
            timestamp=datetime.now(timezone.utc),
        )


def test_passed_build_needs_outcomes():
    with pytest.raises(pydantic.ValidationError):
        model.TestOutcomeCollection(
            submission_id="s",
            test_setup_id="t",
            build_status="passed",
            outcomes=[],
            runner_version="r",
            timestamp=datetime.now(timezone.utc),
        )
    skipped = model.TestOutcomeCollection(
        submission_id="s",
        test_setup_id="t",
        build_status="skipped",
        runner_version="r",
        timestamp=datetime.now(timezone.utc),
    )
    assert skipped.outcomes == []


def test_build_status_derived_from_outcomes():
    assert make_collection([]).build_status == model.BuildStatus.FAILED
    assert make_collection([outcome("a", "public", "fail")]).build_status == model.BuildStatus.PASSED


def test_suite_entry_needs_exactly_one_target():
    assert model.TestSuiteEntry(script="check.sh").target == "check.sh"
    with pytest.raises(pydantic.ValidationError):
        model.TestSuiteEntry()
    with pytest.raises(pydantic.ValidationError):
        model.TestSuiteEntry(script="a.sh", module="b")


def test_manifest_from_camel_case():
    m = model.Manifest.model_validate(
        {
            "schemaVersion": 1,
            "requiredFiles": ["a.py"],
            "testSuites": [{"tier": "secret", "module": "test_a"}],
            "limits": {"timeLimitSeconds": 3, "memoryLimitMb": 256},
        }
    )
    assert m.is_supported
    assert m.grading_mode == model.GradingMode.WORKER
    assert m.test_suites[0].tier == model.TestTier.SECRET
    assert m.limits.memory_limit_mb == 256
    assert not model.Manifest(schema_version=2).is_supported


def test_job_round_trip_through_json():
    job = model.Job(
        submission_id="s",
        test_setup_id="t",
        attempt_number=1,
        submission_url="http://h/s",
        test_setup_url="http://h/t",
        manifest=model.Manifest(schema_version=1),
    )
    data = json.loads(job.to_json())
    assert {"submissionID", "testSetupID", "submissionURL", "testSetupURL"} <= set(data)
    assert model.Job.model_validate_json(job.to_json()) == job
