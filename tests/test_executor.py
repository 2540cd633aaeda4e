from __future__ import annotations

from pathlib import Path

import pytest

from gradeline import model
from gradeline.agent.executor import RUNNER_VERSION, execute_job, parse_runner_result
from gradeline.errors import InfrastructureError
from gradeline.runner import TIMEOUT_EXIT_CODE, ScriptOutput

from conftest import make_zip, manifest

SETUP_URL = "http://api.test/api/v1/worker/testsetups/ts-1/download"
SUBMISSION_URL = "http://api.test/api/v1/worker/submissions/sub-1/download"


class FakeDownloads:
    """Stands in for APIClient.download, serving bytes from memory."""

    def __init__(self, setup: bytes, submission: bytes):
        self.blobs = {SETUP_URL: setup, SUBMISSION_URL: submission}

    def download(self, url: str, destination: Path) -> Path:
        destination.write_bytes(self.blobs[url])
        return destination


def make_job(attempt=1, filename=None, **manifest_overrides) -> model.Job:
    return model.Job(
        submission_id="sub-1",
        test_setup_id="ts-1",
        attempt_number=attempt,
        submission_url=SUBMISSION_URL,
        test_setup_url=SETUP_URL,
        manifest=model.Manifest.model_validate(manifest(**manifest_overrides)),
        submission_filename=filename,
    )


def grade(tmp_path, setup_files, submission, job=None, **kwargs):
    if isinstance(submission, dict):
        submission = make_zip(submission)
    client = FakeDownloads(make_zip(setup_files), submission)
    return execute_job(job or make_job(), client, tmp_path / "work", **kwargs)


def test_passing_script_reports_last_line(tmp_path):
    result = grade(
        tmp_path,
        {"check.sh": "echo building\ntest -f main.py\necho all good\n"},
        {"main.py": "print('hi')\n"},
        job=make_job(requiredFiles=["main.py"]),
    )
    assert result.build_status == model.BuildStatus.PASSED
    assert result.runner_version == RUNNER_VERSION
    [o] = result.outcomes
    assert (o.test_name, o.tier, o.status, o.short_result) == ("check", model.TestTier.PUBLIC, model.TestStatus.PASS, "all good")
    assert o.is_first_pass_success
    assert (result.total_tests, result.pass_count) == (1, 1)
    assert list((tmp_path / "work").iterdir()) == []


def test_json_last_line_supplies_short_result_and_score(tmp_path):
    script = "echo noise\necho '{\"shortResult\": \"9/10\", \"score\": 0.9}'\n"
    result = grade(tmp_path, {"check.sh": script}, {"a.txt": "x"}, job=make_job(attempt=2))
    [o] = result.outcomes
    assert (o.short_result, o.score) == ("9/10", 0.9)
    assert o.attempt_number == 2
    assert not o.is_first_pass_success


def test_module_runner_payload_becomes_outcomes(tmp_path):
    runner = (
        "cat <<EOF\n"
        '{"runnerVersion": "pytest-json/1", "buildStatus": "passed", "outcomes": ['
        '{"testName": "test_a", "testClass": "$1", "status": "pass"}, '
        '{"testName": "test_b", "tier": "public", "status": "fail", "shortResult": "assert 1 == 2"}]}\n'
        "EOF\n"
    )
    job = make_job(testSuites=[{"tier": "secret", "module": "tests/test_hw.py"}])
    result = grade(tmp_path, {"run_tests.sh": runner}, {"hw.py": ""}, job=job)

    a, b = result.outcomes
    assert (a.test_name, a.test_class, a.tier, a.short_result) == ("test_a", "tests/test_hw.py", model.TestTier.SECRET, "passed")
    assert a.is_first_pass_success
    assert (b.tier, b.status, b.short_result) == (model.TestTier.PUBLIC, model.TestStatus.FAIL, "assert 1 == 2")
    assert not b.is_first_pass_success
    assert (result.total_tests, result.pass_count, result.fail_count) == (2, 1, 1)


def test_payload_build_failure_is_reported(tmp_path):
    script = "echo '{\"runnerVersion\": \"r/1\", \"buildStatus\": \"failed\", \"compilerOutput\": \"SyntaxError\"}'\n"
    result = grade(tmp_path, {"check.sh": script}, {"a.py": "def ("})
    assert result.build_status == model.BuildStatus.FAILED
    assert result.compiler_output == "SyntaxError"
    assert result.outcomes == []


def test_missing_required_files_fail_the_build(tmp_path):
    result = grade(
        tmp_path,
        {"check.sh": "echo never\n"},
        {"other.py": ""},
        job=make_job(requiredFiles=["main.py", "util.py"]),
    )
    assert result.build_status == model.BuildStatus.FAILED
    assert result.compiler_output == "Missing required files: main.py, util.py"
    assert result.total_tests == 0


def test_no_outcomes_is_a_failed_build(tmp_path):
    empty_payload = "echo '{\"runnerVersion\": \"r/1\", \"buildStatus\": \"passed\", \"outcomes\": []}'\n"
    result = grade(tmp_path, {"check.sh": empty_payload}, {"a.py": ""})
    assert result.build_status == model.BuildStatus.FAILED
    assert result.outcomes == []

    result = grade(tmp_path, {"check.sh": "true\n"}, {"a.py": ""}, job=make_job(testSuites=[]))
    assert result.build_status == model.BuildStatus.FAILED


def test_nonzero_exit_without_payload_is_infrastructure_error(tmp_path):
    with pytest.raises(InfrastructureError) as e:
        grade(tmp_path, {"check.sh": "echo broken >&2\nexit 4\n"}, {"a.py": ""})
    assert "4" in e.value.message
    assert list((tmp_path / "work").iterdir()) == []


def test_missing_script_is_infrastructure_error(tmp_path):
    with pytest.raises(InfrastructureError):
        grade(tmp_path, {"other.sh": "true\n"}, {"a.py": ""})


def test_module_without_runner_is_infrastructure_error(tmp_path):
    job = make_job(testSuites=[{"module": "tests/test_hw.py"}])
    with pytest.raises(InfrastructureError):
        grade(tmp_path, {"tests/test_hw.py": ""}, {"a.py": ""}, job=job)


def test_timeout_becomes_timeout_outcome(tmp_path):
    def timed_out(script, work_dir, limit, **kwargs):
        return ScriptOutput(exit_code=TIMEOUT_EXIT_CODE, stdout=b"", stderr=b"", execution_time_ms=int(limit * 1000), timed_out=True)

    result = grade(tmp_path, {"check.sh": "sleep 100\n"}, {"a.py": ""}, runner=timed_out)
    [o] = result.outcomes
    assert o.status == model.TestStatus.TIMEOUT
    assert o.execution_time_ms == 10_000
    assert result.timeout_count == 1


def test_limits_and_sandbox_reach_the_runner(tmp_path):
    seen = {}

    def recording(script, work_dir, limit, **kwargs):
        seen.update(kwargs, limit=limit, script=Path(script).name)
        return ScriptOutput(exit_code=0, stdout=b"ok\n", stderr=b"", execution_time_ms=1, timed_out=False)

    job = make_job(limits={"timeLimitSeconds": 7, "memoryLimitMb": 256})
    grade(tmp_path, {"check.sh": ""}, {"a.py": ""}, job=job, sandbox=True, runner=recording)
    assert seen == {"script": "check.sh", "limit": 7, "args": [], "sandbox": True, "memory_limit_mb": 256}


def test_zip_slip_submission_rejected(tmp_path):
    with pytest.raises(InfrastructureError):
        grade(tmp_path, {"check.sh": "true\n"}, {"../escape.txt": "x"})
    assert list((tmp_path / "work").iterdir()) == []
    assert not (tmp_path / "escape.txt").exists()


def test_corrupt_submission_zip_rejected(tmp_path):
    with pytest.raises(InfrastructureError):
        grade(tmp_path, {"check.sh": "true\n"}, b"definitely not a zip")


def test_raw_file_submission_keeps_its_name(tmp_path):
    result = grade(
        tmp_path,
        {"check.sh": "test -f hw.ipynb && echo found notebook\n"},
        b'{"cells": []}',
        job=make_job(filename="uploads/hw.ipynb"),
    )
    assert result.outcomes[0].short_result == "found notebook"


def test_parse_runner_result_whole_stdout_or_last_line():
    payload = '{"runnerVersion": "r", "buildStatus": "passed", "outcomes": []}'
    assert parse_runner_result(payload).runner_version == "r"
    assert parse_runner_result("log line\n" + payload + "\n").runner_version == "r"
    assert parse_runner_result("log line\n{\"shortResult\": \"x\"}") is None
    assert parse_runner_result("") is None
