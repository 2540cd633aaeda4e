# agent/executor.py
from __future__ import annotations

import json
import shutil
import tempfile
import time
import zipfile
from pathlib import Path, PurePosixPath
from typing import Callable, Optional

import pydantic

from gradeline.errors import InfrastructureError
from gradeline.model import (
    BuildStatus,
    Job,
    RunnerResult,
    TestOutcome,
    TestOutcomeCollection,
    TestStatus,
    TestSuiteEntry,
)
from gradeline.runner import ScriptOutput, run_script

from .api_client import APIClient

RUNNER_VERSION = "gradeline-runner/1.0"

# Scripts in the test-setup bundle that run a `module` suite entry.
MODULE_RUNNERS = ("run_tests.py", "run_tests.sh")

ScriptRunner = Callable[..., ScriptOutput]


def _safe_extract(archive: Path, dest: Path) -> None:
    """
    Extract a zip into `dest`, refusing members that would land outside it.

    Raises:
        InfrastructureError: If the archive is unreadable or contains an
            absolute or `..` path
    """
    dest = dest.resolve()
    try:
        with zipfile.ZipFile(archive) as zf:
            for member in zf.infolist():
                target = (dest / member.filename).resolve()
                if target != dest and dest not in target.parents:
                    raise InfrastructureError(
                        "archive member escapes extraction directory",
                        {"archive": archive.name, "member": member.filename},
                    )
            zf.extractall(dest)
    except zipfile.BadZipFile as e:
        raise InfrastructureError(f"not a zip archive: {archive.name}", {"error": str(e)})


def _place_submission(job: Job, downloaded: Path, work_dir: Path) -> None:
    """Raw single-file submissions keep their filename; everything else is a zip."""
    if job.submission_filename:
        name = PurePosixPath(job.submission_filename).name
        if not name or name in (".", ".."):
            raise InfrastructureError("invalid submission filename", {"filename": job.submission_filename})
        shutil.copyfile(downloaded, work_dir / name)
    else:
        _safe_extract(downloaded, work_dir)


def _missing_required(required_files: list[str], work_dir: Path) -> list[str]:
    return [f for f in required_files if not (work_dir / f).exists()]


def _suite_invocation(entry: TestSuiteEntry, work_dir: Path) -> tuple[Path, list[str]]:
    """
    Script and arguments for one suite.

    Raises:
        InfrastructureError: If the script (or module runner) is not in the bundle
    """
    if entry.script:
        script = work_dir / entry.script
        if not script.is_file():
            raise InfrastructureError("test script not found", {"script": entry.script})
        return script, []

    for name in MODULE_RUNNERS:
        runner = work_dir / name
        if runner.is_file():
            return runner, [entry.module or ""]
    raise InfrastructureError(
        "no module runner in test setup",
        {"module": entry.module, "looked_for": ", ".join(MODULE_RUNNERS)},
    )


def parse_runner_result(stdout: str) -> Optional[RunnerResult]:
    """
    Decode a RunnerResult payload from script stdout.

    The payload is either the whole of stdout or its last non-empty line.
    Returns None when neither decodes.
    """
    candidates = [stdout.strip()]
    lines = [line.strip() for line in stdout.splitlines() if line.strip()]
    if lines:
        candidates.append(lines[-1])
    for text in candidates:
        if not text.startswith("{"):
            continue
        try:
            return RunnerResult.model_validate_json(text)
        except pydantic.ValidationError:
            continue
    return None


def _short_result(stdout: str, status: TestStatus) -> tuple[str, Optional[float]]:
    """Last stdout line, or the shortResult/score of a JSON last line."""
    lines = [line.strip() for line in stdout.splitlines() if line.strip()]
    if not lines:
        return status.default_short_result, None
    last = lines[-1]
    try:
        data = json.loads(last)
    except ValueError:
        return last, None
    if not isinstance(data, dict):
        return last, None
    score = data.get("score")
    return data.get("shortResult") or status.default_short_result, score if isinstance(score, (int, float)) else None


def _suite_name(entry: TestSuiteEntry) -> str:
    name = PurePosixPath(entry.target).name
    return name.rsplit(".", 1)[0] if "." in name else name


def interpret_output(
    entry: TestSuiteEntry,
    output: ScriptOutput,
    attempt_number: int,
) -> RunnerResult | list[TestOutcome]:
    """
    Turn one script run into outcomes.

    Returns:
        The decoded RunnerResult when the script printed one (the caller
        converts it), otherwise a single synthetic outcome for the suite

    Raises:
        InfrastructureError: Non-zero exit without a payload
    """
    first_attempt = attempt_number == 1
    long_result = output.stderr_text.strip() or None

    if output.timed_out:
        return [
            TestOutcome(
                test_name=_suite_name(entry),
                tier=entry.tier,
                status=TestStatus.TIMEOUT,
                short_result=TestStatus.TIMEOUT.default_short_result,
                long_result=long_result,
                execution_time_ms=output.execution_time_ms,
                attempt_number=attempt_number,
            )
        ]

    payload = parse_runner_result(output.stdout_text)
    if payload is not None:
        return payload

    if output.exit_code != 0:
        raise InfrastructureError(
            f"test script exited with code {output.exit_code}",
            {"suite": entry.target, "stderr": (long_result or "")[:2000]},
        )

    short, score = _short_result(output.stdout_text, TestStatus.PASS)
    return [
        TestOutcome(
            test_name=_suite_name(entry),
            tier=entry.tier,
            status=TestStatus.PASS,
            short_result=short,
            long_result=long_result,
            execution_time_ms=output.execution_time_ms,
            score=score,
            attempt_number=attempt_number,
            is_first_pass_success=first_attempt,
        )
    ]


def _from_payload(payload: RunnerResult, entry: TestSuiteEntry, attempt_number: int) -> list[TestOutcome]:
    return [
        TestOutcome(
            test_name=o.test_name,
            test_class=o.test_class,
            tier=o.tier or entry.tier,
            status=o.status,
            short_result=o.short_result or o.status.default_short_result,
            long_result=o.long_result,
            execution_time_ms=o.execution_time_ms,
            memory_usage_bytes=o.memory_usage_bytes,
            score=o.score,
            attempt_number=attempt_number,
            is_first_pass_success=attempt_number == 1 and o.status == TestStatus.PASS,
        )
        for o in payload.outcomes
    ]


def execute_job(
    job: Job,
    api_client: APIClient,
    work_root: Path,
    *,
    sandbox: bool = False,
    runner: ScriptRunner = run_script,
) -> TestOutcomeCollection:
    """
    Grade one claimed job.

    Args:
        job: Job returned by a successful claim
        api_client: Client used to download the artifacts
        work_root: Parent for the per-job scratch directory (removed afterwards)
        sandbox: Run test scripts isolated from the network
        runner: Script runner (run_script unless a test substitutes one)

    Returns:
        TestOutcomeCollection ready to post

    Raises:
        InfrastructureError: Anything that prevents grading (bad download,
            missing script, crashed script). The job must not be reported.
    """
    work_root = Path(work_root)
    work_root.mkdir(parents=True, exist_ok=True)
    scratch = Path(tempfile.mkdtemp(prefix=f"job-{job.submission_id}-", dir=work_root))
    start = time.monotonic()

    def collection(**kwargs) -> TestOutcomeCollection:
        return TestOutcomeCollection.from_outcomes(
            submission_id=job.submission_id,
            test_setup_id=job.test_setup_id,
            attempt_number=job.attempt_number,
            runner_version=RUNNER_VERSION,
            execution_time_ms=int((time.monotonic() - start) * 1000),
            **kwargs,
        )

    try:
        work_dir = scratch / "work"
        work_dir.mkdir()

        setup_zip = api_client.download(job.test_setup_url, scratch / "testsetup.zip")
        _safe_extract(setup_zip, work_dir)
        submission = api_client.download(job.submission_url, scratch / "submission.bin")
        _place_submission(job, submission, work_dir)

        manifest = job.manifest
        missing = _missing_required(manifest.required_files, work_dir)
        if missing:
            return collection(
                outcomes=[],
                build_status=BuildStatus.FAILED,
                compiler_output="Missing required files: " + ", ".join(missing),
            )

        outcomes: list[TestOutcome] = []
        for entry in manifest.test_suites:
            script, args = _suite_invocation(entry, work_dir)
            output = runner(
                script,
                work_dir,
                manifest.limits.time_limit_seconds,
                args=args,
                sandbox=sandbox,
                memory_limit_mb=manifest.limits.memory_limit_mb,
            )
            result = interpret_output(entry, output, job.attempt_number)
            if isinstance(result, RunnerResult):
                if result.build_status == BuildStatus.FAILED:
                    return collection(
                        outcomes=[],
                        build_status=BuildStatus.FAILED,
                        compiler_output=result.compiler_output,
                    )
                outcomes.extend(_from_payload(result, entry, job.attempt_number))
            else:
                outcomes.extend(result)

        return collection(outcomes=outcomes)
    except OSError as e:
        raise InfrastructureError(f"job workspace error: {e}", {"submission": job.submission_id})
    finally:
        shutil.rmtree(scratch, ignore_errors=True)
