from __future__ import annotations

import os
import sys
import time

import pytest

from gradeline.runner import (
    LAUNCH_FAILURE_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    run_script,
    script_command,
    sandbox_prefix,
)


def write(path, text):
    path.write_text(text)
    return path


def test_captures_streams_separately(tmp_path):
    script = write(tmp_path / "t.sh", "echo out-1\necho err-1 >&2\necho out-2\nexit 3\n")
    result = run_script(script, tmp_path, 5)
    assert result.exit_code == 3
    assert not result.timed_out
    assert result.stdout == b"out-1\nout-2\n"
    assert result.stderr == b"err-1\n"


def test_runs_in_work_dir(tmp_path):
    (tmp_path / "data.txt").write_text("hello")
    script = write(tmp_path / "t.sh", "cat data.txt\n")
    assert run_script(script, tmp_path, 5).stdout_text == "hello"


def test_timeout_returns_near_limit(tmp_path):
    script = write(tmp_path / "slow.sh", "sleep 60\n")
    start = time.monotonic()
    result = run_script(script, tmp_path, 1)
    elapsed = time.monotonic() - start
    assert result.timed_out
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert elapsed < 5
    assert result.execution_time_ms >= 900


def test_timeout_kills_process_group(tmp_path):
    marker = tmp_path / "survived"
    script = write(
        tmp_path / "spawn.sh",
        f"(sleep 3; touch {marker}) &\nsleep 60\n",
    )
    result = run_script(script, tmp_path, 1)
    assert result.timed_out
    time.sleep(3)
    assert not marker.exists()


def test_arguments_are_passed(tmp_path):
    script = write(tmp_path / "args.sh", 'echo "$1|$2"\n')
    assert run_script(script, tmp_path, 5, args=["a", "b c"]).stdout_text == "a|b c\n"


def test_python_script_by_extension(tmp_path):
    script = write(tmp_path / "t.py", "import sys\nprint('py')\nsys.exit(0)\n")
    assert script_command(script)[-2:] == ["python3", str(script)]
    result = run_script(script, tmp_path, 10)
    assert result.exit_code == 0
    assert result.stdout_text.strip() == "py"


def test_launch_failure(tmp_path):
    missing_dir = tmp_path / "does-not-exist"
    script = write(tmp_path / "t.sh", "true\n")
    result = run_script(script, missing_dir, 5)
    assert result.exit_code == LAUNCH_FAILURE_EXIT_CODE
    assert not result.timed_out
    assert b"Failed to launch" in result.stderr


def test_executable_without_known_extension(tmp_path):
    script = write(tmp_path / "grade", "#!/bin/sh\necho direct\n")
    os.chmod(script, 0o755)
    assert script_command(script) == [str(script)]
    assert run_script(script, tmp_path, 5).stdout_text == "direct\n"


@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="linux namespaces")
def test_linux_sandbox_prefix(tmp_path):
    assert sandbox_prefix(tmp_path)[:2] == ["/usr/bin/unshare", "--user"]
    assert "--net" in sandbox_prefix(tmp_path)
