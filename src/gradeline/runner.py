# runner.py
"""
Runs one grading script in a child process with a wall-clock limit.

stdout and stderr are captured as two separate byte streams. The child gets
its own process group so that a timeout kills everything it spawned, not
just the immediate child.
"""
from __future__ import annotations

import os
import signal
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

# Reported instead of a real exit code when the time limit fired.
TIMEOUT_EXIT_CODE = -1
# Reported when the child could not be started at all.
LAUNCH_FAILURE_EXIT_CODE = 2

# Seconds between SIGTERM and SIGKILL on timeout.
KILL_GRACE_SECONDS = 0.5

INTERPRETERS = {
    ".sh": ["/bin/sh"],
    ".bash": ["/usr/bin/env", "bash"],
    ".zsh": ["/usr/bin/env", "zsh"],
    ".py": ["/usr/bin/env", "python3"],
    ".rb": ["/usr/bin/env", "ruby"],
    ".pl": ["/usr/bin/env", "perl"],
    ".js": ["/usr/bin/env", "node"],
    ".php": ["/usr/bin/env", "php"],
}


@dataclass(frozen=True)
class ScriptOutput:
    exit_code: int
    stdout: bytes
    stderr: bytes
    execution_time_ms: int
    timed_out: bool

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")


def script_command(script: Path) -> list[str]:
    """Command line that runs `script`, picked from its extension."""
    interpreter = INTERPRETERS.get(script.suffix.lower())
    if interpreter is not None:
        return [*interpreter, str(script)]
    if os.access(script, os.X_OK):
        return [str(script)]
    # extension-less shell script
    return ["/bin/sh", str(script)]


def sandbox_prefix(work_dir: Path) -> list[str]:
    """
    Wrapper command that isolates the script.

    Linux: private user + network namespace (no outbound network, no real
    privileges). macOS: sandbox-exec profile that only allows writes inside
    the working directory. Elsewhere: no wrapper.
    """
    if sys.platform.startswith("linux"):
        return ["/usr/bin/unshare", "--user", "--net", "--map-root-user"]
    if sys.platform == "darwin":
        return ["/usr/bin/sandbox-exec", "-p", _macos_profile(work_dir)]
    return []


def _macos_profile(work_dir: Path) -> str:
    wd = os.path.realpath(work_dir)
    return f"""(version 1)
(deny default)
(allow file-read* (subpath "/"))
(allow file-write*
    (subpath "{wd}")
    (literal "/dev/null")
    (literal "/dev/stdout")
    (literal "/dev/stderr"))
(allow process-exec process-fork)
(allow signal)
(allow sysctl-read)
(allow mach-lookup)
(deny network* (remote ip))
"""


def _limit_memory(memory_limit_mb: int):
    def apply() -> None:
        import resource

        limit = memory_limit_mb * 1024 * 1024
        resource.setrlimit(resource.RLIMIT_AS, (limit, limit))

    return apply


def _kill_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def run_script(
    script: str | Path,
    work_dir: str | Path,
    time_limit_seconds: float,
    *,
    args: Sequence[str] = (),
    sandbox: bool = False,
    memory_limit_mb: Optional[int] = None,
    env: Optional[dict[str, str]] = None,
) -> ScriptOutput:
    """
    Run `script` inside `work_dir`, killing it after `time_limit_seconds`.

    Returns:
        ScriptOutput. A timed-out run has timed_out=True and
        exit_code=TIMEOUT_EXIT_CODE; a run that could not be launched has
        exit_code=LAUNCH_FAILURE_EXIT_CODE and the reason on stderr.
    """
    script = Path(script)
    work_dir = Path(work_dir)

    cmd = script_command(script) + list(args)
    if sandbox:
        cmd = sandbox_prefix(work_dir) + cmd

    start = time.monotonic()
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=str(work_dir),
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,  # own process group -> killpg reaches grandchildren
            preexec_fn=_limit_memory(memory_limit_mb) if memory_limit_mb else None,
        )
    except OSError as e:
        return ScriptOutput(
            exit_code=LAUNCH_FAILURE_EXIT_CODE,
            stdout=b"",
            stderr=f"Failed to launch script {script}: {e}".encode("utf-8"),
            execution_time_ms=_elapsed_ms(start),
            timed_out=False,
        )

    try:
        stdout, stderr = proc.communicate(timeout=time_limit_seconds)
    except subprocess.TimeoutExpired:
        _kill_group(proc, signal.SIGTERM)
        try:
            stdout, stderr = proc.communicate(timeout=KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            _kill_group(proc, signal.SIGKILL)
            try:
                stdout, stderr = proc.communicate(timeout=KILL_GRACE_SECONDS)
            except subprocess.TimeoutExpired:
                # A descendant left the group and still holds our pipes.
                proc.kill()
                proc.wait()
                stdout, stderr = b"", b""
        return ScriptOutput(
            exit_code=TIMEOUT_EXIT_CODE,
            stdout=stdout or b"",
            stderr=stderr or b"",
            execution_time_ms=_elapsed_ms(start),
            timed_out=True,
        )

    return ScriptOutput(
        exit_code=proc.returncode,
        stdout=stdout or b"",
        stderr=stderr or b"",
        execution_time_ms=_elapsed_ms(start),
        timed_out=False,
    )
