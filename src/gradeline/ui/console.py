"""Console output formatting utilities for the gradeline worker."""

from __future__ import annotations

import sys
from typing import Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_worker_started(
        self,
        worker_id: str,
        api: str,
        sandbox: bool,
        backoff: tuple[float, float],
    ) -> None:
        """Print worker start information."""
        print("\nWORKER STARTED")
        print(f"Worker ID: {worker_id}")
        print(f"API: {api}")
        print(f"Sandbox: {'on' if sandbox else 'off'}")
        print(f"Idle backoff: {backoff[0]:g}s .. {backoff[1]:g}s")
        print()

    def print_job_claimed(self, submission_id: str, test_setup_id: str, attempt: int) -> None:
        """Print claim message."""
        print("\nJOB CLAIMED")
        print(f"Submission: {submission_id}")
        print(f"Test setup: {test_setup_id}")
        print(f"Attempt: {attempt}")

    def print_job_result(
        self,
        build_status: str,
        passed: int,
        total: int,
        duration: Optional[float] = None,
    ) -> None:
        """Print grading summary for one job."""
        print("\nJOB GRADED")
        print(f"Build: {build_status}")
        print(f"Tests: {passed}/{total} passed")
        if duration is not None:
            print(f"Duration: {duration:.1f}s")

    def print_job_dropped(self, submission_id: str, reason: str) -> None:
        """Print message for a job that could not be graded (not reported)."""
        print(f"\nJOB NOT REPORTED: {submission_id}", file=sys.stderr)
        if self.debug:
            print(f"Error details: {reason}", file=sys.stderr)
        else:
            print(f"Error: {reason.splitlines()[0] if reason else 'Unknown error'}", file=sys.stderr)

    def print_idle(self, delay: float) -> None:
        """Print idle poll message (debug only)."""
        self.print_debug(f"no pending submissions, next poll in {delay:.1f}s")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
