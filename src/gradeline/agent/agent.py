# agent/agent.py
from __future__ import annotations

import signal
import threading
import time
from pathlib import Path
from typing import Optional

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential_jitter,
)

from gradeline.errors import InfrastructureError
from gradeline.model import Job, TestOutcomeCollection
from gradeline.runner import run_script
from gradeline.ui.console import get_console

from .api_client import APIClient, APIError
from .backoff import ExponentialBackoff
from .executor import ScriptRunner, execute_job

# Attempts at posting one finished result before giving up on it.
RESULT_UPLOAD_ATTEMPTS = 5


class Agent:
    """Worker that claims submissions one at a time, grades them and reports back."""

    def __init__(
        self,
        api_client: APIClient,
        work_dir: Path = Path(".gradeline/work"),
        *,
        sandbox: bool = False,
        backoff: Optional[ExponentialBackoff] = None,
        runner: ScriptRunner = run_script,
    ):
        """
        Initialize agent.

        Args:
            api_client: Signed client for the worker endpoints
            work_dir: Parent directory for per-job scratch directories
            sandbox: Run test scripts isolated from the network
            backoff: Poll delay policy (1s..30s by default)
            runner: Script runner handed to the executor
        """
        self.api_client = api_client
        self.work_dir = Path(work_dir)
        self.sandbox = sandbox
        self.backoff = backoff or ExponentialBackoff(1.0, 30.0)
        self.runner = runner
        self._stop = threading.Event()

    @property
    def running(self) -> bool:
        return not self._stop.is_set()

    def stop(self) -> None:
        self._stop.set()

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        console = get_console()
        console.print_info(f"\nReceived signal {signum}, finishing current job and shutting down...")
        self.stop()

    def _sleep(self, seconds: float) -> None:
        # Returns early when stop() is called.
        self._stop.wait(seconds)

    def poll_once(self) -> bool:
        """
        One claim attempt, plus grading and reporting if a job came back.

        Returns:
            True if a job was claimed
        """
        job = self.api_client.claim_job()
        if job is None:
            return False
        self.backoff.reset()
        self._process(job)
        return True

    def run(self) -> None:
        """Run the agent loop until stopped."""
        console = get_console()
        console.print_worker_started(
            worker_id=self.api_client.worker_id,
            api=self.api_client.base_url,
            sandbox=self.sandbox,
            backoff=(self.backoff.initial, self.backoff.maximum),
        )

        # Setup signal handlers for graceful shutdown
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        while self.running:
            try:
                if self.poll_once():
                    continue
                delay = self.backoff.next()
                console.print_idle(delay)
                self._sleep(delay)
            except APIError as e:
                console.print_error(
                    "API error",
                    str(e),
                    suggestion="Check API connectivity and the shared worker secret.",
                )
                self._sleep(self.backoff.next())
            except Exception as e:
                console.print_exception(e)
                self._sleep(self.backoff.next())

        console.print_info("Worker stopped.")

    def _process(self, job: Job) -> None:
        """Grade a single job and post the result."""
        console = get_console()
        console.print_job_claimed(job.submission_id, job.test_setup_id, job.attempt_number)
        start_time = time.time()

        try:
            collection = execute_job(
                job,
                self.api_client,
                self.work_dir,
                sandbox=self.sandbox,
                runner=self.runner,
            )
        except (InfrastructureError, APIError) as e:
            # Not a grading outcome; the submission stays assigned.
            console.print_job_dropped(job.submission_id, str(e))
            return

        self._report(collection)
        console.print_job_result(
            build_status=collection.build_status.value,
            passed=collection.pass_count,
            total=collection.total_tests,
            duration=time.time() - start_time,
        )

    def _report(self, collection: TestOutcomeCollection) -> None:
        """Post a result, re-signing on every attempt."""
        console = get_console()

        def log_attempt(retry_state: RetryCallState) -> None:
            console.print_debug(
                f"result upload attempt {retry_state.attempt_number} failed: {retry_state.outcome.exception()}"
            )

        retrying = Retrying(
            reraise=True,
            stop=stop_after_attempt(RESULT_UPLOAD_ATTEMPTS) | stop_when_event_set(self._stop),
            wait=wait_exponential_jitter(initial=self.backoff.initial, max=self.backoff.maximum),
            retry=retry_if_exception_type(APIError),
            before_sleep=log_attempt,
            sleep=self._sleep,
        )
        try:
            retrying(self.api_client.submit_result, collection)
        except APIError as e:
            console.print_error(
                "Failed to send result",
                f"Could not post result for {collection.submission_id}: {e}",
            )


def run_agent(
    api_url: str,
    worker_id: str,
    shared_secret: str,
    work_dir: Path,
    *,
    sandbox: bool = False,
    initial_backoff: float = 1.0,
    max_backoff: float = 30.0,
) -> None:
    """
    Run the gradeline worker loop.

    Args:
        api_url: Base URL of the API
        worker_id: Unique identifier for this worker instance
        shared_secret: HMAC secret shared with the API
        work_dir: Parent directory for per-job scratch directories
        sandbox: Run test scripts isolated from the network
        initial_backoff: First idle poll delay ceiling, in seconds
        max_backoff: Upper bound on any poll delay, in seconds
    """
    agent = Agent(
        APIClient(api_url, worker_id, shared_secret),
        work_dir,
        sandbox=sandbox,
        backoff=ExponentialBackoff(initial_backoff, max_backoff),
    )
    agent.run()
