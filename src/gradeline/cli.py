# cli.py
from __future__ import annotations

import json
import socket
import sys
from pathlib import Path
from urllib.parse import urlsplit

import click

from gradeline.signing import signed_headers
from gradeline.ui.console import Console, set_console, get_console


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """gradeline: pull-based grading worker."""
    # Initialize console with debug flag
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--api", required=True, envvar="GRADELINE_API", help="API base URL (e.g., http://localhost:8000)")
@click.option(
    "--worker-id",
    default=None,
    envvar="GRADELINE_WORKER_ID",
    help="Unique worker identifier (defaults to worker-<hostname>)",
)
@click.option(
    "--secret",
    required=True,
    envvar="GRADELINE_WORKER_SECRET",
    help="Shared HMAC secret (prefer the GRADELINE_WORKER_SECRET env var)",
)
@click.option("--sandbox/--no-sandbox", default=False, help="Run test scripts without network access")
@click.option("--work-dir", default=".gradeline/work", show_default=True, help="Scratch directory for jobs")
@click.option(
    "--lock-file",
    default=".gradeline/worker.lock",
    show_default=True,
    help="Lock file that keeps a second worker from using the same work dir",
)
@click.option("--initial-backoff", default=1.0, type=float, show_default=True, help="First idle poll delay (s)")
@click.option("--max-backoff", default=30.0, type=float, show_default=True, help="Longest idle poll delay (s)")
@click.pass_context
def worker(ctx, api, worker_id, secret, sandbox, work_dir, lock_file, initial_backoff, max_backoff):
    """Poll the API for submissions and grade them."""
    from gradeline.agent.agent import run_agent
    from gradeline.agent.lock import AlreadyRunning, acquire_lock, release_lock

    console = get_console()

    if not worker_id:
        worker_id = f"worker-{socket.gethostname()}"

    if max_backoff < initial_backoff or initial_backoff <= 0:
        console.print_error(
            "Invalid backoff bounds",
            f"--initial-backoff={initial_backoff} --max-backoff={max_backoff}",
            suggestion="Use 0 < --initial-backoff <= --max-backoff.",
        )
        sys.exit(2)

    try:
        lock = acquire_lock(lock_file)
    except AlreadyRunning as e:
        console.print_error(
            "Worker already running",
            str(e),
            suggestion="Stop the other worker or pass a different --lock-file.",
        )
        sys.exit(1)

    try:
        run_agent(
            api,
            worker_id,
            secret,
            Path(work_dir),
            sandbox=sandbox,
            initial_backoff=initial_backoff,
            max_backoff=max_backoff,
        )
    except KeyboardInterrupt:
        console.print_info("\nWorker stopped by user")
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)
    finally:
        release_lock(lock)


@cli.command()
@click.argument("method")
@click.argument("url")
@click.option("--secret", required=True, envvar="GRADELINE_WORKER_SECRET", help="Shared HMAC secret")
@click.option("--worker-id", default=None, envvar="GRADELINE_WORKER_ID", help="Worker identifier to sign as")
@click.option("--data", default=None, help="Request body (use @path to read it from a file)")
def sign(method, url, secret, worker_id, data):
    """Print X-Worker-* headers for a manual request to METHOD URL."""
    body = b""
    if data is not None:
        body = Path(data[1:]).read_bytes() if data.startswith("@") else data.encode("utf-8")

    headers = signed_headers(secret, method, urlsplit(url).path or "/", body, worker_id=worker_id)
    click.echo(json.dumps(headers, indent=2))


if __name__ == "__main__":
    cli()
