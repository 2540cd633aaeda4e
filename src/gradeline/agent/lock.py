# agent/lock.py
from __future__ import annotations

import fcntl
import os
from pathlib import Path
from typing import IO


class AlreadyRunning(Exception):
    """Another worker instance holds the lock file."""


def acquire_lock(path: str | Path) -> IO[str]:
    """
    Take an exclusive, non-blocking lock on `path` and write our PID into it.

    The returned file object must stay open for as long as the lock should
    be held; closing it (or exiting) releases the lock.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    handle = open(path, "a+")
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        handle.close()
        raise AlreadyRunning(f"lock file {path} is held by another worker")

    handle.seek(0)
    handle.truncate()
    handle.write(f"{os.getpid()}\n")
    handle.flush()
    return handle


def release_lock(handle: IO[str]) -> None:
    handle.seek(0)
    handle.truncate()
    handle.close()
