from __future__ import annotations

import uuid
from pathlib import Path


class LocalBlobStore:
    """Artifacts (test-setup bundles, submissions, notebooks) under one root directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def _resolve(self, relative: str) -> Path:
        path = (self.root / relative).resolve()
        if self.root not in path.parents:
            raise ValueError(f"blob path escapes storage root: {relative}")
        return path

    def write(self, kind: str, data: bytes, suffix: str = "") -> str:
        """Store `data` under a fresh name; returns the path relative to the root."""
        relative = f"{kind}/{uuid.uuid4().hex}{suffix}"
        path = self._resolve(relative)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return relative

    def read(self, relative: str) -> bytes:
        return self._resolve(relative).read_bytes()

    def exists(self, relative: str) -> bool:
        try:
            return self._resolve(relative).is_file()
        except ValueError:
            return False
