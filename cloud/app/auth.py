from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Mapping, Optional, Protocol

from fastapi import HTTPException, Request

from gradeline.errors import AuthError
from gradeline.signing import (
    NONCE_HEADER,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    WORKER_ID_HEADER,
    canonical_string,
    compute_hmac_sha256_hex,
    signatures_match,
)

from .activity import WorkerActivityStore

logger = logging.getLogger(__name__)

ANONYMOUS_WORKER = "_anonymous"


class NonceStore(Protocol):
    async def insert_if_new(self, key: str, ttl_seconds: int, now: int | None = None) -> bool: ...


class SecretCell:
    """
    The worker shared secret: environment value, optionally replaced at
    runtime. A runtime override is written to `persist_path` (when given) so
    it survives a restart; clearing it deletes the file.
    """

    def __init__(self, env_value: str = "", persist_path: Optional[str | Path] = None) -> None:
        self._env_value = env_value.strip()
        self._persist_path = Path(persist_path) if persist_path else None
        self._override: Optional[str] = None
        self._lock = threading.Lock()
        if self._persist_path and self._persist_path.is_file():
            stored = self._persist_path.read_text(encoding="utf-8").strip()
            self._override = stored or None

    def effective(self) -> str:
        with self._lock:
            return self._override if self._override is not None else self._env_value

    def set_override(self, secret: str) -> None:
        secret = secret.strip()
        if not secret:
            raise ValueError("worker secret override must not be empty")
        with self._lock:
            self._override = secret
            if self._persist_path:
                self._persist_path.parent.mkdir(parents=True, exist_ok=True)
                self._persist_path.write_text(secret + "\n", encoding="utf-8")
                self._persist_path.chmod(0o600)

    def clear_override(self) -> None:
        with self._lock:
            self._override = None
            if self._persist_path:
                self._persist_path.unlink(missing_ok=True)


class WorkerAuthGate:
    """Verifies HMAC-signed worker requests and rejects replays."""

    def __init__(
        self,
        secret: SecretCell,
        nonces: NonceStore,
        activity: Optional[WorkerActivityStore] = None,
        *,
        max_clock_skew_seconds: int = 60,
        nonce_ttl_seconds: int = 300,
        required_worker_id: Optional[str] = None,
    ) -> None:
        self.secret = secret
        self.nonces = nonces
        self.activity = activity
        self.max_clock_skew_seconds = max_clock_skew_seconds
        self.nonce_ttl_seconds = nonce_ttl_seconds
        self.required_worker_id = required_worker_id

    async def verify(
        self,
        method: str,
        path: str,
        body: bytes,
        headers: Mapping[str, str],
        now: Optional[int] = None,
    ) -> Optional[str]:
        """
        Check one request.

        Args:
            method: HTTP method
            path: URL path as received (no query string)
            body: Raw request body bytes
            headers: Request headers (case-insensitive mapping)
            now: Current epoch seconds (defaults to the clock)

        Returns:
            The X-Worker-Id header value, or None when the worker sent none

        Raises:
            AuthError: On any failure
        """
        secret = self.secret.effective()
        if not secret:
            logger.warning("worker request rejected: WORKER_SHARED_SECRET is not configured")
            raise AuthError("worker auth is not configured")

        worker_id = headers.get(WORKER_ID_HEADER) or None
        if self.required_worker_id is not None and worker_id != self.required_worker_id:
            raise AuthError("invalid worker identity", {"worker_id": worker_id})

        timestamp = _require(headers, TIMESTAMP_HEADER)
        nonce = _require(headers, NONCE_HEADER)
        signature = _require(headers, SIGNATURE_HEADER)

        try:
            ts = int(timestamp)
        except ValueError:
            raise AuthError("invalid worker timestamp", {"timestamp": timestamp})

        now = int(time.time()) if now is None else now
        if abs(now - ts) > self.max_clock_skew_seconds:
            raise AuthError("timestamp outside accepted window", {"drift": now - ts})

        nonce_key = (worker_id or ANONYMOUS_WORKER) + ":" + nonce
        if not await self.nonces.insert_if_new(nonce_key, self.nonce_ttl_seconds, now=now):
            raise AuthError("replay detected", {"nonce_key": nonce_key})

        expected = compute_hmac_sha256_hex(secret, canonical_string(method, path, body, timestamp, nonce))
        if not signatures_match(expected, signature):
            raise AuthError("invalid worker signature", {"worker_id": worker_id})

        if self.activity is not None and worker_id:
            self.activity.mark_active(worker_id)
        return worker_id


def _require(headers: Mapping[str, str], name: str) -> str:
    value = headers.get(name)
    if not value:
        raise AuthError(f"missing worker auth header: {name}")
    return value


async def require_worker(request: Request) -> Optional[str]:
    """FastAPI dependency guarding the worker endpoints. Every failure is the same 401."""
    gate: WorkerAuthGate = request.app.state.auth_gate
    body = await request.body()
    try:
        return await gate.verify(request.method, request.url.path, body, request.headers)
    except AuthError as e:
        logger.debug("worker auth failed: %s", e)
        raise HTTPException(status_code=401, detail="Unauthorized")
