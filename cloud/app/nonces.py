from __future__ import annotations

import threading
import time

import redis.asyncio as redis

from .settings import NONCE_KEY_PREFIX


class MemoryNonceStore:
    """In-process replay cache: nonce key -> expiry (epoch seconds)."""

    def __init__(self) -> None:
        self._seen: dict[str, int] = {}
        self._lock = threading.Lock()

    def _purge_expired(self, now: int) -> None:
        self._seen = {k: exp for k, exp in self._seen.items() if exp > now}

    async def insert_if_new(self, key: str, ttl_seconds: int, now: int | None = None) -> bool:
        """True if `key` was not live and is now recorded; False on replay."""
        now = int(time.time()) if now is None else now
        with self._lock:
            self._purge_expired(now)
            if key in self._seen:
                return False
            self._seen[key] = now + ttl_seconds
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)


class RedisNonceStore:
    """Replay cache shared by every API process that points at the same redis."""

    def __init__(self, client: redis.Redis, prefix: str = NONCE_KEY_PREFIX) -> None:
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisNonceStore":
        return cls(redis.from_url(url, decode_responses=True))

    async def insert_if_new(self, key: str, ttl_seconds: int, now: int | None = None) -> bool:
        # SET NX EX: atomic check-and-insert, expiry handled by redis.
        created = await self.client.set(self.prefix + key, "1", nx=True, ex=ttl_seconds)
        return bool(created)

    async def close(self) -> None:
        await self.client.aclose()
