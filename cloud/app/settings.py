from __future__ import annotations
import os
from dataclasses import dataclass, field
from typing import Optional

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./gradeline.sqlite")
REDIS_URL = os.environ.get("REDIS_URL") or None
STORAGE_ROOT = os.environ.get("STORAGE_ROOT", "./storage")
PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL") or None
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

WORKER_SHARED_SECRET = os.environ.get("WORKER_SHARED_SECRET", "")
WORKER_SECRET_FILE = os.environ.get("WORKER_SECRET_FILE") or None
WORKER_MAX_CLOCK_SKEW_SECONDS = int(os.environ.get("WORKER_MAX_CLOCK_SKEW_SECONDS", "60"))
WORKER_NONCE_TTL_SECONDS = int(os.environ.get("WORKER_NONCE_TTL_SECONDS", "300"))
WORKER_REQUIRED_ID = os.environ.get("WORKER_REQUIRED_ID") or None
NONCE_KEY_PREFIX = os.environ.get("NONCE_KEY_PREFIX", "gradeline:nonce:")


@dataclass
class ServerConfig:
    database_url: str = DATABASE_URL
    redis_url: Optional[str] = REDIS_URL
    storage_root: str = STORAGE_ROOT
    public_base_url: Optional[str] = PUBLIC_BASE_URL
    log_level: str = LOG_LEVEL
    worker_shared_secret: str = field(default=WORKER_SHARED_SECRET, repr=False)
    worker_secret_file: Optional[str] = WORKER_SECRET_FILE
    max_clock_skew_seconds: int = WORKER_MAX_CLOCK_SKEW_SECONDS
    nonce_ttl_seconds: int = WORKER_NONCE_TTL_SECONDS
    required_worker_id: Optional[str] = WORKER_REQUIRED_ID
