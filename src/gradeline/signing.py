# signing.py
"""
HMAC request signing shared by the worker (signs) and the API (verifies).

Signed payload:

    METHOD\\nPATH\\nSHA256(body)\\nTIMESTAMP\\nNONCE

signed with HMAC-SHA256 under the shared worker secret, hex encoded.
"""
from __future__ import annotations

import hashlib
import hmac
import time
import uuid
from typing import Optional

TIMESTAMP_HEADER = "X-Worker-Timestamp"
NONCE_HEADER = "X-Worker-Nonce"
SIGNATURE_HEADER = "X-Worker-Signature"
WORKER_ID_HEADER = "X-Worker-Id"


def sha256_hex(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


def canonical_string(method: str, path: str, body: bytes, timestamp: str, nonce: str) -> str:
    return "\n".join([method.upper(), path, sha256_hex(body), timestamp, nonce])


def compute_hmac_sha256_hex(secret: str, message: str) -> str:
    mac = hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256)
    return mac.hexdigest()


def signatures_match(expected: str, supplied: str) -> bool:
    """Constant-time comparison of two hex signatures (case-insensitive)."""
    return hmac.compare_digest(expected.lower().encode("utf-8"), supplied.lower().encode("utf-8"))


def signed_headers(
    secret: str,
    method: str,
    path: str,
    body: bytes = b"",
    worker_id: Optional[str] = None,
    timestamp: Optional[int] = None,
    nonce: Optional[str] = None,
) -> dict[str, str]:
    """
    Build the X-Worker-* headers for one request.

    Args:
        secret: Shared worker secret
        method: HTTP method
        path: URL path only (no scheme, host or query)
        body: Exact request body bytes that will be sent
        worker_id: Optional worker identity (X-Worker-Id)
        timestamp: Seconds since epoch (defaults to now)
        nonce: Single-use token (defaults to a fresh uuid4)

    Returns:
        Dict of headers to merge into the request
    """
    ts = str(int(time.time()) if timestamp is None else timestamp)
    nonce = nonce or str(uuid.uuid4())
    signature = compute_hmac_sha256_hex(secret, canonical_string(method, path, body, ts, nonce))

    headers = {
        TIMESTAMP_HEADER: ts,
        NONCE_HEADER: nonce,
        SIGNATURE_HEADER: signature,
    }
    if worker_id:
        headers[WORKER_ID_HEADER] = worker_id
    return headers
