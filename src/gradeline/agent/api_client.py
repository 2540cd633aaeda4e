# agent/api_client.py
from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from pathlib import Path
from typing import Optional
from urllib.parse import urljoin, urlsplit

import pydantic

from gradeline.model import Job, TestOutcomeCollection
from gradeline.signing import signed_headers

CLAIM_PATH = "/api/v1/worker/request"
RESULTS_PATH = "/api/v1/worker/results"


class APIError(Exception):
    """Raised when API requests fail."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class APIClient:
    """Signed HTTP client for the worker endpoints of the grading API."""

    def __init__(self, base_url: str, worker_id: str, shared_secret: str, timeout: float = 30.0):
        """
        Initialize API client.

        Args:
            base_url: Base URL of the API (e.g., "http://localhost:8000")
            worker_id: Unique identifier for this worker instance
            shared_secret: Secret used to HMAC-sign every request
            timeout: Socket timeout per request, in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.worker_id = worker_id
        self.shared_secret = shared_secret
        self.timeout = timeout

    def _url(self, path_or_url: str) -> str:
        if urlsplit(path_or_url).scheme:
            return path_or_url
        return urljoin(self.base_url + "/", path_or_url.lstrip("/"))

    def _send(self, method: str, url: str, body: bytes, headers: dict[str, str]) -> tuple[int, bytes]:
        """
        Perform one HTTP exchange.

        Returns:
            (status code, response body). 4xx/5xx come back as APIError.
        """
        req = urllib.request.Request(url, data=body or None, headers=headers, method=method)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                return response.status, response.read()
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8", errors="replace") if e.fp else ""
            raise APIError(f"API request failed: {e.code} {e.reason}. {error_body}", status=e.code)
        except urllib.error.URLError as e:
            raise APIError(f"Network error: {e.reason}")
        except (socket.timeout, TimeoutError) as e:
            raise APIError(f"Network timeout: {e}")

    def _request(self, method: str, path_or_url: str, data: Optional[dict] = None) -> tuple[int, bytes]:
        """
        Sign and send a request.

        The signature covers the URL path and the exact body bytes, so the
        body is serialized once here and sent as-is.
        """
        url = self._url(path_or_url)
        body = json.dumps(data).encode("utf-8") if data is not None else b""

        headers = signed_headers(
            self.shared_secret,
            method,
            urlsplit(url).path,
            body,
            worker_id=self.worker_id,
        )
        if data is not None:
            headers["Content-Type"] = "application/json"

        return self._send(method, url, body, headers)

    def claim_job(self) -> Optional[Job]:
        """
        Claim the oldest pending submission.

        Returns:
            Job if one was assigned to us, None when nothing is pending (204)
        """
        status, body = self._request(
            "POST",
            CLAIM_PATH,
            data={"workerID": self.worker_id, "hostname": socket.gethostname()},
        )
        if status == 204 or not body:
            return None
        try:
            return Job.model_validate_json(body)
        except pydantic.ValidationError as e:
            raise APIError(f"Invalid job payload: {e}")

    def submit_result(self, collection: TestOutcomeCollection) -> None:
        """Post a finished TestOutcomeCollection."""
        status, body = self._request("POST", RESULTS_PATH, data=collection.to_dict())
        if status != 200:
            raise APIError(f"Unexpected status {status} posting result: {body[:200]!r}", status=status)

    def download(self, url: str, destination: Path) -> Path:
        """GET an artifact (signed) and write it to `destination`."""
        status, body = self._request("GET", url)
        if status != 200:
            raise APIError(f"Unexpected status {status} downloading {url}", status=status)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(body)
        return destination
