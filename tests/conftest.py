from __future__ import annotations

import base64
import io
import json
import zipfile
from pathlib import Path
from urllib.parse import urlsplit

import pytest
from fastapi.testclient import TestClient

from cloud.app.main import create_app
from cloud.app.settings import ServerConfig
from gradeline.agent.api_client import APIClient, APIError
from gradeline.signing import signed_headers

SECRET = "test-shared-secret"
WORKER_ID = "worker-test"


def sqlite_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'gradeline.sqlite'}"


def make_zip(files: dict[str, str | bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buf.getvalue()


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def notebook(*cells: tuple[str, str]) -> dict:
    """nbformat-4 document from (cell_type, source) pairs."""
    return {
        "cells": [
            {"cell_type": kind, "metadata": {}, "source": source, **({"outputs": [], "execution_count": None} if kind == "code" else {})}
            for kind, source in cells
        ],
        "metadata": {"kernelspec": {"name": "python3"}},
        "nbformat": 4,
        "nbformat_minor": 5,
    }


def manifest(**overrides) -> dict:
    data = {
        "schemaVersion": 1,
        "gradingMode": "worker",
        "requiredFiles": [],
        "testSuites": [{"tier": "public", "script": "check.sh"}],
        "limits": {"timeLimitSeconds": 10},
    }
    data.update(overrides)
    return data


@pytest.fixture
def config(tmp_path) -> ServerConfig:
    return ServerConfig(
        database_url=sqlite_url(tmp_path),
        redis_url=None,
        storage_root=str(tmp_path / "storage"),
        public_base_url=None,
        log_level="DEBUG",
        worker_shared_secret=SECRET,
        worker_secret_file=None,
        max_clock_skew_seconds=60,
        nonce_ttl_seconds=300,
        required_worker_id=None,
    )


@pytest.fixture
def client(config):
    with TestClient(create_app(config)) as c:
        yield c


class SignedClient:
    """Sends correctly signed worker requests through a TestClient."""

    def __init__(self, http: TestClient, secret: str = SECRET, worker_id: str = WORKER_ID):
        self.http = http
        self.secret = secret
        self.worker_id = worker_id

    def request(self, method: str, path: str, payload=None, **sign_kwargs):
        body = json.dumps(payload).encode("utf-8") if payload is not None else b""
        headers = signed_headers(self.secret, method, path, body, worker_id=self.worker_id, **sign_kwargs)
        headers["Content-Type"] = "application/json"
        return self.http.request(method, path, content=body, headers=headers)

    def post(self, path: str, payload=None, **sign_kwargs):
        return self.request("POST", path, payload, **sign_kwargs)

    def get(self, path: str, **sign_kwargs):
        return self.request("GET", path, **sign_kwargs)


@pytest.fixture
def worker(client) -> SignedClient:
    return SignedClient(client)


class InProcessAPIClient(APIClient):
    """APIClient whose transport is a TestClient instead of urllib."""

    def __init__(self, http: TestClient, secret: str = SECRET, worker_id: str = WORKER_ID):
        super().__init__("http://testserver", worker_id, secret)
        self.http = http

    def _send(self, method, url, body, headers):
        response = self.http.request(method, urlsplit(url).path, content=body or None, headers=headers)
        if response.status_code >= 400:
            raise APIError(f"API request failed: {response.status_code} {response.text}", status=response.status_code)
        return response.status_code, response.content


@pytest.fixture
def api_client(client) -> InProcessAPIClient:
    return InProcessAPIClient(client)


def create_setup(client: TestClient, files: dict[str, str | bytes], nb: dict | None = None, **manifest_overrides) -> str:
    payload = {"manifest": manifest(**manifest_overrides), "bundleBase64": b64(make_zip(files))}
    if nb is not None:
        payload["notebook"] = nb
    r = client.post("/api/v1/testsetups", json=payload)
    assert r.status_code == 201, r.text
    return r.json()["testSetupID"]


def create_submission(client: TestClient, setup_id: str, files: dict[str, str | bytes], user_id: str | None = "student-1") -> dict:
    r = client.post(
        "/api/v1/submissions",
        json={"testSetupID": setup_id, "zipBase64": b64(make_zip(files)), "userID": user_id},
    )
    assert r.status_code == 201, r.text
    return r.json()
