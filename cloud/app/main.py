from __future__ import annotations

import base64
import binascii
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

import pydantic
from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import Field

from gradeline.errors import AuthError, InfrastructureError, ValidationError
from gradeline.model import Manifest, TestOutcomeCollection, TestTier, WireModel
from gradeline.notebook import STUDENT_HIDDEN_TIERS, filter_for_viewer, merge_for_grading

from . import dispatch
from .activity import WorkerActivityStore
from .auth import SecretCell, WorkerAuthGate, require_worker
from .blobstore import LocalBlobStore
from .db import init_models, make_engine, make_sessionmaker
from .jobs import build_job
from .models import Submission, TestSetup
from .nonces import MemoryNonceStore, RedisNonceStore
from .settings import ServerConfig

logger = logging.getLogger(__name__)

# Tiers a student may see in result views.
STUDENT_VISIBLE_TIERS = [t for t in TestTier if t.value not in STUDENT_HIDDEN_TIERS]

# -------------------- Schemas --------------------

class ClaimRequest(WireModel):
    worker_id: Optional[str] = Field(default=None, alias="workerID")
    hostname: Optional[str] = None

class CreateTestSetupRequest(WireModel):
    manifest: dict[str, Any]
    bundle_base64: str
    notebook: Optional[Any] = None

class CreateTestSetupResponse(WireModel):
    test_setup_id: str = Field(alias="testSetupID")

class CreateSubmissionRequest(WireModel):
    test_setup_id: str = Field(alias="testSetupID")
    zip_base64: Optional[str] = None
    file_base64: Optional[str] = None
    filename: Optional[str] = None
    user_id: Optional[str] = Field(default=None, alias="userID")

class CreateSubmissionResponse(WireModel):
    submission_id: str = Field(alias="submissionID")
    attempt_number: int

class BrowserResultRequest(WireModel):
    test_setup_id: str = Field(alias="testSetupID")
    collection: TestOutcomeCollection
    notebook: Any
    user_id: Optional[str] = Field(default=None, alias="userID")

class BrowserResultResponse(WireModel):
    submission_id: str = Field(alias="submissionID")
    worker_submission_id: str = Field(alias="workerSubmissionID")

class SubmissionStatusResponse(WireModel):
    submission_id: str = Field(alias="submissionID")
    test_setup_id: str = Field(alias="testSetupID")
    status: str
    attempt_number: int
    worker_id: Optional[str] = Field(default=None, alias="workerID")
    filename: Optional[str] = None
    preview_of_id: Optional[str] = Field(default=None, alias="previewOfID")
    submitted_at: datetime
    assigned_at: Optional[datetime] = None

# -------------------- Helpers --------------------

def _b64(value: str, field: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError(f"{field} is not valid base-64")

def _notebook_bytes(value: Any) -> bytes:
    if isinstance(value, (dict, list)):
        return json.dumps(value).encode("utf-8")
    if isinstance(value, str):
        return value.encode("utf-8")
    raise ValidationError("notebook must be a JSON object or a JSON string")

def _parse(model: type[WireModel], body: bytes):
    try:
        return model.model_validate_json(body)
    except pydantic.ValidationError as e:
        raise RequestValidationError(e.errors(include_url=False, include_context=False))

def _manifest(data: dict[str, Any]) -> Manifest:
    try:
        manifest = Manifest.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid manifest: {e}")
    if not manifest.is_supported:
        raise ValidationError(f"Unsupported manifest schemaVersion {manifest.schema_version}")
    return manifest

def _base_url(request: Request, config: ServerConfig) -> str:
    return (config.public_base_url or str(request.base_url)).rstrip("/")

def _json(model: WireModel, status_code: int = 200) -> JSONResponse:
    return JSONResponse(model.to_dict(), status_code=status_code)

def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

# -------------------- App --------------------

def create_app(config: Optional[ServerConfig] = None) -> FastAPI:
    config = config or ServerConfig()
    configure_logging(config.log_level)

    engine = make_engine(config.database_url)
    SessionLocal = make_sessionmaker(engine)
    blobs = LocalBlobStore(config.storage_root)
    activity = WorkerActivityStore()
    nonces = RedisNonceStore.from_url(config.redis_url) if config.redis_url else MemoryNonceStore()
    secret = SecretCell(config.worker_shared_secret, config.worker_secret_file)

    # -------------------- Lifespan --------------------

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_models(engine)
        if not secret.effective():
            logger.warning("WORKER_SHARED_SECRET is empty; every worker request will be rejected")
        yield
        if isinstance(nonces, RedisNonceStore):
            await nonces.close()
        await engine.dispose()

    app = FastAPI(title="gradeline control plane", lifespan=lifespan)

    app.state.config = config
    app.state.engine = engine
    app.state.sessionmaker = SessionLocal
    app.state.blobs = blobs
    app.state.activity = activity
    app.state.nonces = nonces
    app.state.secret = secret
    app.state.auth_gate = WorkerAuthGate(
        secret,
        nonces,
        activity,
        max_clock_skew_seconds=config.max_clock_skew_seconds,
        nonce_ttl_seconds=config.nonce_ttl_seconds,
        required_worker_id=config.required_worker_id,
    )

    # -------------------- Errors --------------------

    @app.exception_handler(AuthError)
    async def auth_error(request: Request, exc: AuthError):
        return JSONResponse({"detail": "Unauthorized"}, status_code=401)

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return JSONResponse({"detail": exc.message}, status_code=422)

    @app.exception_handler(InfrastructureError)
    async def infrastructure_error(request: Request, exc: InfrastructureError):
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse({"detail": exc.message}, status_code=500)

    # -------------------- Worker endpoints --------------------

    # Worker endpoints parse their own bodies so authentication always runs first.

    @app.post("/api/v1/worker/request")
    async def request_job(request: Request, worker: Optional[str] = Depends(require_worker)):
        req = _parse(ClaimRequest, await request.body() or b"{}")
        worker_id = req.worker_id or worker or "unknown"
        async with SessionLocal() as s:
            submission = await dispatch.claim_next(s, worker_id)
            if submission is None:
                return Response(status_code=204)
            setup = await s.get(TestSetup, submission.test_setup_id)
            job = build_job(submission, setup, _base_url(request, config))
        logger.info("job %s handed to %s (host %s)", job.submission_id, worker_id, req.hostname or "?")
        return _json(job)

    @app.post("/api/v1/worker/results")
    async def post_results(request: Request, worker: Optional[str] = Depends(require_worker)):
        collection = _parse(TestOutcomeCollection, await request.body())
        async with SessionLocal() as s:
            await dispatch.report_result(s, collection, worker_id=worker)
        return {"received": True}

    @app.get("/api/v1/worker/submissions/{submission_id}/download")
    async def download_submission(submission_id: str, worker: Optional[str] = Depends(require_worker)):
        async with SessionLocal() as s:
            submission = await s.get(Submission, submission_id)
        if submission is None or not blobs.exists(submission.artifact_path):
            raise HTTPException(status_code=404, detail="Submission not found")
        return Response(blobs.read(submission.artifact_path), media_type="application/octet-stream")

    @app.get("/api/v1/worker/testsetups/{test_setup_id}/download")
    async def download_testsetup(test_setup_id: str, worker: Optional[str] = Depends(require_worker)):
        async with SessionLocal() as s:
            setup = await s.get(TestSetup, test_setup_id)
        if setup is None or not blobs.exists(setup.bundle_path):
            raise HTTPException(status_code=404, detail="Test setup not found")
        return Response(blobs.read(setup.bundle_path), media_type="application/zip")

    # -------------------- Intake / viewer endpoints --------------------

    @app.post("/api/v1/testsetups", status_code=201)
    async def create_testsetup(req: CreateTestSetupRequest):
        manifest = _manifest(req.manifest)
        bundle_path = blobs.write("testsetups", _b64(req.bundle_base64, "bundleBase64"), ".zip")
        notebook_path = None
        if req.notebook is not None:
            notebook = _notebook_bytes(req.notebook)
            # Refuse notebooks we could not filter later.
            filter_for_viewer(notebook, fail_open=False)
            notebook_path = blobs.write("notebooks", notebook, ".ipynb")

        async with SessionLocal() as s:
            async with s.begin():
                setup = TestSetup(
                    manifest=manifest.to_dict(),
                    bundle_path=bundle_path,
                    notebook_path=notebook_path,
                )
                s.add(setup)
                await s.flush()
                setup_id = setup.id
        return _json(CreateTestSetupResponse(test_setup_id=setup_id), status_code=201)

    @app.post("/api/v1/submissions", status_code=201)
    async def create_submission(req: CreateSubmissionRequest):
        async with SessionLocal() as s:
            setup = await s.get(TestSetup, req.test_setup_id)
            if setup is None:
                raise HTTPException(status_code=400, detail=f"Unknown testSetupID: {req.test_setup_id}")

            if req.zip_base64:
                data, filename, suffix = _b64(req.zip_base64, "zipBase64"), None, ".zip"
            elif req.file_base64 and req.filename:
                data, filename = _b64(req.file_base64, "fileBase64"), req.filename
                suffix = "." + filename.rsplit(".", 1)[-1] if "." in filename else ""
                if filename.endswith(".ipynb") and setup.notebook_path:
                    data = merge_for_grading(data, blobs.read(setup.notebook_path), fail_open=False)
            else:
                raise ValidationError("provide zipBase64, or fileBase64 with filename")

            artifact = blobs.write("submissions", data, suffix)
            submission = await dispatch.enqueue(
                s, setup.id, artifact, user_id=req.user_id, filename=filename
            )
            body = CreateSubmissionResponse(
                submission_id=submission.id,
                attempt_number=submission.attempt_number,
            )
        return _json(body, status_code=201)

    @app.post("/api/v1/submissions/browser-result")
    async def browser_result(req: BrowserResultRequest):
        async with SessionLocal() as s:
            setup = await s.get(TestSetup, req.test_setup_id)
            if setup is None:
                raise HTTPException(status_code=400, detail=f"Unknown testSetupID: {req.test_setup_id}")
            preview, rerun = await dispatch.submit_browser_result(
                s, blobs, setup, _notebook_bytes(req.notebook), req.collection, req.user_id
            )
            body = BrowserResultResponse(submission_id=preview.id, worker_submission_id=rerun.id)
        return _json(body)

    @app.get("/api/v1/submissions/{submission_id}")
    async def get_submission(submission_id: str):
        async with SessionLocal() as s:
            submission = await s.get(Submission, submission_id)
        if submission is None:
            raise HTTPException(status_code=404, detail="Submission not found")
        return _json(
            SubmissionStatusResponse(
                submission_id=submission.id,
                test_setup_id=submission.test_setup_id,
                status=submission.status,
                attempt_number=submission.attempt_number,
                worker_id=submission.worker_id,
                filename=submission.filename,
                preview_of_id=submission.preview_of_id,
                submitted_at=submission.submitted_at,
                assigned_at=submission.assigned_at,
            )
        )

    @app.get("/api/v1/submissions/{submission_id}/result")
    async def get_result(submission_id: str, source: str = dispatch.SOURCE_WORKER):
        if source not in (dispatch.SOURCE_WORKER, dispatch.SOURCE_BROWSER):
            raise HTTPException(status_code=400, detail="source must be worker|browser")
        async with SessionLocal() as s:
            collection = await dispatch.latest_result(s, submission_id, source)
        if collection is None:
            raise HTTPException(status_code=404, detail="No result yet")
        return _json(collection.restricted_to(STUDENT_VISIBLE_TIERS))

    @app.get("/api/v1/testsetups/{test_setup_id}/notebook")
    async def get_notebook(test_setup_id: str):
        async with SessionLocal() as s:
            setup = await s.get(TestSetup, test_setup_id)
        if setup is None or not setup.notebook_path:
            raise HTTPException(status_code=404, detail="Notebook not found")
        filtered = filter_for_viewer(blobs.read(setup.notebook_path), STUDENT_HIDDEN_TIERS, fail_open=False)
        return Response(filtered, media_type="application/x-ipynb+json")

    @app.get("/healthz")
    async def healthz():
        return {"ok": True}

    return app


app = create_app()
