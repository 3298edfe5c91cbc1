from __future__ import annotations

import logging
import secrets
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Header, HTTPException, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from omegaconf import DictConfig
from starlette.background import BackgroundTask

from .broadcaster import JobEventStream, ProgressBroadcaster
from .configuration import configure_logging, load_config, retention_settings
from .exceptions import ConverterError, NotFoundError
from .janitor import JanitorTask
from .job_manager import ChainFactory, JobOrchestrator
from .job_store import JobStore
from .models import (
    AccountView,
    ConvertAccepted,
    ConvertRequest,
    JobView,
    PlanUpdateRequest,
    UploadResponse,
    UserCreated,
    UserCreateRequest,
    UserSummary,
)
from .quota import QuotaGate
from .user_store import UserRecord, UserStore

logger = logging.getLogger(__name__)

PSD_MEDIA_TYPE = "image/vnd.adobe.photoshop"

router = APIRouter()


def get_orchestrator(request: Request) -> JobOrchestrator:
    return request.app.state.orchestrator


def get_user_store(request: Request) -> UserStore:
    return request.app.state.users


def require_user(x_api_key: str = Header(...), users: UserStore = Depends(get_user_store)) -> UserRecord:
    user = users.authenticate(x_api_key)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or inactive API key")
    return user


def require_admin(request: Request, x_admin_key: str = Header(...)) -> None:
    admin_key = request.app.state.config.auth.admin_key or ""
    if not admin_key or not secrets.compare_digest(x_admin_key, admin_key):
        raise HTTPException(status_code=401, detail="Invalid admin key")


@router.get("/healthz")
def healthcheck(orchestrator: JobOrchestrator = Depends(get_orchestrator)) -> Dict[str, object]:
    return {"status": "ok", "active_jobs": orchestrator.active_job_count()}


@router.post("/api/upload", response_model=UploadResponse)
async def upload_pdf(
    pdf: UploadFile = File(...),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> UploadResponse:
    try:
        job = await orchestrator.upload(pdf.filename, pdf.content_type, pdf)
    finally:
        await pdf.close()
    return UploadResponse(job_id=job.id, file_name=job.original_filename, file_size=job.file_size)


@router.post("/api/convert", response_model=ConvertAccepted, status_code=202)
async def convert(
    payload: ConvertRequest,
    user: UserRecord = Depends(require_user),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> ConvertAccepted:
    job = await orchestrator.start_conversion(payload.job_id, user, enhanced=payload.enhanced)
    return ConvertAccepted(job_id=job.id, status=job.status, message="Conversion started")


@router.get("/api/job/{job_id}", response_model=JobView)
def job_status(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)) -> JobView:
    return orchestrator.get_status(job_id)


@router.get("/api/download/{job_id}")
def download(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)) -> FileResponse:
    path, download_name = orchestrator.resolve_download(job_id)
    return FileResponse(
        path,
        filename=download_name,
        media_type=PSD_MEDIA_TYPE,
        background=BackgroundTask(orchestrator.finish_download, job_id),
    )


@router.get("/api/user/account", response_model=AccountView)
def account(user: UserRecord = Depends(require_user), users: UserStore = Depends(get_user_store)) -> AccountView:
    current = users.get_user(user.id) or user
    return AccountView(plan=current.plan, conversions_left=current.conversions_left)


@router.post("/admin/users", response_model=UserCreated, status_code=201, dependencies=[Depends(require_admin)])
def create_user(payload: UserCreateRequest, users: UserStore = Depends(get_user_store)) -> UserCreated:
    raw_key, record = users.create_user(payload.email, plan=payload.plan, conversions_left=payload.conversions_left)
    return UserCreated(api_key=raw_key, record=UserSummary(**record.to_dict()))


@router.put("/admin/users/{user_id}/plan", response_model=UserSummary, dependencies=[Depends(require_admin)])
def update_plan(user_id: str, payload: PlanUpdateRequest, users: UserStore = Depends(get_user_store)) -> UserSummary:
    record = users.apply_plan(user_id, payload.plan)
    return UserSummary(**record.to_dict())


@router.websocket("/ws/jobs/{job_id}")
async def job_events(websocket: WebSocket, job_id: str) -> None:
    """
    Progress channel for one job.

    Sends the job's current state on join, then every event published for
    the job, and closes after the terminal ``complete`` or ``error`` event.
    When nothing happens for a heartbeat interval a fresh snapshot is sent.
    """
    orchestrator: JobOrchestrator = websocket.app.state.orchestrator
    heartbeat = float(websocket.app.state.config.server.websocket_heartbeat_seconds)
    await websocket.accept()

    stream = JobEventStream(job_id)
    try:
        snapshot = orchestrator.subscribe(job_id, stream)
    except NotFoundError as exc:
        await websocket.send_json({"type": "error", "job_id": job_id, "error": exc.message, "code": exc.code})
        await websocket.close(code=4404)
        return

    logger.info(f"Client joined job room {job_id}")
    try:
        stream.mark_seen(snapshot)
        await websocket.send_json(snapshot.model_dump(mode="json"))
        event = snapshot
        while not event.is_terminal:
            event = await stream.next(timeout=heartbeat)
            if event is None:
                job = orchestrator.store.get(job_id)
                if job is None:
                    break
                event = orchestrator.snapshot_event(job)
                stream.mark_seen(event)
            await websocket.send_json(event.model_dump(mode="json"))
        await websocket.close()
    except WebSocketDisconnect:
        logger.info(f"Client left job room {job_id}")
    finally:
        orchestrator.unsubscribe(job_id, stream)


async def converter_error_handler(request: Request, exc: ConverterError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_payload())


def create_app(config: Optional[DictConfig] = None, chain_factory: Optional[ChainFactory] = None) -> FastAPI:
    """
    Build the API application and its process-wide components.

    The job store, broadcaster, quota gate, orchestrator and janitor are
    created once here and shared through ``app.state``.

    Args:
        config: Runtime configuration (default: packaged config.yaml + env)
        chain_factory: Overrides the strategy chain built from configuration
    """
    config = config or load_config()
    configure_logging(config)

    store = JobStore()
    broadcaster = ProgressBroadcaster()
    users = UserStore(config.database.path)
    quota = QuotaGate(users)
    orchestrator = JobOrchestrator.from_config(config, store, quota, broadcaster, chain_factory=chain_factory)
    janitor = JanitorTask(
        store,
        upload_root=orchestrator.upload_root,
        output_root=orchestrator.output_root,
        **retention_settings(config),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        janitor.start()
        yield
        await janitor.stop()
        await orchestrator.shutdown()

    app = FastAPI(title="PDF to PSD Converter API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.server.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ConverterError, converter_error_handler)
    app.include_router(router)

    app.state.config = config
    app.state.store = store
    app.state.users = users
    app.state.orchestrator = orchestrator
    app.state.janitor = janitor

    logger.info(f"Uploads: {orchestrator.upload_root}, outputs: {orchestrator.output_root}")
    return app
