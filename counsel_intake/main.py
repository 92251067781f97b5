import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import FileResponse, StreamingResponse

from .analysis import DocumentAnalyzer
from .config import AppSettings, load_settings
from .context_store import ContextStore
from .db import Database
from .events import EventBus
from .lawyers import LawyerSearchClient
from .llm import LMStudioClient
from .orchestrator import TurnOrchestrator, TurnValidationError, validate_turn
from .schemas import AutoAnalysisJob, DocumentJob, ErrorEvent, FileRef
from .status_tracker import StatusTracker
from .storage import FileStore
from .streaming import EventChannel, new_correlation_id, sse_format
from .worker import AnalysisQueue, DocumentAnalysisWorker

logger = logging.getLogger("uvicorn.error")

ALLOWED_UPLOAD_TYPES = {
    "image/png",
    "image/jpeg",
    "image/webp",
    "image/gif",
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "text/plain",
}
SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_file_store(request: Request) -> FileStore:
    return request.app.state.file_store


def get_tracker(request: Request) -> StatusTracker:
    return request.app.state.tracker


def get_context_store(request: Request) -> ContextStore:
    return request.app.state.context_store


def get_orchestrator(request: Request) -> TurnOrchestrator:
    return request.app.state.orchestrator


def get_analysis_queue(request: Request) -> AnalysisQueue:
    return request.app.state.analysis_queue


def validate_upload(file: UploadFile) -> None:
    if not file.filename:
        raise HTTPException(status_code=400, detail="Filename required.")
    raw_name = file.filename
    safe_name = Path(raw_name).name
    if safe_name != raw_name or safe_name in (".", ".."):
        raise HTTPException(status_code=400, detail="Invalid filename.")
    if file.content_type not in ALLOWED_UPLOAD_TYPES:
        raise HTTPException(status_code=400, detail="Only images, PDFs, Word documents or text files are allowed.")


router = APIRouter()


@router.post("/api/agent/stream")
async def agent_stream(
    request: Request,
    payload: Any = Body(...),
    settings: AppSettings = Depends(get_settings),
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
):
    try:
        turn = validate_turn(payload, settings)
    except TurnValidationError as exc:
        frame = ErrorEvent(message=str(exc), correlation_id=new_correlation_id()).wire()
        return StreamingResponse(
            iter([sse_format(frame)]), status_code=400, media_type="text/event-stream", headers=SSE_HEADERS
        )

    channel = EventChannel()
    task = asyncio.create_task(orchestrator.run_turn(turn, channel))

    async def event_generator():
        try:
            async for frame in channel:
                if await request.is_disconnected():
                    logger.info("Client disconnected from session %s", turn.session_id)
                    break
                yield sse_format(frame)
        finally:
            channel.cancel()
            if not task.done():
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    return StreamingResponse(event_generator(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/api/files")
async def upload_file(
    file: UploadFile = File(...),
    session_id: str = Form(..., alias="sessionId"),
    team_id: Optional[str] = Form(None, alias="teamId"),
    auto_analyze: bool = Form(True, alias="autoAnalyze"),
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
    file_store: FileStore = Depends(get_file_store),
    tracker: StatusTracker = Depends(get_tracker),
    queue: AnalysisQueue = Depends(get_analysis_queue),
):
    validate_upload(file)
    data = await file.read()
    if len(data) > settings.upload_max_mb * 1024 * 1024:
        raise HTTPException(status_code=400, detail=f"File too large (>{settings.upload_max_mb} MB).")
    if not file_store.enabled:
        raise HTTPException(status_code=503, detail="Document storage is not configured")
    safe_name = Path(file.filename).name
    mime = file.content_type or "application/octet-stream"
    organization_id = team_id or settings.default_team_id
    key = file_store.new_key(safe_name)
    path = await file_store.put(key, data)
    await db.add_file(key, session_id, organization_id, safe_name, mime, len(data), str(path))

    status_id: Optional[str] = None
    if auto_analyze:
        status = await tracker.create_file_status(session_id, organization_id, safe_name, key)
        status_id = status.id
        job = AutoAnalysisJob(
            session_id=session_id,
            organization_id=organization_id,
            file=FileRef(key=key, name=safe_name, mime=mime, size=len(data)),
            status_id=status_id,
        )
    else:
        job = DocumentJob(key=key, organization_id=organization_id, session_id=session_id, mime=mime)
    try:
        queue.put_nowait(job.wire())
    except asyncio.QueueFull:
        logger.warning("Analysis queue full, rejecting %s for session %s", key, session_id)
        if status_id is not None:
            await tracker.set_status(
                status_id,
                session_id=session_id,
                organization_id=organization_id,
                status="failed",
                message=f"{safe_name} could not be queued for analysis",
                progress=0,
            )
        raise HTTPException(status_code=503, detail="Analysis queue is full, try again shortly.")
    await bus.emit(session_id, "upload_received", {"key": key, "name": safe_name, "mime": mime, "size": len(data)})
    return {"key": key, "statusId": status_id, "name": safe_name, "mime": mime, "size": len(data)}


@router.get("/api/files/{key}")
async def download_file(key: str, db: Database = Depends(get_db), file_store: FileStore = Depends(get_file_store)):
    try:
        path = file_store.path_for(key)
    except ValueError:
        raise HTTPException(status_code=404, detail="File not found")
    record = await db.get_file(key)
    if not path.exists():
        raise HTTPException(status_code=404, detail="File not found")
    if record:
        return FileResponse(path, media_type=record["mime"], filename=record["original_name"])
    if key.startswith("pdf_"):
        return FileResponse(path, media_type="application/pdf", filename=key.split("_", 2)[-1])
    raise HTTPException(status_code=404, detail="File not found")


@router.get("/api/status/{status_id}")
async def get_status(status_id: str, tracker: StatusTracker = Depends(get_tracker)):
    record = await tracker.get_status(status_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Status not found")
    return record.wire()


@router.get("/api/sessions/{session_id}/statuses")
async def list_statuses(session_id: str, tracker: StatusTracker = Depends(get_tracker)):
    records = await tracker.list_session_statuses(session_id)
    return {"statuses": [record.wire() for record in records]}


@router.get("/api/sessions/{session_id}/context")
async def get_context(
    session_id: str,
    team_id: Optional[str] = Query(None, alias="teamId"),
    settings: AppSettings = Depends(get_settings),
    store: ContextStore = Depends(get_context_store),
):
    context = await store.load(session_id, team_id or settings.default_team_id)
    return context.wire()


@router.get("/api/sessions/{session_id}/previews/{key}")
async def get_preview(session_id: str, key: str, db: Database = Depends(get_db)):
    preview = await db.get_preview(session_id, key)
    if preview is None:
        raise HTTPException(status_code=404, detail="Preview not found")
    return preview


@router.get("/api/sessions/{session_id}/events")
async def stream_session_events(
    session_id: str,
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    # Replay stored events then follow live ones
    async def event_generator():
        queue = await bus.subscribe(session_id)
        try:
            past = await db.list_events(session_id)
            last_seq = 0
            for ev in past:
                last_seq = ev["seq"]
                yield sse_format(ev)
            while True:
                ev = await queue.get()
                if ev["seq"] <= last_seq:
                    continue
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe(session_id, queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/api/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.get("/api/health")
async def health(request: Request):
    state = request.app.state
    return {
        "ok": True,
        "queueDepth": state.analysis_queue.qsize(),
        "storage": state.file_store.enabled,
        "lawyerSearch": state.lawyer_client.enabled,
    }


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    lm_client: Optional[LMStudioClient] = None,
    lawyer_client: Optional[LawyerSearchClient] = None,
    file_store: Optional[FileStore] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        await app.state.db.delete_expired_statuses()
        if app.state.file_store.enabled:
            app.state.file_store.root.mkdir(parents=True, exist_ok=True)
        app.state.worker.start()
        try:
            yield
        finally:
            await app.state.worker.stop()
            await app.state.lm_client.close()
            await app.state.lawyer_client.close()

    app = FastAPI(title="Counsel Intake", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.lm_client = lm_client or LMStudioClient(
        settings.lm_studio_base_url, max_output_tokens=settings.max_output_tokens
    )
    app.state.lawyer_client = lawyer_client or LawyerSearchClient(
        settings.lawyer_search_base_url, settings.lawyer_search_api_key
    )
    app.state.file_store = file_store or FileStore(Path(settings.upload_dir) if settings.upload_dir else None)
    app.state.bus = EventBus(app.state.db)
    app.state.tracker = StatusTracker(app.state.db, app.state.bus, ttl_s=settings.status_ttl_s)
    app.state.context_store = ContextStore(app.state.db)
    app.state.orchestrator = TurnOrchestrator(
        settings,
        app.state.db,
        app.state.lm_client,
        lawyer_client=app.state.lawyer_client,
        file_store=app.state.file_store,
        store=app.state.context_store,
    )
    app.state.analysis_queue = AnalysisQueue(maxsize=settings.analysis.queue_max_size)
    app.state.worker = DocumentAnalysisWorker(
        settings,
        app.state.db,
        app.state.analysis_queue,
        DocumentAnalyzer(settings, app.state.lm_client),
        app.state.file_store,
        app.state.tracker,
        app.state.bus,
        context_store=app.state.context_store,
    )
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("INTAKE_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "counsel_intake.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
