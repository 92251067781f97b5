import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional, Set, Union

from pydantic import ValidationError

from .analysis import DocumentAnalyzer
from .config import AppSettings
from .context_store import ContextStore, mark_documents_provided
from .db import Database, utc_now
from .events import EventBus
from .schemas import AnalysisResult, AutoAnalysisJob, DocumentJob
from .status_tracker import StatusTracker
from .storage import FileStore, StorageNotConfiguredError

logger = logging.getLogger("uvicorn.error")

STORAGE_MISSING = "Document storage is not configured"
FILE_MISSING = "Document not found for analysis"


class QueueMessage:
    """One delivery of a job body; settle it exactly once with ``ack`` or ``retry``."""

    def __init__(self, queue: "AnalysisQueue", body: Dict[str, Any], attempts: int = 0):
        self.queue = queue
        self.body = body
        self.attempts = attempts
        self.settled = False

    def ack(self) -> None:
        if self.settled:
            return
        self.settled = True
        self.queue._task_done()

    def retry(self, delay_s: float = 0.0) -> None:
        if self.settled:
            return
        self.settled = True
        self.queue._requeue(self.body, self.attempts + 1, delay_s)
        self.queue._task_done()


class AnalysisQueue:
    def __init__(self, maxsize: int = 100):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._pending: Set[asyncio.Task] = set()

    async def put(self, body: Dict[str, Any], attempts: int = 0) -> None:
        await self._queue.put((body, attempts))

    def put_nowait(self, body: Dict[str, Any]) -> None:
        self._queue.put_nowait((body, 0))

    async def get(self) -> QueueMessage:
        body, attempts = await self._queue.get()
        return QueueMessage(self, body, attempts)

    def qsize(self) -> int:
        return self._queue.qsize()

    def _task_done(self) -> None:
        self._queue.task_done()

    def _requeue(self, body: Dict[str, Any], attempts: int, delay_s: float) -> None:
        if delay_s <= 0:
            self._queue.put_nowait((body, attempts))
            return

        async def later() -> None:
            await asyncio.sleep(delay_s)
            await self._queue.put((body, attempts))

        task = asyncio.create_task(later())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def join(self) -> None:
        """Wait until every delivered message, including delayed retries, has been settled."""
        while True:
            await self._queue.join()
            if not self._pending:
                return
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def cancel_pending(self) -> None:
        for task in list(self._pending):
            task.cancel()


def parse_job(body: Any) -> Union[AutoAnalysisJob, DocumentJob]:
    if isinstance(body, dict) and body.get("type") == "analyze_uploaded_document":
        return AutoAnalysisJob.model_validate(body)
    return DocumentJob.model_validate(body)


def preview_payload(result: AnalysisResult, name: str, mime: str) -> Dict[str, Any]:
    return {**result.model_dump(), "name": name, "mime": mime, "analyzedAt": utc_now()}


class DocumentAnalysisWorker:
    """Consumer pool that drives uploaded documents through analysis and reports progress."""

    def __init__(
        self,
        settings: AppSettings,
        db: Database,
        queue: AnalysisQueue,
        analyzer: DocumentAnalyzer,
        file_store: FileStore,
        tracker: StatusTracker,
        bus: EventBus,
        context_store: Optional[ContextStore] = None,
    ):
        self.settings = settings
        self.db = db
        self.queue = queue
        self.analyzer = analyzer
        self.file_store = file_store
        self.tracker = tracker
        self.bus = bus
        self.context_store = context_store
        self._tasks: List[asyncio.Task] = []

    def start(self) -> None:
        if self._tasks:
            return
        for index in range(max(1, self.settings.analysis.concurrency)):
            self._tasks.append(asyncio.create_task(self._consume(), name=f"analysis-worker-{index}"))

    async def stop(self) -> None:
        self.queue.cancel_pending()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def _consume(self) -> None:
        while True:
            message = await self.queue.get()
            try:
                await self.handle(message)
            except Exception:
                logger.exception("Analysis consumer dropped a message")
            finally:
                message.ack()

    async def handle(self, message: QueueMessage) -> None:
        try:
            job = parse_job(message.body)
        except ValidationError as exc:
            logger.warning("Discarding malformed analysis job: %s", exc.errors()[:1])
            message.ack()
            return
        if isinstance(job, AutoAnalysisJob):
            await self.process_upload(job)
            message.ack()
        else:
            await self.process_legacy(job, message)

    async def _emit(self, session_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        try:
            await self.bus.emit(session_id, event_type, payload)
        except Exception as exc:
            logger.warning("%s event dropped for session %s: %s", event_type, session_id, exc)

    async def _store_preview(self, session_id: str, key: str, result: AnalysisResult, name: str, mime: str) -> None:
        try:
            await self.db.put_preview(
                session_id, key, preview_payload(result, name, mime), self.settings.analysis.preview_ttl_s
            )
        except Exception as exc:
            logger.warning("Preview write failed for %s: %s", key, exc)

    async def _mark_provided(self, session_id: str, team_id: str, name: str) -> None:
        """Record an analysed upload against the session's document checklist, if it has one."""
        if self.context_store is None:
            return
        context = await self.context_store.load(session_id, team_id)
        if context.document_checklist is None:
            return
        await self.context_store.save(mark_documents_provided(context, [name]))

    async def process_upload(self, job: AutoAnalysisJob) -> AnalysisResult:
        """Auto-analysis path: milestones, result event and preview. Errors here are terminal."""
        status_id = job.status_id or str(uuid.uuid4())
        file = job.file
        data_ref = {"fileName": file.name, "fileKey": file.key}
        created_at = await self.tracker.get_created_at(status_id)

        async def milestone(progress: int, message: str, status: str = "processing", extra: Optional[dict] = None) -> None:
            reported = progress
            try:
                record = await self.tracker.set_status(
                    status_id,
                    session_id=job.session_id,
                    organization_id=job.organization_id,
                    status=status,
                    message=message,
                    progress=progress,
                    data={**data_ref, **(extra or {})},
                    created_at=created_at,
                )
                reported = record.progress
            except Exception as exc:
                logger.warning("Status write %s@%s failed: %s", status_id, progress, exc)
            await self._emit(
                job.session_id, "analysis_status", {"statusId": status_id, "message": message, "progress": reported}
            )

        async def fail(summary: str, error: str) -> AnalysisResult:
            result = AnalysisResult.failure(summary, error)
            await milestone(0, summary, status="failed", extra={"error": error})
            await self._emit(
                job.session_id,
                "analysis_complete",
                {"statusId": status_id, **data_ref, "analysis": result.model_dump()},
            )
            return result

        try:
            await milestone(10, "File uploaded, starting analysis...")
            await milestone(25, "Checking file storage...")
            if not self.file_store.enabled:
                return await fail(STORAGE_MISSING, STORAGE_MISSING)
            await milestone(40, "Retrieving file from storage...")
            try:
                data = await self.file_store.get(file.key)
            except ValueError:
                data = None
            if data is None:
                return await fail(FILE_MISSING, FILE_MISSING)
            await milestone(60, "Analyzing document content...")
            result = await self.analyzer.analyze(file.name, file.mime, data, progress=milestone)
            await self._store_preview(job.session_id, file.key, result, file.name, file.mime)
            await self._mark_provided(job.session_id, job.organization_id, file.name)
            await milestone(90, "Finalizing analysis...")
            await milestone(100, "Analysis complete", status="completed", extra={"analysis": result.model_dump()})
            await self._emit(
                job.session_id,
                "analysis_complete",
                {"statusId": status_id, **data_ref, "analysis": result.model_dump()},
            )
            return result
        except Exception as exc:
            logger.exception("Auto analysis failed for %s", file.key)
            return await fail("Document analysis failed", str(exc)[:300] or type(exc).__name__)

    async def process_legacy(self, job: DocumentJob, message: QueueMessage) -> Optional[AnalysisResult]:
        """Preview-only path. Storage and unexpected errors are requeued up to the retry cap."""
        name = job.key.rsplit("/", 1)[-1]
        try:
            if not self.file_store.enabled:
                raise StorageNotConfiguredError(STORAGE_MISSING)
            try:
                data = await self.file_store.get(job.key)
            except ValueError:
                data = None
            if data is None:
                result = AnalysisResult.failure(FILE_MISSING, FILE_MISSING)
                await self._store_preview(job.session_id, job.key, result, name, job.mime)
                message.ack()
                return result
            result = await self.analyzer.analyze(name, job.mime, data)
            await self._store_preview(job.session_id, job.key, result, name, job.mime)
            message.ack()
            return result
        except Exception as exc:
            limit = self.settings.analysis.legacy_max_retries
            if message.attempts + 1 >= limit:
                logger.warning("Giving up on %s after %s attempts: %s", job.key, message.attempts + 1, exc)
                message.ack()
                return None
            logger.warning("Requeueing %s (attempt %s/%s): %s", job.key, message.attempts + 1, limit, exc)
            message.retry(self.settings.analysis.retry_delay_s)
            return None
