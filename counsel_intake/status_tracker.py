import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional

from .db import Database, utc_after, utc_now
from .events import EventBus
from .schemas import TERMINAL_STATUSES, StatusRecord

logger = logging.getLogger("uvicorn.error")


class StatusTracker:
    """Short-lived progress records keyed by status id.

    Writes for one id are serialised, ``created_at`` is carried over from the stored record,
    progress never moves backwards outside of ``failed`` and terminal records are frozen.
    """

    def __init__(self, db: Database, bus: Optional[EventBus] = None, ttl_s: int = 24 * 60 * 60):
        self.db = db
        self.bus = bus
        self.ttl_s = ttl_s
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, status_id: str) -> asyncio.Lock:
        lock = self._locks.get(status_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[status_id] = lock
        return lock

    async def get_status(self, status_id: str) -> Optional[StatusRecord]:
        row = await self.db.get_status(status_id)
        if not row:
            return None
        if row.get("expires_at") and row["expires_at"] <= utc_now():
            return None
        return StatusRecord.model_validate(row)

    async def get_created_at(self, status_id: str) -> Optional[str]:
        record = await self.get_status(status_id)
        return record.created_at if record else None

    async def list_session_statuses(self, session_id: str) -> List[StatusRecord]:
        rows = await self.db.list_statuses(session_id)
        return [StatusRecord.model_validate(row) for row in rows]

    async def set_status(
        self,
        status_id: str,
        *,
        session_id: str,
        organization_id: str,
        status: str,
        message: str = "",
        progress: int = 0,
        data: Optional[Dict[str, Any]] = None,
        type: str = "file_processing",
        created_at: Optional[str] = None,
    ) -> StatusRecord:
        async with self._lock_for(status_id):
            existing = await self.db.get_status(status_id)
            if existing and existing["status"] in TERMINAL_STATUSES:
                logger.info("Ignoring %s update for terminal status %s", status, status_id)
                return StatusRecord.model_validate(existing)
            now = utc_now()
            created = (existing or {}).get("created_at") or created_at or now
            value = max(0, min(100, int(progress)))
            if status == "failed":
                value = 0
            elif existing:
                value = max(value, int(existing.get("progress") or 0))
            record = StatusRecord(
                id=status_id,
                session_id=session_id,
                organization_id=organization_id,
                type=type,
                status=status,
                message=message,
                progress=value,
                data=data if data is not None else (existing or {}).get("data") or {},
                created_at=created,
                updated_at=now,
                expires_at=utc_after(self.ttl_s),
            )
            await self.db.put_status(record.model_dump())
            if status in TERMINAL_STATUSES:
                self._locks.pop(status_id, None)
        if self.bus is not None:
            try:
                await self.bus.emit(session_id, "status_update", record.wire())
            except Exception as exc:
                logger.warning("status_update event dropped for %s: %s", status_id, exc)
        return record

    async def create_file_status(
        self,
        session_id: str,
        organization_id: str,
        file_name: str,
        file_key: str,
    ) -> StatusRecord:
        return await self.set_status(
            str(uuid.uuid4()),
            session_id=session_id,
            organization_id=organization_id,
            status="queued",
            message=f"{file_name} queued for analysis",
            progress=0,
            data={"fileName": file_name, "fileKey": file_key},
        )
