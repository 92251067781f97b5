import asyncio
from typing import Dict, List

from .db import Database


class EventBus:
    """In-memory fan-out for session SSE plus persisted events."""

    def __init__(self, db: Database):
        self.db = db
        self.subscribers: Dict[str, List[asyncio.Queue]] = {}
        self.lock = asyncio.Lock()
        self.write_lock = asyncio.Lock()

    async def emit(self, session_id: str, event_type: str, payload: dict) -> dict:
        safe_payload = dict(payload or {})
        safe_payload.setdefault("sessionId", session_id)
        # Sequence numbers are allocated per session; serialise writes so they stay unique.
        async with self.write_lock:
            stored = await self.db.add_event(session_id, event_type, safe_payload)
        async with self.lock:
            queues = list(self.subscribers.get(session_id, []))
        for q in queues:
            await q.put(stored)
        return stored

    async def subscribe(self, session_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.subscribers.setdefault(session_id, []).append(queue)
        return queue

    async def unsubscribe(self, session_id: str, queue: asyncio.Queue) -> None:
        async with self.lock:
            queues = self.subscribers.get(session_id, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self.subscribers.pop(session_id, None)
