import asyncio
import json
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ValidationError

from .schemas import (
    EVENT_TYPES,
    STREAM_EVENT_ADAPTER,
    ContactFormData,
    ContactFormEvent,
    ConversationContext,
    DocumentChecklistEvent,
    LawyerSearchEvent,
    MatterCanvasEvent,
    MatterCanvasData,
    MatterSummary,
    PdfGenerationEvent,
)
from .tools import TOOL_MARKER

logger = logging.getLogger("uvicorn.error")

_CLOSED = object()


class StreamClosed(Exception):
    """The consumer went away; the producer should stop."""


def new_correlation_id() -> str:
    return uuid.uuid4().hex[:12]


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def validate_event(raw: Any) -> Optional[Dict[str, Any]]:
    """Return the wire form of ``raw`` or ``None`` when it is not a recognised, well-formed event."""
    if isinstance(raw, BaseModel):
        raw = raw.model_dump(by_alias=True, exclude_none=True)
    if not isinstance(raw, dict) or raw.get("type") not in EVENT_TYPES:
        logger.warning("Dropping stream frame with unknown type: %r", raw.get("type") if isinstance(raw, dict) else raw)
        return None
    try:
        event = STREAM_EVENT_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        logger.warning("Dropping malformed %s frame: %s", raw.get("type"), exc.errors()[:1])
        return None
    return event.wire()


class EventChannel:
    """Ordered single-turn event channel with room for one frame in flight."""

    def __init__(self, maxsize: int = 1):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self.cancelled = False
        self.delivered: List[Dict[str, Any]] = []

    async def send(self, event: Any) -> bool:
        if self.cancelled or self.closed:
            raise StreamClosed("event channel is closed")
        frame = validate_event(event)
        if frame is None:
            return False
        await self._queue.put(frame)
        return True

    async def close(self) -> None:
        if self.closed or self.cancelled:
            return
        self.closed = True
        await self._queue.put(_CLOSED)

    def cancel(self) -> None:
        self.cancelled = True
        # Free the slot so a producer blocked in ``put`` wakes up and hits StreamClosed on its next send.
        while not self._queue.empty():
            self._queue.get_nowait()

    def __aiter__(self):
        return self

    async def __anext__(self) -> Dict[str, Any]:
        if self.cancelled:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED or self.cancelled:
            raise StopAsyncIteration
        self.delivered.append(item)
        return item


class ToolMarkerFilter:
    """Forward streamed text until a tool call starts, holding back a possible partial marker."""

    def __init__(self, marker: str = TOOL_MARKER):
        self.marker = marker
        self.buffer = ""
        self.full_text = ""
        self.in_tool_call = False

    def feed(self, delta: str) -> str:
        self.full_text += delta
        if self.in_tool_call:
            return ""
        self.buffer += delta
        index = self.buffer.find(self.marker)
        if index >= 0:
            self.in_tool_call = True
            out, self.buffer = self.buffer[:index], ""
            return out
        keep = 0
        for size in range(min(len(self.marker) - 1, len(self.buffer)), 0, -1):
            if self.marker.startswith(self.buffer[-size:]):
                keep = size
                break
        out = self.buffer[: len(self.buffer) - keep]
        self.buffer = self.buffer[len(self.buffer) - keep :]
        return out

    def flush(self) -> str:
        out, self.buffer = ("" if self.in_tool_call else self.buffer), ""
        return out


def _safe(build: Callable[[], BaseModel], label: str) -> Optional[BaseModel]:
    try:
        return build()
    except (ValidationError, TypeError, ValueError) as exc:
        logger.warning("Omitting malformed %s event: %s", label, exc)
        return None


def _matter_canvas_from_context(context: ConversationContext) -> MatterCanvasEvent:
    draft = context.case_draft
    description = "; ".join(draft.key_facts) or f"{draft.matter_type} matter"
    return MatterCanvasEvent(
        data=MatterCanvasData(matter=MatterSummary(type=draft.matter_type, description=description, urgency=draft.urgency))
    )


def context_events(before: ConversationContext, after: ConversationContext) -> List[BaseModel]:
    """UI events for context fields this turn produced or changed."""
    candidates = []
    if after.case_draft is not None and after.case_draft != before.case_draft:
        candidates.append((lambda: _matter_canvas_from_context(after), "matter_canvas"))
    if after.document_checklist is not None and after.document_checklist != before.document_checklist:
        candidates.append((lambda: DocumentChecklistEvent(data=after.document_checklist), "document_checklist"))
    if after.generated_pdf is not None and after.generated_pdf != before.generated_pdf:
        candidates.append((lambda: PdfGenerationEvent(data=after.generated_pdf), "pdf_generation"))
    if after.lawyer_search_results is not None and after.lawyer_search_results != before.lawyer_search_results:
        candidates.append((lambda: LawyerSearchEvent(data=after.lawyer_search_results), "lawyer_search"))
    events = [_safe(build, label) for build, label in candidates]
    return [event for event in events if event is not None]


def tool_events(tool_name: str, result: Any) -> List[BaseModel]:
    """UI events carried by a tool result; malformed payloads are left out."""
    if not isinstance(result, dict) or not result.get("success"):
        return []
    data = result.get("data")
    if not isinstance(data, dict):
        return []
    candidates = []
    if "matter" in data:
        candidates.append((lambda: MatterCanvasEvent.model_validate({"data": {"matter": data["matter"]}}), "matter_canvas"))
    if tool_name == "show_contact_form":
        candidates.append(
            (
                lambda: ContactFormEvent(
                    data=ContactFormData(
                        fields=data.get("fields") or [],
                        required=data.get("required") or [],
                        message=data.get("message") or "Please fill out the contact form below.",
                    )
                ),
                "contact_form",
            )
        )
    if "case_summary_pdf" in data:
        candidates.append((lambda: PdfGenerationEvent.model_validate({"data": data["case_summary_pdf"]}), "pdf_generation"))
    if "document_checklist" in data:
        candidates.append(
            (lambda: DocumentChecklistEvent.model_validate({"data": data["document_checklist"]}), "document_checklist")
        )
    if "lawyer_search" in data:
        candidates.append((lambda: LawyerSearchEvent.model_validate({"data": data["lawyer_search"]}), "lawyer_search"))
    events = [_safe(build, label) for build, label in candidates]
    return [event for event in events if event is not None]
