import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Union

import httpx

from counsel_intake.lawyers import LawyerSearchError
from counsel_intake.schemas import Lawyer, LawyerSearchResults


def _message_text(message: Dict[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, str):
        return content
    return json.dumps(content, ensure_ascii=True)


DEFAULT_SUMMARY = {
    "summary": "Lease agreement between Jane Doe and Acme Properties.",
    "key_facts": ["Monthly rent is $1,200", "Term ends June 2025"],
    "entities": {"people": ["Jane Doe"], "orgs": ["Acme Properties"], "dates": ["2025-06-30"]},
    "action_items": ["Confirm renewal terms"],
    "confidence": 0.8,
}

StreamScript = Union[List[str], Callable[[List[Dict[str, Any]]], List[str]]]


class FakeLMStudioClient:
    def __init__(
        self,
        stream_chunks: Optional[StreamScript] = None,
        summary_content: Optional[str] = None,
        vision_content: Optional[str] = None,
        delay_seconds: float = 0.0,
        stream_failures: int = 0,
    ) -> None:
        self.base_url = "http://lm.test/v1"
        self.max_output_tokens = None
        self.stream_chunks = stream_chunks if stream_chunks is not None else ["Thanks for reaching out. ", "How can I help?"]
        self.summary_content = summary_content if summary_content is not None else json.dumps(DEFAULT_SUMMARY)
        self.vision_content = vision_content
        self.delay_seconds = delay_seconds
        self.stream_failures = stream_failures
        self.calls: List[Dict[str, Any]] = []
        self.stream_calls: List[Dict[str, Any]] = []
        self.streams_opened = 0
        self.streams_closed = 0
        self.chunks_sent = 0

    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.2,
        max_tokens: int = 512,
        base_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        system_text = _message_text(messages[0]) if messages else ""
        user_text = _message_text(messages[-1]) if messages else ""
        self.calls.append({"model": model, "system": system_text, "user": user_text, "max_tokens": max_tokens})
        if "JSONRepair" in system_text:
            content = "{}"
        elif "VisionAnalyst" in system_text:
            content = self.vision_content if self.vision_content is not None else self.summary_content
        else:
            content = self.summary_content
        return {"choices": [{"message": {"content": content}}]}

    async def stream_text(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.2,
        max_tokens: int = 1024,
        base_url: Optional[str] = None,
    ):
        self.stream_calls.append({"model": model, "messages": messages})
        if self.stream_failures > 0:
            self.stream_failures -= 1
            raise httpx.ConnectError("connection refused")
        chunks = self.stream_chunks(messages) if callable(self.stream_chunks) else self.stream_chunks
        self.streams_opened += 1
        try:
            for chunk in chunks:
                if self.delay_seconds:
                    await asyncio.sleep(self.delay_seconds)
                self.chunks_sent += 1
                yield chunk
        finally:
            self.streams_closed += 1

    async def close(self) -> None:
        return None


class FakeLawyerSearchClient:
    def __init__(self, lawyers: Optional[List[Lawyer]] = None, api_key: Optional[str] = None, error: Optional[Exception] = None):
        self.api_key = api_key
        self.lawyers = lawyers or []
        self.error = error
        self.searches: List[Dict[str, Any]] = []

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search_by_matter_type(self, matter_type: str, location: Optional[str] = None, limit: int = 10) -> LawyerSearchResults:
        self.searches.append({"matter_type": matter_type, "location": location, "limit": limit})
        if self.error is not None:
            raise self.error
        return LawyerSearchResults(matter_type=matter_type, lawyers=self.lawyers[:limit], total=len(self.lawyers))

    async def close(self) -> None:
        return None


def quota_error() -> LawyerSearchError:
    return LawyerSearchError("Lawyer search quota exceeded", status_code=429)
