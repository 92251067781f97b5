import json
import re
import time
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx


ALLOWED_ROLES = {"system", "user", "assistant"}
DISALLOWED_FIELDS = {
    "tools",
    "tool_choice",
    "response_format",
    "reasoning",
    "seed",
    "logprobs",
    "top_logprobs",
    "parallel_tool_calls",
    "json_schema",
}
_MODEL_SIZE_RE = re.compile(r"(\d+(?:\.\d+)?b)", re.IGNORECASE)


def _normalize_model_id(value: str) -> str:
    base = value.split(":")[0].strip()
    if "/" in base:
        base = base.rsplit("/", 1)[-1]
    return base.lower()


def resolve_model_id(preferred: Optional[str], available: List[str]) -> Optional[str]:
    if not preferred or not available:
        return None
    if preferred in available:
        return preferred
    base = preferred.split(":")[0]
    if base in available:
        return base
    target = _normalize_model_id(preferred)
    for mid in available:
        if _normalize_model_id(mid) == target:
            return mid
    size_match = _MODEL_SIZE_RE.search(preferred)
    if size_match:
        size_hint = size_match.group(1).lower()
        for mid in available:
            if size_hint in mid.lower():
                return mid
    return None


def message_content(data: Dict[str, Any]) -> str:
    """Pull the assistant text out of a chat completion response."""
    try:
        choices = data.get("choices") or []
        message = choices[0].get("message") or {}
    except (AttributeError, IndexError):
        return ""
    content = message.get("content")
    if not content:
        content = message.get("reasoning") or message.get("reasoning_content") or ""
    return content if isinstance(content, str) else json.dumps(content, ensure_ascii=True)


class LMStudioClient:
    """OpenAI-compatible chat client for a local LM Studio server."""

    def __init__(self, base_url: str, max_output_tokens: Optional[int] = None):
        self.base_url = base_url.rstrip("/")
        self.max_output_tokens = max_output_tokens
        self.client = httpx.AsyncClient(timeout=60)
        self.model_cache: Dict[str, Dict[str, Any]] = {}
        self.model_cache_ttl = 60.0

    async def list_models(self, base_url: Optional[str] = None) -> Dict[str, Any]:
        url = f"{(base_url or self.base_url).rstrip('/')}/models"
        resp = await self.client.get(url)
        resp.raise_for_status()
        return resp.json()

    async def list_models_cached(self, base_url: Optional[str] = None, force: bool = False) -> List[str]:
        url = (base_url or self.base_url).rstrip("/")
        now = time.monotonic()
        cached = self.model_cache.get(url)
        if cached and not force and now - cached["ts"] < self.model_cache_ttl:
            return cached["ids"]
        resp = await self.list_models(url)
        ids = [m.get("id") for m in resp.get("data", []) if m.get("id")]
        self.model_cache[url] = {"ts": now, "ids": ids}
        return ids

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if not isinstance(msg, dict):
                continue
            role = msg.get("role")
            if role not in ALLOWED_ROLES:
                continue
            content = msg.get("content")
            if content is None:
                continue
            if isinstance(content, str):
                if not content.strip():
                    continue
                cleaned_content: Any = content
            elif isinstance(content, list):
                cleaned_items = [
                    item
                    for item in content
                    if isinstance(item, dict)
                    and item.get("type")
                    and (item.get("text") or item.get("image_url"))
                ]
                if not cleaned_items:
                    continue
                cleaned_content = cleaned_items
            else:
                cleaned_content = json.dumps(content, ensure_ascii=True)
            sanitized.append({"role": role, "content": cleaned_content})
        return sanitized

    async def _prepare_payload(self, payload: Dict[str, Any], base_url: str) -> Dict[str, Any]:
        cleaned = {k: v for k, v in payload.items() if k not in DISALLOWED_FIELDS}
        cleaned["messages"] = self._sanitize_messages(cleaned.get("messages"))
        if not cleaned.get("messages"):
            raise ValueError("messages must include at least one non-empty entry")
        model = str(cleaned.get("model") or "").strip()
        if not model:
            raise ValueError("model is required")
        available = await self.list_models_cached(base_url)
        available = [m for m in available if m and "embed" not in m.lower()]
        resolved = resolve_model_id(model, available)
        if not resolved:
            raise ValueError("model not found in /v1/models")
        cleaned["model"] = resolved
        return cleaned

    def _cap_tokens(self, max_tokens: int) -> int:
        if self.max_output_tokens:
            return min(max_tokens, self.max_output_tokens)
        return max_tokens

    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.2,
        max_tokens: int = 512,
        base_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        target_base = (base_url or self.base_url).rstrip("/")
        payload = await self._prepare_payload(
            {
                "model": model,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": self._cap_tokens(max_tokens),
                "stream": False,
            },
            target_base,
        )
        resp = await self.client.post(f"{target_base}/chat/completions", json=payload)
        resp.raise_for_status()
        data = resp.json()
        if isinstance(data, dict):
            data["_model_used"] = payload.get("model")
        return data

    async def stream_text(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.2,
        max_tokens: int = 1024,
        base_url: Optional[str] = None,
    ) -> AsyncGenerator[str, None]:
        target_base = (base_url or self.base_url).rstrip("/")
        payload = await self._prepare_payload(
            {
                "model": model,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": self._cap_tokens(max_tokens),
                "stream": True,
            },
            target_base,
        )
        # The context manager releases the connection when the consumer stops early.
        async with self.client.stream("POST", f"{target_base}/chat/completions", json=payload) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                chunk = line.replace("data:", "", 1).strip()
                if chunk == "[DONE]":
                    break
                try:
                    data = json.loads(chunk)
                except json.JSONDecodeError:
                    continue
                delta_obj = (data.get("choices") or [{}])[0].get("delta") or {}
                delta = delta_obj.get("content")
                if delta:
                    yield delta

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
