import asyncio
import base64
import io
import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional

from PIL import Image

from . import agents
from .config import AppSettings, EndpointConfig
from .extraction import PDF_MIME, ExtractedDocument, ExtractionChain, build_structured_payload, is_structured_mime
from .llm import LMStudioClient, message_content
from .retry import with_retry
from .schemas import AnalysisResult, Entities

logger = logging.getLogger("uvicorn.error")

ProgressCallback = Callable[[int, str], Awaitable[None]]

IMAGE_MAX_SIZE = 1024
UNEXPECTED_FORMAT_SUMMARY = "Analysis completed but response format was unexpected"
PDF_UNANALYZABLE_SUMMARY = (
    "PDF document could not be analyzed. Structured extraction failed and text-based analysis "
    "is not available for binary PDF files."
)
PDF_UNANALYZABLE_ERROR = "Structured extraction failed for PDF"
IMAGE_PROMPT = (
    "Extract any visible legal parties, dates, amounts, signatures, and document type. "
    "Output JSON with summary, key_facts, entities{people,orgs,dates}, action_items, confidence."
)
STRUCTURED_HINT = (
    "Prioritize parties, deadlines, dollar amounts, obligations, and recommended next steps.\n"
    "Use the structured cues provided when available."
)
_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.I)


def truncate_text(text: str, limit: int) -> str:
    return f"{text[:limit]}..." if len(text) > limit else text


def _string_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if not isinstance(value, list):
        return []
    return [item if isinstance(item, str) else json.dumps(item, ensure_ascii=False) for item in value if item]


def _confidence(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:
        return default
    return min(1.0, max(0.0, number))


def coerce_analysis(raw: Any) -> AnalysisResult:
    """Normalise whatever a model returned into a well-formed ``AnalysisResult``."""
    if isinstance(raw, str):
        cleaned = _FENCE_RE.sub("", raw.strip())
        try:
            raw = json.loads(cleaned)
        except json.JSONDecodeError:
            text = raw.strip()
            if not text:
                return AnalysisResult(summary=UNEXPECTED_FORMAT_SUMMARY, key_facts=["Document processed successfully"], confidence=0.3)
            summary = text[:200] + ("..." if len(text) > 200 else "")
            return AnalysisResult(summary=summary, key_facts=[text], confidence=0.5)
    if not isinstance(raw, dict) or not str(raw.get("summary") or "").strip():
        return AnalysisResult(summary=UNEXPECTED_FORMAT_SUMMARY, key_facts=["Document processed successfully"], confidence=0.3)
    entities = raw.get("entities") if isinstance(raw.get("entities"), dict) else {}
    return AnalysisResult(
        summary=str(raw["summary"]).strip(),
        entities=Entities(
            people=_string_list(entities.get("people")),
            orgs=_string_list(entities.get("orgs")),
            dates=_string_list(entities.get("dates")),
        ),
        key_facts=_string_list(raw.get("key_facts")),
        action_items=_string_list(raw.get("action_items")),
        confidence=_confidence(raw.get("confidence"), 0.5),
        error=str(raw["error"]) if raw.get("error") else None,
    )


def image_data_url(data: bytes, max_size: int = IMAGE_MAX_SIZE) -> str:
    with Image.open(io.BytesIO(data)) as img:
        img = img.copy()
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        if max(img.size) > max_size:
            img.thumbnail((max_size, max_size), Image.LANCZOS)
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
    return f"data:image/png;base64,{base64.b64encode(buffer.getvalue()).decode('ascii')}"


class DocumentAnalyzer:
    """Turn document bytes into an ``AnalysisResult`` without ever raising."""

    def __init__(self, settings: AppSettings, lm_client: LMStudioClient, chain: Optional[ExtractionChain] = None):
        self.settings = settings
        self.lm_client = lm_client
        self.chain = chain or ExtractionChain()

    @property
    def limits(self):
        return self.settings.analysis

    async def analyze(
        self, name: str, mime: str, data: bytes, progress: Optional[ProgressCallback] = None
    ) -> AnalysisResult:
        try:
            return await self._analyze(name, mime, data, progress)
        except Exception as exc:
            logger.exception("Analysis failed for %s (%s)", name, mime)
            return AnalysisResult.failure(f"Document {name} could not be analyzed.", str(exc)[:300] or type(exc).__name__)

    async def _report(self, progress: Optional[ProgressCallback], value: int, message: str) -> None:
        if progress is not None:
            await progress(value, message)

    async def _analyze(self, name: str, mime: str, data: bytes, progress: Optional[ProgressCallback]) -> AnalysisResult:
        if is_structured_mime(mime):
            await self._report(progress, 70, "Extracting document content...")
            extracted = await asyncio.to_thread(self.chain.extract, data, mime)
            if extracted is not None:
                await self._report(progress, 80, "Summarizing with AI...")
                return await self.summarize_structured(extracted)
            await self._report(progress, 75, "Structured extraction unavailable, using alternative analysis...")
            logger.warning("Structured extraction returned nothing for %s (%s), falling back", name, mime)

        if mime.startswith("image/"):
            await self._report(progress, 80, "Analyzing image content...")
            return await self.analyze_image(data)
        if mime == PDF_MIME:
            return AnalysisResult(summary=PDF_UNANALYZABLE_SUMMARY, key_facts=[], confidence=0.0, error=PDF_UNANALYZABLE_ERROR)

        await self._report(progress, 80, "Processing document text...")
        text = data.decode("utf-8", errors="replace")
        await self._report(progress, 90, "Analyzing with AI...")
        return await self.summarize_text(text)

    async def _complete(self, endpoint: EndpointConfig, messages: List[Dict[str, Any]], max_tokens: int, operation: str) -> str:
        async def call() -> Dict[str, Any]:
            return await self.lm_client.chat_completion(
                model=endpoint.model_id,
                messages=messages,
                temperature=0.1,
                max_tokens=max_tokens,
                base_url=endpoint.base_url,
            )

        resp = await with_retry(call, self.settings.retry, operation=operation)
        return message_content(resp)

    async def _repair_json(self, content: str) -> Any:
        """Parse model JSON, asking the repair profile once when it is malformed."""
        cleaned = _FENCE_RE.sub("", content.strip())
        try:
            return json.loads(cleaned)
        except json.JSONDecodeError:
            pass
        if "{" not in cleaned:
            return content
        try:
            fixed = await self._complete(
                self.settings.summarizer_endpoint,
                [
                    {"role": "system", "content": agents.JSON_REPAIR_SYSTEM},
                    {"role": "user", "content": cleaned},
                ],
                max_tokens=400,
                operation="json repair",
            )
            return json.loads(_FENCE_RE.sub("", fixed.strip()))
        except Exception as exc:
            logger.info("JSON repair failed, keeping raw model text: %s", exc)
            return content

    async def _summarize(self, user_content: str, hint: str = "") -> AnalysisResult:
        system = agents.SUMMARIZER_SYSTEM + ("\n" + hint if hint else "") + "\nUse only the given text; if unsure, say so."
        content = await self._complete(
            self.settings.summarizer_endpoint,
            [{"role": "system", "content": system}, {"role": "user", "content": user_content}],
            max_tokens=self.limits.summary_max_tokens,
            operation="document summary",
        )
        return coerce_analysis(await self._repair_json(content))

    async def summarize_structured(self, doc: ExtractedDocument) -> AnalysisResult:
        structured = build_structured_payload(doc, self.limits.max_structured_chars)
        parts = [truncate_text(doc.text, self.limits.max_text_chars)]
        if structured:
            parts.append(f"Structured data:\n{structured}")
        return await self._summarize("\n\n".join(p for p in parts if p), STRUCTURED_HINT)

    async def summarize_text(self, text: str) -> AnalysisResult:
        return await self._summarize(truncate_text(text, self.limits.max_text_chars))

    async def analyze_image(self, data: bytes) -> AnalysisResult:
        try:
            data_url = await asyncio.to_thread(image_data_url, data)
        except Exception as exc:
            logger.warning("Image could not be decoded: %s", exc)
            return AnalysisResult.failure("Image could not be analyzed.", f"Unreadable image: {exc}"[:300])
        content = await self._complete(
            self.settings.vision_endpoint,
            [
                {"role": "system", "content": agents.VISION_ANALYST_SYSTEM},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": IMAGE_PROMPT},
                        {"type": "image_url", "image_url": {"url": data_url}},
                    ],
                },
            ],
            max_tokens=self.limits.vision_max_tokens,
            operation="image analysis",
        )
        return coerce_analysis(await self._repair_json(content))
