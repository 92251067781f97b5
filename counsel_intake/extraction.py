import io
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from docx import Document
from pypdf import PdfReader

logger = logging.getLogger("uvicorn.error")

PDF_MIME = "application/pdf"
DOC_MIME = "application/msword"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
STRUCTURED_MIMES = {PDF_MIME, DOC_MIME, DOCX_MIME}
STRUCTURED_OMITTED = "[structured data omitted - too large]"
ELEMENT_TEXT_CHARS = 500


class ExtractionError(Exception):
    pass


@dataclass
class ExtractedDocument:
    text: str
    tables: List[Dict[str, Any]] = field(default_factory=list)
    elements: List[Dict[str, Any]] = field(default_factory=list)


def is_structured_mime(mime: str) -> bool:
    return mime in STRUCTURED_MIMES


class Extractor:
    mimes: Sequence[str] = ()

    def accepts(self, mime: str) -> bool:
        return mime in self.mimes

    def extract(self, data: bytes) -> ExtractedDocument:
        raise NotImplementedError


class PdfExtractor(Extractor):
    mimes = (PDF_MIME,)

    def __init__(self, max_pages: int = 50):
        self.max_pages = max_pages

    def extract(self, data: bytes) -> ExtractedDocument:
        try:
            reader = PdfReader(io.BytesIO(data))
            pages = list(reader.pages[: self.max_pages])
            texts = [page.extract_text() or "" for page in pages]
        except Exception as exc:
            raise ExtractionError(f"PDF could not be read: {exc}") from exc
        elements = [
            {"type": "page", "page": number, "text": text[:ELEMENT_TEXT_CHARS]}
            for number, text in enumerate(texts, start=1)
            if text.strip()
        ]
        if not elements:
            # Scanned or image-only PDFs carry no text layer.
            raise ExtractionError("PDF has no extractable text")
        return ExtractedDocument(text="\n".join(t for t in texts if t.strip()), elements=elements)


class DocxExtractor(Extractor):
    mimes = (DOCX_MIME, DOC_MIME)

    def extract(self, data: bytes) -> ExtractedDocument:
        try:
            document = Document(io.BytesIO(data))
        except Exception as exc:
            raise ExtractionError(f"Word document could not be read: {exc}") from exc
        paragraphs = [p for p in document.paragraphs if p.text.strip()]
        elements = [
            {"type": "heading", "style": p.style.name, "text": p.text[:ELEMENT_TEXT_CHARS]}
            for p in paragraphs
            if p.style is not None and p.style.name.lower().startswith(("heading", "title"))
        ]
        tables = [
            {"index": index, "rows": [[cell.text.strip() for cell in row.cells] for row in table.rows]}
            for index, table in enumerate(document.tables)
        ]
        text = "\n".join(p.text for p in paragraphs)
        if not text and not tables:
            raise ExtractionError("Word document is empty")
        return ExtractedDocument(text=text, tables=tables, elements=elements)


class ExtractionChain:
    """Ordered extractors; the first one that accepts the mime type and succeeds wins."""

    def __init__(self, extractors: Optional[Sequence[Extractor]] = None):
        self.extractors = list(extractors) if extractors is not None else [PdfExtractor(), DocxExtractor()]

    def extract(self, data: bytes, mime: str) -> Optional[ExtractedDocument]:
        for extractor in self.extractors:
            if not extractor.accepts(mime):
                continue
            try:
                return extractor.extract(data)
            except ExtractionError as exc:
                logger.warning("%s failed for %s: %s", type(extractor).__name__, mime, exc)
        return None


def _serialized(tables: List[Any], elements: List[Any]) -> str:
    return json.dumps({"tables": tables, "elements": elements}, ensure_ascii=False)


def build_structured_payload(doc: ExtractedDocument, max_chars: int) -> str:
    """Serialise tables then elements, whole items only, within ``max_chars``."""
    if not doc.tables and not doc.elements:
        return ""
    full = _serialized(doc.tables, doc.elements)
    if len(full) <= max_chars:
        return full
    tables: List[Any] = []
    for table in doc.tables:
        if len(_serialized(tables + [table], [])) > max_chars:
            break
        tables.append(table)
    elements: List[Any] = []
    for element in doc.elements:
        if len(_serialized(tables, elements + [element])) > max_chars:
            break
        elements.append(element)
    if tables or elements:
        return _serialized(tables, elements)
    return STRUCTURED_OMITTED
