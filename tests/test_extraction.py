import io
import json

import pytest
from docx import Document

from counsel_intake.extraction import (
    DOCX_MIME,
    PDF_MIME,
    STRUCTURED_OMITTED,
    DocxExtractor,
    ExtractedDocument,
    ExtractionChain,
    ExtractionError,
    PdfExtractor,
    build_structured_payload,
)
from counsel_intake.pdf_render import render_case_summary
from counsel_intake.schemas import CaseDraft


def _docx_bytes() -> bytes:
    document = Document()
    document.add_heading("Residential Lease", level=1)
    document.add_paragraph("This lease is made between Jane Doe and Acme Properties.")
    table = document.add_table(rows=2, cols=2)
    table.cell(0, 0).text = "Rent"
    table.cell(0, 1).text = "$1,200"
    table.cell(1, 0).text = "Term"
    table.cell(1, 1).text = "12 months"
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


def test_docx_extractor_returns_text_tables_and_headings():
    doc = DocxExtractor().extract(_docx_bytes())
    assert "Jane Doe and Acme Properties" in doc.text
    assert doc.tables[0]["rows"] == [["Rent", "$1,200"], ["Term", "12 months"]]
    assert doc.elements[0]["text"] == "Residential Lease"


def test_pdf_extractor_reads_text_layer():
    data = render_case_summary(CaseDraft(matter_type="Family Law", key_facts=["Married in 2010"]), "Jane Doe")
    doc = PdfExtractor().extract(data)
    assert "Family Law" in doc.text
    assert doc.elements[0]["page"] == 1


def test_pdf_extractor_rejects_garbage():
    with pytest.raises(ExtractionError):
        PdfExtractor().extract(b"not really a pdf")


def test_chain_returns_none_when_every_extractor_fails():
    chain = ExtractionChain()
    assert chain.extract(b"%PDF-1.4 broken", PDF_MIME) is None
    assert chain.extract(b"plain text", "text/plain") is None
    assert chain.extract(_docx_bytes(), DOCX_MIME) is not None


def test_structured_payload_fits_everything_when_small():
    doc = ExtractedDocument(text="", tables=[{"a": 1}], elements=[{"b": 2}])
    payload = build_structured_payload(doc, 6000)
    assert json.loads(payload) == {"tables": [{"a": 1}], "elements": [{"b": 2}]}


def test_structured_payload_drops_whole_items_from_the_back():
    tables = [{"id": i, "cells": "x" * 100} for i in range(10)]
    elements = [{"id": i, "text": "y" * 100} for i in range(10)]
    payload = build_structured_payload(ExtractedDocument(text="", tables=tables, elements=elements), 1000)
    assert len(payload) <= 1000
    data = json.loads(payload)
    assert data["tables"] == tables[: len(data["tables"])]
    assert 0 < len(data["tables"]) < 10
    assert data["elements"] == elements[: len(data["elements"])]


def test_structured_payload_uses_placeholder_when_nothing_fits():
    doc = ExtractedDocument(text="", tables=[{"cells": "x" * 500}], elements=[{"text": "y" * 500}])
    assert build_structured_payload(doc, 100) == STRUCTURED_OMITTED


def test_structured_payload_is_empty_without_structure():
    assert build_structured_payload(ExtractedDocument(text="hello"), 100) == ""
