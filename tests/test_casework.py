import pytest

from counsel_intake.casework import (
    NO_DRAFT_RESPONSE,
    PDF_FAILED_RESPONSE,
    PDF_READY_RESPONSE,
    CaseDraftMiddleware,
    DocumentChecklistMiddleware,
    PdfGenerationMiddleware,
)
from counsel_intake.context_store import default_context
from counsel_intake.pdf_render import case_summary_filename, render_case_summary
from counsel_intake.schemas import CaseDraft, Message, TeamConfig
from counsel_intake.storage import FileStore

TEAM = TeamConfig(id="public", name="Public Help")


def _user(text):
    return [Message(role="user", content=text)]


@pytest.mark.asyncio
async def test_case_draft_is_built_from_the_transcript():
    messages = [
        Message(role="user", content="I was fired last week after reporting harassment."),
        Message(role="assistant", content="I'm sorry to hear that."),
        Message(role="user", content="Can you help me organize my case? I'd like a case summary. It's urgent."),
    ]
    context = default_context("s1", "public")
    context.established_matters = ["Employment Law"]

    result = await CaseDraftMiddleware().execute(messages, context, TEAM)

    draft = result.context.case_draft
    assert draft.matter_type == "Employment Law"
    assert "Employment termination" in draft.key_facts
    assert draft.urgency == "high"
    assert result.context.conversation_phase == "drafted"
    assert "**Case Type:** Employment Law" in result.response


@pytest.mark.asyncio
async def test_case_draft_leaves_pdf_requests_to_pdf_stage():
    context = default_context("s1", "public")
    result = await CaseDraftMiddleware().execute(_user("Please generate a case summary pdf"), context, TEAM)
    assert result.response is None
    assert result.context.case_draft is None


@pytest.mark.asyncio
async def test_checklist_uses_established_matter():
    context = default_context("s1", "public")
    context.established_matters = ["Family Law"]
    result = await DocumentChecklistMiddleware().execute(_user("What documents do I need?"), context, TEAM)
    assert result.context.document_checklist.matter_type == "Family Law"
    assert "Marriage Certificate" in result.response
    assert result.context.conversation_phase == "document_check"


@pytest.mark.asyncio
async def test_pdf_without_draft_asks_for_one(tmp_path):
    middleware = PdfGenerationMiddleware(FileStore(tmp_path))
    result = await middleware.execute(_user("generate pdf"), default_context("s1", "public"), TEAM)
    assert result.response == NO_DRAFT_RESPONSE
    assert result.context.generated_pdf is None


@pytest.mark.asyncio
async def test_pdf_is_rendered_and_stored(tmp_path):
    store = FileStore(tmp_path)
    context = default_context("s1", "public")
    context.case_draft = CaseDraft(matter_type="Family Law", key_facts=["Married 2010", "Two children"])
    context.contact_info.name = "Jane Doe"

    result = await PdfGenerationMiddleware(store).execute(_user("Can you generate a PDF?"), context, TEAM)

    assert result.response == PDF_READY_RESPONSE
    pdf = result.context.generated_pdf
    assert pdf.filename.startswith("case-summary-family-law-jane-doe-")
    assert pdf.storage_key.startswith("pdf_")
    stored = await store.get(pdf.storage_key)
    assert stored.startswith(b"%PDF")
    assert pdf.size == len(stored)


@pytest.mark.asyncio
async def test_pdf_failure_returns_apology(tmp_path, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("renderer down")

    monkeypatch.setattr("counsel_intake.casework.render_case_summary", broken)
    context = default_context("s1", "public")
    context.case_draft = CaseDraft(matter_type="Family Law")
    result = await PdfGenerationMiddleware(FileStore(tmp_path)).execute(_user("generate pdf"), context, TEAM)
    assert result.response == PDF_FAILED_RESPONSE
    assert result.context.generated_pdf is None


def test_render_handles_non_latin_text():
    draft = CaseDraft(matter_type="Family Law", key_facts=["Client said “urgent” ✓"])
    data = render_case_summary(draft, "Zoë", "Public Help", "#123456")
    assert data.startswith(b"%PDF")
    assert case_summary_filename(draft).startswith("case-summary-family-law-")
