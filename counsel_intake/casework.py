"""Stateful middleware: case drafts, document checklists and the case summary PDF."""

import logging
from typing import List, Optional

from .context_store import update_case_draft, update_document_checklist
from .db import utc_now
from .matters import GENERAL_CONSULTATION, detect_urgency, documents_for, extract_state, matter_from_keywords
from .pdf_render import case_summary_filename, render_case_summary
from .pipeline import Middleware, MiddlewareResult
from .policies import latest_user_text
from .schemas import CaseDraft, ConversationContext, GeneratedPDF
from .storage import FileStore

logger = logging.getLogger("uvicorn.error")

CASE_DRAFT_KEYWORDS = [
    "build a case draft",
    "organize my case",
    "case summary",
    "case preparation",
    "prepare my case",
    "case file",
    "case organization",
    "structure my case",
    "case building",
    "organize case information",
]
REVISE_KEYWORDS = ["update my case", "revise my case", "update the case draft", "revise the case draft"]

CHECKLIST_KEYWORDS = [
    "document checklist",
    "what documents do i need",
    "required documents",
    "gather documents",
    "document requirements",
    "what papers do i need",
    "document preparation",
    "required paperwork",
    "document list",
    "what files do i need",
]

PDF_KEYWORDS = [
    "generate pdf",
    "create pdf",
    "download pdf",
    "export pdf",
    "pdf summary",
    "case summary pdf",
    "print case summary",
    "save as pdf",
    "get pdf",
    "pdf document",
    "case report",
    "generate report",
    "create report",
    "download case summary",
    "export case summary",
    "generate a pdf",
    "create a pdf",
]

FACT_HINTS = [
    (("fired", "terminated", "laid off"), "Employment termination"),
    (("divorce", "separation"), "Family law matter"),
    (("custody",), "Child custody concern"),
    (("contract", "agreement"), "Contract-related issue"),
    (("injury", "accident"), "Personal injury incident"),
    (("evict", "landlord"), "Housing dispute"),
    (("arrest", "charged"), "Criminal charges"),
]


def _contains_any(text: str, keywords: List[str]) -> bool:
    lowered = text.lower()
    return any(keyword in lowered for keyword in keywords)


def _resolve_matter(text: str, context: ConversationContext) -> str:
    if context.case_draft is not None:
        return context.case_draft.matter_type
    return matter_from_keywords(text) or (
        context.established_matters[0] if context.established_matters else GENERAL_CONSULTATION
    )


def extract_key_facts(text: str) -> List[str]:
    lowered = text.lower()
    return [fact for words, fact in FACT_HINTS if any(word in lowered for word in words)]


def draft_summary_response(draft: CaseDraft) -> str:
    lines = ["I've started organizing your case information. Here's what I've gathered so far:", ""]
    lines.append(f"**Case Type:** {draft.matter_type}")
    if draft.jurisdiction:
        lines.append(f"**Jurisdiction:** {draft.jurisdiction}")
    lines.append(f"**Urgency:** {draft.urgency}")
    if draft.key_facts:
        lines.append("")
        lines.append("**Key Facts Identified:**")
        lines.extend(f"{i}. {fact}" for i, fact in enumerate(draft.key_facts, 1))
    lines.extend(
        [
            "",
            "**Next Steps:**",
            "- Please provide more details about your situation",
            "- Share any relevant documents or evidence",
            "- Let me know about any important dates or timeline",
            "",
            "Would you like to continue building your case draft with more specific information?",
        ]
    )
    return "\n".join(lines)


class CaseDraftMiddleware(Middleware):
    name = "case_draft"

    async def execute(self, messages, context, team_config):
        text = latest_user_text(messages)
        revise = _contains_any(text, REVISE_KEYWORDS)
        # "case summary pdf" belongs to the PDF stage.
        if _contains_any(text, PDF_KEYWORDS) or "pdf" in text.lower():
            return MiddlewareResult(context=context)
        if not revise and not _contains_any(text, CASE_DRAFT_KEYWORDS):
            return MiddlewareResult(context=context)
        user_text = " ".join(m.content for m in messages if m.role == "user")
        matter_type = matter_from_keywords(text) or _resolve_matter(user_text, context)
        existing = context.case_draft
        if existing is not None and existing.matter_type == matter_type and not revise:
            return MiddlewareResult(context=context, response=draft_summary_response(existing))
        draft = CaseDraft(
            matter_type=matter_type,
            key_facts=extract_key_facts(user_text),
            jurisdiction=context.jurisdiction or extract_state(user_text) or "",
            urgency=detect_urgency(text),
            status="draft",
        )
        updated = update_case_draft(context, draft, revise=revise)
        return MiddlewareResult(
            context=updated,
            response=draft_summary_response(updated.case_draft),
            metadata={"action": "case_draft_updated" if revise else "case_draft_created"},
        )


class DocumentChecklistMiddleware(Middleware):
    name = "document_checklist"

    async def execute(self, messages, context, team_config):
        text = latest_user_text(messages)
        if not _contains_any(text, CHECKLIST_KEYWORDS):
            return MiddlewareResult(context=context)
        transcript = " ".join(m.content for m in messages)
        matter_type = _resolve_matter(transcript, context)
        provided = context.document_checklist.provided if context.document_checklist else []
        updated = update_document_checklist(context, matter_type, provided)
        return MiddlewareResult(context=updated, response=checklist_response(matter_type))


def checklist_response(matter_type: str) -> str:
    documents = documents_for(matter_type)
    required = [doc for doc in documents if doc["required"]]
    optional = [doc for doc in documents if not doc["required"]]
    lines = [f"Here's a document checklist for your {matter_type} matter:", "", "**Required Documents:**"]
    lines.extend(f"- {doc['name']}: {doc['description']}" for doc in required)
    if optional:
        lines.append("")
        lines.append("**Helpful If Available:**")
        lines.extend(f"- {doc['name']}: {doc['description']}" for doc in optional)
    lines.append("")
    lines.append("You can upload documents here as you gather them and I'll check them off.")
    return "\n".join(lines)


NO_DRAFT_RESPONSE = (
    "I'd be happy to help you generate a PDF case summary! However, I don't see a case draft in our conversation "
    "yet.\n\n"
    "- Build a case draft with your case information\n"
    "- Provide details about your legal matter\n"
    "- Share key facts and timeline\n\n"
    "Would you like me to help you build a case draft first?"
)
PDF_READY_RESPONSE = (
    "PDF Generated Successfully\n\n"
    "Your case summary is ready for download. You can view and download your PDF in the Matter tab."
)
PDF_FAILED_RESPONSE = (
    "I'm sorry, but I encountered an error while generating your PDF case summary. "
    "Please try again in a few minutes. I can also help you organize your case information again."
)


class PdfGenerationMiddleware(Middleware):
    name = "pdf_generation"

    def __init__(self, file_store: Optional[FileStore]):
        self.file_store = file_store

    async def execute(self, messages, context, team_config):
        text = latest_user_text(messages)
        if not _contains_any(text, PDF_KEYWORDS):
            return MiddlewareResult(context=context)
        draft = context.case_draft
        if draft is None:
            return MiddlewareResult(context=context, response=NO_DRAFT_RESPONSE)
        client_name = context.contact_info.name
        try:
            data = render_case_summary(draft, client_name, team_config.name, team_config.brand_color)
            filename = case_summary_filename(draft, client_name)
            storage_key = ""
            if self.file_store is not None and self.file_store.enabled:
                storage_key = self.file_store.new_key(filename, prefix="pdf_")
                await self.file_store.put(storage_key, data)
        except Exception as exc:
            logger.warning("PDF generation failed for session %s: %s", context.session_id, exc)
            return MiddlewareResult(context=context, response=PDF_FAILED_RESPONSE)
        context.generated_pdf = GeneratedPDF(
            filename=filename,
            size=len(data),
            generated_at=utc_now(),
            matter_type=draft.matter_type,
            storage_key=storage_key,
        )
        context.last_updated = utc_now()
        return MiddlewareResult(context=context, response=PDF_READY_RESPONSE)
