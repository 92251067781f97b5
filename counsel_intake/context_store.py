import logging
import re
from typing import Iterable, List, Optional

from pydantic import ValidationError

from .db import Database, utc_now
from .matters import documents_for, extract_contact_info, extract_matter_types, extract_state
from .schemas import PHASE_ORDER, CaseDraft, ConversationContext, ConversationPhase, DocumentChecklist, Message

logger = logging.getLogger("uvicorn.error")

LAWYER_CONTACT_RE = re.compile(
    r"(need a lawyer|want a lawyer|talk to a lawyer|speak with (?:an )?attorney|hire an attorney)", re.I
)
GENERAL_INFO_RE = re.compile(r"(what is|how does|explain|tell me about|information about)", re.I)
INTAKE_HINT_RE = re.compile(r"(help with|need help|problem with|issue with|situation with)", re.I)


def default_context(session_id: str, team_id: str) -> ConversationContext:
    return ConversationContext(session_id=session_id, organization_id=team_id, last_updated=utc_now())


def advance_phase(context: ConversationContext, target: ConversationPhase) -> ConversationContext:
    """Return a copy moved to ``target`` unless that would move the phase backwards."""
    if PHASE_ORDER.index(target) <= PHASE_ORDER.index(context.conversation_phase):
        return context.model_copy(deep=True)
    return context.model_copy(update={"conversation_phase": target}, deep=True)


def reset_phase(context: ConversationContext, target: ConversationPhase = "greeting") -> ConversationContext:
    return context.model_copy(update={"conversation_phase": target, "last_updated": utc_now()}, deep=True)


def _determine_intent(text: str, matters: List[str]) -> str:
    if LAWYER_CONTACT_RE.search(text):
        return "lawyer_contact"
    if GENERAL_INFO_RE.search(text):
        return "general_info"
    if matters:
        return "intake"
    if INTAKE_HINT_RE.search(text):
        return "intake"
    return "unclear"


def _candidate_phase(context: ConversationContext) -> ConversationPhase:
    contact = context.contact_info
    if contact.name and contact.email and context.established_matters:
        return "handoff"
    if context.document_checklist is not None:
        return "document_check"
    if context.case_draft is not None:
        return "drafted"
    if context.established_matters or context.message_count > 2:
        return "gathering"
    return "greeting"


def update_context(context: ConversationContext, messages: Iterable[Message]) -> ConversationContext:
    """Fold the transcript into intent, matter, contact and phase signals without touching ``context``."""
    history = list(messages)
    updated = context.model_copy(deep=True)
    updated.message_count = len(history)
    updated.last_updated = utc_now()

    text = " ".join(msg.content for msg in history)
    for matter in extract_matter_types(text):
        if matter not in updated.established_matters:
            updated.established_matters.append(matter)

    updated.user_intent = _determine_intent(text, updated.established_matters)

    user_text = " ".join(msg.content for msg in history if msg.role == "user")
    found = extract_contact_info(user_text)
    for key, value in found.items():
        setattr(updated.contact_info, key, value)

    state = extract_state(text)
    if state:
        updated.jurisdiction = state

    return advance_phase(updated, _candidate_phase(updated))


def update_case_draft(context: ConversationContext, draft: CaseDraft, revise: bool = False) -> ConversationContext:
    """Attach ``draft``; an existing draft for the same matter is kept unless ``revise`` is set."""
    existing = context.case_draft
    if existing is not None and existing.matter_type == draft.matter_type and not revise:
        return context.model_copy(deep=True)
    now = utc_now()
    stamped = draft.model_copy(
        update={
            "created_at": existing.created_at if existing and revise and existing.created_at else (draft.created_at or now),
            "updated_at": now,
        }
    )
    updated = context.model_copy(update={"case_draft": stamped, "last_updated": now}, deep=True)
    return advance_phase(updated, "drafted")


def update_document_checklist(
    context: ConversationContext,
    matter_type: str,
    provided: Optional[List[str]] = None,
) -> ConversationContext:
    required = [doc["name"] for doc in documents_for(matter_type) if doc.get("required")]
    have = list(dict.fromkeys(provided or []))
    checklist = DocumentChecklist(
        matter_type=matter_type,
        required=required,
        provided=have,
        missing=[name for name in required if name not in have],
        last_updated=utc_now(),
    )
    updated = context.model_copy(update={"document_checklist": checklist, "last_updated": utc_now()}, deep=True)
    return advance_phase(updated, "document_check")


def mark_documents_provided(context: ConversationContext, names: Iterable[str]) -> ConversationContext:
    checklist = context.document_checklist
    if checklist is None:
        return context.model_copy(deep=True)
    provided = list(dict.fromkeys([*checklist.provided, *names]))
    return update_document_checklist(context, checklist.matter_type, provided)


class ContextStore:
    """Load, transform and save one conversation context per (session, team)."""

    def __init__(self, db: Database):
        self.db = db

    async def load(self, session_id: str, team_id: str) -> ConversationContext:
        try:
            payload = await self.db.get_context(session_id, team_id)
        except Exception as exc:
            logger.warning("Context load failed for session %s: %s", session_id, exc)
            return default_context(session_id, team_id)
        if not payload:
            return default_context(session_id, team_id)
        try:
            return ConversationContext.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Discarding unreadable context for session %s: %s", session_id, exc)
            return default_context(session_id, team_id)

    def update_context(self, context: ConversationContext, messages: Iterable[Message]) -> ConversationContext:
        return update_context(context, messages)

    async def save(self, context: ConversationContext) -> bool:
        try:
            await self.db.put_context(context.session_id, context.organization_id, context.wire())
            return True
        except Exception as exc:
            logger.warning("Context save failed for session %s: %s", context.session_id, exc)
            return False
