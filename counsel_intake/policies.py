"""Safety and compliance middleware that runs before any case state is accumulated."""

import logging
import re
from typing import Callable, List, Optional, Sequence

from .context_store import advance_phase
from .lawyers import LawyerSearchClient, LawyerSearchError
from .matters import (
    GENERAL_CONSULTATION,
    detect_urgency,
    extract_scope_matters,
    extract_state,
    is_general_legal_request,
    is_us_state,
    matter_from_keywords,
)
from .pipeline import Middleware, MiddlewareResult
from .schemas import ConversationContext, JurisdictionConfig, Message, PendingContactForm, TeamConfig

logger = logging.getLogger("uvicorn.error")


def latest_user_text(messages: Sequence[Message]) -> str:
    for message in reversed(messages):
        if message.role == "user":
            return message.content
    return ""


# Content policy

JAILBREAK_PATTERNS = [
    re.compile(r"ignore\b.*\binstructions", re.I),
    re.compile(r"(system prompt|bypass\b.*\brestrictions)", re.I),
    re.compile(r"(change\b.*\brole|override\b.*\binstructions)", re.I),
    re.compile(r"(ignore\b.*\bprevious|forget\b.*\brules)", re.I),
    re.compile(r"\b(act as|pretend to be)\b", re.I),
    re.compile(r"\b(you are now|from now on)\b", re.I),
    re.compile(r"disregard\b.*\bprevious", re.I),
]
NON_LEGAL_PATTERNS = [
    re.compile(r"(^cd\s|^ls\s|^sudo\s|^bash\s|\.py$|<script>|SELECT .* FROM)", re.I),
    re.compile(r"\b(terminal|command line|shell|programming|coding|script)\b", re.I),
    re.compile(r"\b(javascript|python|html|css|sql)\b", re.I),
    re.compile(r"\b(hack|crack|exploit|vulnerability)\b", re.I),
    re.compile(r"\b(play (?:a )?game|trivia|for entertainment|entertainment purposes)\b", re.I),
    re.compile(r"\b(roleplay|role play|role-playing)\b", re.I),
    re.compile(r"\b(write\b.*\b(?:poem|story)|create\b.*\bart)\b", re.I),
    re.compile(r"\b(?:tell me about|explain|describe)\b.*\b(geography|history|science|technology|politics)\b", re.I),
]
ABUSIVE_PATTERNS = [
    re.compile(r"\b(kill|murder)\b", re.I),
    re.compile(r"\b(bomb|explosive|weapon)s?\b", re.I),
    re.compile(r"\b(hate speech|racist|sexist|homophobic)\b", re.I),
]
SPAM_MAX_CHARS = 2000

VIOLATION_RESPONSES = {
    "jailbreak_attempt": (
        "I'm a legal intake specialist and can only help with legal matters. "
        "I cannot change my role or provide other types of assistance."
    ),
    "non_legal_request": (
        "I'm a legal intake specialist and can only help with legal matters. I can help you with legal questions, "
        "case preparation, and connecting you with attorneys. How can I assist you with your legal needs?"
    ),
    "abusive_content": (
        "I cannot help with that type of request. I'm here to assist with legal matters only. If you have a legal "
        "question or need help with a legal issue, I'd be happy to help."
    ),
    "spam_content": (
        "I notice you've sent a very long message. Could you please provide a brief summary of your legal question "
        "or situation? I'm here to help with legal matters."
    ),
}


def find_violations(text: str, context: ConversationContext) -> List[str]:
    violations: List[str] = []
    if any(p.search(text) for p in JAILBREAK_PATTERNS):
        violations.append("jailbreak_attempt")
    # Follow-up questions are allowed once a legal matter is on the table.
    if not context.established_matters and any(p.search(text) for p in NON_LEGAL_PATTERNS):
        violations.append("non_legal_request")
    if any(p.search(text) for p in ABUSIVE_PATTERNS):
        violations.append("abusive_content")
    if _is_spam(text, context):
        violations.append("spam_content")
    return violations


def _is_spam(text: str, context: ConversationContext) -> bool:
    if len(text) > SPAM_MAX_CHARS:
        return True
    if context.message_count > 10:
        words = text.lower().split()
        if len(words) > 5 and len(set(words)) < len(words) * 0.3:
            return True
    return False


class ContentPolicyMiddleware(Middleware):
    name = "content_policy"
    fail_closed = True

    async def execute(self, messages, context, team_config):
        text = latest_user_text(messages)
        violations = find_violations(text, context)
        if not violations:
            return MiddlewareResult(context=context)
        logger.warning(
            "Content policy violation session=%s violations=%s message=%r",
            context.session_id,
            violations,
            text[:100],
        )
        context.safety_flags = [*context.safety_flags, *violations]
        return MiddlewareResult(
            context=context,
            response=VIOLATION_RESPONSES[violations[0]],
            metadata={"violations": violations, "reason": violations[0]},
            blocked=True,
        )


# Skip-to-lawyer detection is shared with business scope so handoff requests are never refused.

SKIP_KEYWORDS = [
    "skip the intake",
    "skip intake",
    "go directly to a lawyer",
    "find a lawyer",
    "need a lawyer",
    "want a lawyer",
    "connect with a lawyer",
    "speak to a lawyer",
    "talk to a lawyer",
    "get a lawyer",
    "hire a lawyer",
    "lawyer now",
    "urgent lawyer",
    "immediate lawyer",
]


def is_skip_request(text: str) -> bool:
    lowered = (text or "").lower()
    return any(keyword in lowered for keyword in SKIP_KEYWORDS)


class BusinessScopeMiddleware(Middleware):
    name = "business_scope"

    async def execute(self, messages, context, team_config):
        services = team_config.available_services
        if GENERAL_CONSULTATION in services:
            return MiddlewareResult(context=context)
        if any(matter in services for matter in context.established_matters):
            return MiddlewareResult(context=context)
        text = latest_user_text(messages)
        if is_skip_request(text):
            return MiddlewareResult(context=context)
        matters = extract_scope_matters(text)
        if matters:
            if any(matter in services for matter in matters):
                return MiddlewareResult(context=context)
            return MiddlewareResult(
                context=context,
                response=scope_referral_response(matters, services, team_config.name),
                metadata={"outOfScope": matters},
            )
        if is_general_legal_request(text) and not context.established_matters:
            return MiddlewareResult(context=context, response=general_legal_response(services, team_config.name))
        return MiddlewareResult(context=context)


def scope_referral_response(matters: List[str], services: List[str], team_name: str) -> str:
    matter_list = ", ".join(matters)
    available = ", ".join(services) or "a limited set of practice areas"
    return (
        f"I understand you're dealing with a {matter_list} matter. While {team_name} specializes in {available}, "
        f"I'd be happy to help you find a lawyer who specializes in {matter_list}.\n\n"
        "Would you like me to:\n"
        "1. Help you with a different legal matter that we do handle?\n"
        f"2. Provide you with resources to find a {matter_list} attorney?\n"
        f"3. Answer general questions about {matter_list}?"
    )


def general_legal_response(services: List[str], team_name: str) -> str:
    available = ", ".join(services) or "a limited set of practice areas"
    return (
        f"I'd be happy to help you with your legal needs! {team_name} specializes in {available}.\n\n"
        "To better assist you, could you tell me:\n"
        "1. What type of legal issue are you dealing with?\n"
        "2. What specific help do you need?\n\n"
        "This will help me determine if we can assist you directly or connect you with the right resources."
    )


class SkipToLawyerMiddleware(Middleware):
    """Explicit "just get me a lawyer" requests: lawyer search for public teams, contact form for firms."""

    name = "skip_to_lawyer"

    def __init__(
        self,
        lawyer_client: Optional[LawyerSearchClient],
        is_public_team: Callable[[TeamConfig], bool],
    ):
        self.lawyer_client = lawyer_client
        self.is_public_team = is_public_team

    async def execute(self, messages, context, team_config):
        text = latest_user_text(messages)
        if not is_skip_request(text):
            return MiddlewareResult(context=context)
        matter_type = matter_from_keywords(text) or (
            context.established_matters[0] if context.established_matters else GENERAL_CONSULTATION
        )
        urgency = detect_urgency(text)
        reason = text if len(text) <= 100 else text[:100] + "..."
        context.user_intent = "lawyer_contact"
        context = advance_phase(context, "handoff")
        if self.is_public_team(team_config):
            return await self._public_mode(context, matter_type)
        context.pending_contact_form = PendingContactForm(matter_type=matter_type, urgency=urgency, reason=reason)
        return MiddlewareResult(
            context=context,
            response=contact_form_response(matter_type),
            metadata={"action": "show_contact_form", "matterType": matter_type, "urgency": urgency},
        )

    async def _public_mode(self, context: ConversationContext, matter_type: str) -> MiddlewareResult:
        if self.lawyer_client is None or not self.lawyer_client.enabled:
            logger.warning("Lawyer search unavailable for session %s", context.session_id)
            return self._fallback(context, matter_type, "Our lawyer search service is temporarily unavailable.")
        try:
            results = await self.lawyer_client.search_by_matter_type(matter_type, context.contact_info.location)
        except LawyerSearchError as exc:
            logger.warning("Lawyer search failed for session %s: %s", context.session_id, exc)
            return self._fallback(context, matter_type, str(exc))
        context.lawyer_search_results = results
        return MiddlewareResult(
            context=context,
            response=lawyer_results_response(results.total, matter_type, results.lawyers),
            metadata={"action": "lawyer_search_success", "total": results.total},
        )

    def _fallback(self, context: ConversationContext, matter_type: str, reason: str) -> MiddlewareResult:
        return MiddlewareResult(
            context=context,
            response=case_preparation_fallback(reason, matter_type),
            metadata={
                "action": "quota_exceeded_fallback",
                "matterType": matter_type,
                "alternatives": ["bar_association", "online_directories", "case_preparation"],
            },
        )


def lawyer_results_response(total: int, matter_type: str, lawyers) -> str:
    lines = []
    for index, lawyer in enumerate(lawyers[:5], 1):
        entry = f"{index}. **{lawyer.name}**"
        if lawyer.firm:
            entry += f" ({lawyer.firm})"
        entry += f"\n   Location: {lawyer.location or 'Unknown'}"
        entry += f"\n   Rating: {f'{lawyer.rating}/5' if lawyer.rating else 'No rating'}"
        if lawyer.phone:
            entry += f"\n   Phone: {lawyer.phone}"
        if lawyer.email:
            entry += f"\n   Email: {lawyer.email}"
        lines.append(entry)
    listing = "\n\n".join(lines) if lines else "No lawyers were listed for your area yet."
    return (
        f"I found {total} qualified {matter_type} lawyers in your area! Here are the top matches:\n\n"
        f"**Available Lawyers:**\n{listing}\n\n"
        "**Next Steps:**\n"
        "- Contact any of these lawyers directly\n"
        "- Ask about consultation fees and availability\n"
        "- Schedule a consultation to discuss your case\n\n"
        "Would you like me to help you prepare your case information before meeting with a lawyer?"
    )


def case_preparation_fallback(reason: str, matter_type: str) -> str:
    return (
        f"{reason}\n\n"
        "**But don't worry!** I can still help you get ready:\n"
        "- Organize your facts and timeline\n"
        "- Create a professional case summary\n"
        "- Generate a PDF you can share with any lawyer\n"
        "- Build a document checklist\n\n"
        "**Finding Lawyers:**\n"
        "- Contact your local bar association\n"
        "- Use online attorney directories\n"
        "- Check with legal aid organizations\n\n"
        f"Just tell me about your {matter_type} situation and I'll help you organize everything into a case file."
    )


def contact_form_response(matter_type: str) -> str:
    return (
        "I understand you want to skip the intake process and connect directly with our legal team. "
        "I'll show you our contact form so we can get in touch with you right away.\n\n"
        "**Contact Information Required:**\n"
        "- Full Name\n- Email Address\n- Phone Number\n- Location (City, State)\n"
        f"- Brief description of your {matter_type} matter\n\n"
        "A qualified attorney will review your information and contact you within 24 hours."
    )


# Jurisdiction

LOCATION_REQUEST = (
    "To help you best, could you please tell me your city and state? "
    "This helps us provide location-specific legal guidance."
)


def location_supported(location: str, jurisdiction: JurisdictionConfig) -> bool:
    states = jurisdiction.supported_states
    countries = jurisdiction.supported_countries
    if "all" in states or "all" in countries:
        return True
    if location in states:
        return True
    return "US" in countries and is_us_state(location)


def jurisdiction_warning(location: str, jurisdiction: JurisdictionConfig, team_name: str) -> str:
    if "all" in jurisdiction.supported_states:
        areas = "all US states"
    elif jurisdiction.supported_states:
        areas = ", ".join(jurisdiction.supported_states)
    elif jurisdiction.supported_countries:
        areas = ", ".join(jurisdiction.supported_countries)
    else:
        areas = "a limited set of areas"
    return (
        f"I notice you're located in {location}. {team_name} primarily serves clients in {areas}.\n\n"
        "While I can still help you with general legal information and case preparation, you may want to consult "
        f"with a local attorney in {location} for specific legal advice and representation.\n\n"
        "Would you like me to:\n"
        "1. Continue helping you with general legal guidance?\n"
        f"2. Help you find a local attorney in {location}?"
    )


class JurisdictionMiddleware(Middleware):
    name = "jurisdiction"

    async def execute(self, messages, context, team_config):
        jurisdiction = team_config.jurisdiction
        if jurisdiction is None:
            return MiddlewareResult(context=context)
        if not jurisdiction.supported_states and not jurisdiction.supported_countries:
            logger.warning("Team %s has an empty jurisdiction config, skipping check", team_config.id)
            return MiddlewareResult(context=context)
        location = context.jurisdiction or extract_state(latest_user_text(messages))
        if location:
            if location_supported(location, jurisdiction):
                return MiddlewareResult(context=context)
            # Warn once per session; later turns continue with general guidance.
            if "out_of_jurisdiction" in context.safety_flags:
                return MiddlewareResult(context=context)
            context.jurisdiction = location
            context.safety_flags = [*context.safety_flags, "out_of_jurisdiction"]
            return MiddlewareResult(
                context=context,
                response=jurisdiction_warning(location, jurisdiction, team_config.name),
                metadata={"outOfJurisdiction": location},
            )
        if jurisdiction.require_location:
            return MiddlewareResult(context=context, response=LOCATION_REQUEST)
        return MiddlewareResult(context=context)
