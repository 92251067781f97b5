import logging
import re
from typing import List, Sequence

from .schemas import AgentKind, Message, TeamConfig, TurnRequest

logger = logging.getLogger("uvicorn.error")

INTAKE_MARKERS = [
    "can you please provide your full name",
    "thank you! now i need your phone number",
    "thank you! now i need your email address",
    "could you please provide a valid phone number",
    "could you please provide a valid email address",
    "i need your name to proceed",
    "i have your contact information",
    "the phone number you provided",
    "the email address you provided",
]
PHONE_RE = re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b")
EMAIL_RE = re.compile(r"\b[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}\b")

ATTORNEY_OFFER = "would you like me to connect you with"
AFFIRMATIVE_REPLIES = {"yes", "yeah", "sure", "ok"}
WANTS_HUMAN_RE = re.compile(r"\b(lawyer|attorney|human|person|call|phone|consult|consultation)\b", re.I)

ANALYSIS_KEYWORDS = ["analyze document", "pdf", "ocr", "extract", "review document"]
PARALEGAL_KEYWORDS = [
    "matter formation",
    "engagement letter",
    "conflict check",
    "retainer",
    "checklist",
    "stage",
    "document requirements",
    "fee scope",
    "filing prep",
    "case status",
    "paralegal",
]
POST_PAYMENT_KEYWORDS = [
    "paid",
    "payment complete",
    "now what",
    "next steps",
    "what happens now",
    "consultation",
    "proceeding",
    "continue",
    "move forward",
    "what now",
]
LEGAL_CONTEXT_WORDS = ["legal", "lawyer", "attorney", "divorce", "employment", "matter"]
INTAKE_COMPLETION_MARKERS = [
    "perfect! i have all the information",
    "here's a summary of your matter",
    "consultation fee",
    "pay $",
    "payment using the embedded",
    "lawyer will contact you within",
    "matter created",
]
ACKNOWLEDGEMENTS = {"ok", "yes", "done", "completed", "finished", "thanks"}
PAYMENT_MENTIONS = ["pay $", "payment", "consultation fee"]
POST_PAYMENT_QUERIES = [
    "what now",
    "now what",
    "what next",
    "next steps",
    "what happens",
    "proceed",
    "continue",
    "move forward",
    "what do we do",
]


def _transcript(messages: Sequence[Message]) -> str:
    return " ".join(msg.content for msg in messages).lower()


def is_in_intake_flow(messages: Sequence[Message]) -> bool:
    text = _transcript(messages)
    if any(marker in text for marker in INTAKE_MARKERS):
        return True
    return bool(PHONE_RE.search(text) or EMAIL_RE.search(text))


def accepted_attorney_offer(messages: Sequence[Message]) -> bool:
    if len(messages) < 2:
        return False
    reply = messages[-1].content.strip().lower().rstrip(".!")
    if reply not in AFFIRMATIVE_REPLIES:
        return False
    previous = messages[-2]
    return previous.role == "assistant" and ATTORNEY_OFFER in previous.content.lower()


def wants_human(messages: Sequence[Message]) -> bool:
    if accepted_attorney_offer(messages):
        return True
    return bool(WANTS_HUMAN_RE.search(messages[-1].content))


def needs_analysis(turn: TurnRequest) -> bool:
    if turn.attachments:
        return True
    latest = turn.messages[-1].content.lower()
    return any(keyword in latest for keyword in ANALYSIS_KEYWORDS)


def has_completed_intake_flow(messages: Sequence[Message]) -> bool:
    text = _transcript(messages)
    return any(marker in text for marker in INTAKE_COMPLETION_MARKERS)


def is_post_payment_query(messages: Sequence[Message]) -> bool:
    """A bare acknowledgement right after a payment prompt, or an explicit what-next question."""
    latest = messages[-1].content.strip().lower()
    if latest in ACKNOWLEDGEMENTS:
        replies = [msg for msg in messages[:-1] if msg.role == "assistant"]
        if replies:
            previous = replies[-1].content.lower()
            return any(mention in previous for mention in PAYMENT_MENTIONS)
    return any(query in latest for query in POST_PAYMENT_QUERIES)


def matches_paralegal_keywords(messages: Sequence[Message]) -> bool:
    """Post-payment follow-up after a finished intake, explicit paralegal vocabulary,
    or a post-payment style phrase in a legal conversation.

    The post-payment checks are heuristics: short acknowledgements can be misrouted.
    """
    if has_completed_intake_flow(messages) and is_post_payment_query(messages):
        return True
    latest = messages[-1].content.lower()
    if any(keyword in latest for keyword in PARALEGAL_KEYWORDS):
        return True
    if any(keyword in latest for keyword in POST_PAYMENT_KEYWORDS):
        text = _transcript(messages)
        return any(word in text for word in LEGAL_CONTEXT_WORDS)
    return False


class SupervisorRouter:
    """Pick the agent for a turn; earlier checks always win over later ones."""

    def route(self, turn: TurnRequest, team_config: TeamConfig) -> AgentKind:
        messages: List[Message] = list(turn.messages)
        features = team_config.features
        if is_in_intake_flow(messages):
            decision: AgentKind = "intake"
        elif wants_human(messages):
            decision = "intake"
        elif needs_analysis(turn):
            decision = "analysis"
        elif features.enable_paralegal_agent and features.paralegal_first:
            decision = "paralegal"
        elif features.enable_paralegal_agent or matches_paralegal_keywords(messages):
            decision = "paralegal"
        else:
            decision = "intake"
        logger.info("Routed session %s to %s agent", turn.session_id, decision)
        return decision
