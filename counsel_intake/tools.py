import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .db import Database
from .matters import EMAIL_RE, PHONE_RE
from .schemas import ConversationContext, TeamConfig

logger = logging.getLogger("uvicorn.error")

TOOL_MARKER = "TOOL_CALL:"
_TOOL_NAME_RE = re.compile(r"TOOL_CALL:\s*([\w_]+)")
_PARAMETERS_RE = re.compile(r"PARAMETERS:\s*(\{.*\})", re.S)

CONTACT_FORM_FIELDS = ["name", "email", "phone", "location", "opposingParty"]


class ToolCallParseError(ValueError):
    pass


@dataclass
class ToolCall:
    name: str
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolContext:
    db: Database
    session_id: str
    team: TeamConfig
    context: ConversationContext


def parse_tool_call(text: str) -> Optional[ToolCall]:
    """Return the tool call embedded in a model response, ``None`` when there is none."""
    if TOOL_MARKER not in (text or ""):
        return None
    name_match = _TOOL_NAME_RE.search(text)
    params_match = _PARAMETERS_RE.search(text)
    if not name_match or not params_match:
        raise ToolCallParseError("Incomplete tool call format - missing tool name or parameters")
    try:
        parameters = json.loads(params_match.group(1).strip())
    except json.JSONDecodeError as exc:
        raise ToolCallParseError("Failed to parse tool parameters") from exc
    if not isinstance(parameters, dict):
        raise ToolCallParseError("Tool parameters must be a JSON object")
    return ToolCall(name=name_match.group(1).lower(), parameters=parameters)


def visible_text(text: str) -> str:
    """Model output with any trailing tool call removed."""
    index = (text or "").find(TOOL_MARKER)
    return text if index < 0 else text[:index].rstrip()


def _ok(message: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"success": True, "message": message, "data": data or {}}


def _fail(message: str) -> Dict[str, Any]:
    return {"success": False, "message": message, "data": {}}


def requires_location(team: TeamConfig) -> bool:
    return bool(team.jurisdiction and team.jurisdiction.require_location)


def contact_form_required(team: TeamConfig) -> List[str]:
    required = ["name", "email", "phone"]
    if requires_location(team):
        required.append("location")
    return required


async def create_matter(params: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    name = str(params.get("name") or ctx.context.contact_info.name or "").strip()
    matter_type = str(params.get("matter_type") or "").strip()
    description = str(params.get("description") or "").strip()
    email = str(params.get("email") or ctx.context.contact_info.email or "").strip()
    phone = str(params.get("phone") or ctx.context.contact_info.phone or "").strip()
    location = str(params.get("location") or ctx.context.contact_info.location or "").strip()
    missing = [label for label, value in (("name", name), ("matter type", matter_type), ("description", description)) if not value]
    if missing:
        return _fail(f"I still need your {', '.join(missing)} before I can create your matter.")
    if not email and not phone:
        return _fail("I need either an email address or a phone number so the legal team can reach you.")
    if email and not EMAIL_RE.fullmatch(email):
        return _fail("The email address you provided doesn't look valid. Could you please provide a valid email address?")
    if phone and not PHONE_RE.fullmatch(phone):
        return _fail("The phone number you provided doesn't look valid. Could you please provide a valid phone number?")
    if requires_location(ctx.team) and not location:
        return _fail("Could you please tell me your city and state before I create your matter?")
    urgency = str(params.get("urgency") or "medium")
    matter_id = str(uuid.uuid4())
    payload = {
        "name": name,
        "email": email or None,
        "phone": phone or None,
        "location": location or None,
        "urgency": urgency,
        "opposingParty": params.get("opposing_party"),
    }
    await ctx.db.add_matter(matter_id, ctx.session_id, ctx.team.id, matter_type, description, payload)
    return _ok(
        f"Thank you, {name}. I've created your {matter_type} matter. A lawyer will contact you within 24 hours.",
        {
            "matter": {
                "type": matter_type,
                "description": description,
                "urgency": urgency,
                "matterId": matter_id,
                "name": name,
            }
        },
    )


async def show_contact_form(params: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    message = str(params.get("message") or "Please fill out the contact form below.")
    return _ok(message, {"message": message, "fields": CONTACT_FORM_FIELDS, "required": contact_form_required(ctx.team)})


async def request_lawyer_review(params: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    logger.info(
        "Lawyer review requested session=%s matter=%s complexity=%s",
        ctx.session_id,
        params.get("matter_type"),
        params.get("complexity"),
    )
    return _ok(
        "I've requested a lawyer review for your case. A lawyer will review your case and contact you to discuss further.",
        {"matterType": params.get("matter_type"), "complexity": params.get("complexity")},
    )


ToolHandler = Callable[[Dict[str, Any], ToolContext], Awaitable[Dict[str, Any]]]

TOOL_HANDLERS: Dict[str, ToolHandler] = {
    "create_matter": create_matter,
    "show_contact_form": show_contact_form,
    "request_lawyer_review": request_lawyer_review,
}
