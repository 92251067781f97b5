import uuid
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel


Role = Literal["user", "assistant", "system"]
ConversationPhase = Literal["greeting", "gathering", "drafted", "document_check", "handoff", "closed"]
UserIntent = Literal["intake", "lawyer_contact", "general_info", "unclear"]
StatusState = Literal["queued", "processing", "completed", "failed"]
AgentKind = Literal["paralegal", "analysis", "intake"]

PHASE_ORDER: List[str] = ["greeting", "gathering", "drafted", "document_check", "handoff", "closed"]
TERMINAL_STATUSES = {"completed", "failed"}


class CamelModel(BaseModel):
    """Wire model: camelCase on the wire, snake_case in Python, either accepted on input."""

    model_config = {"alias_generator": to_camel, "populate_by_name": True, "protected_namespaces": ()}

    def wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Message(BaseModel):
    role: Role
    content: str

    model_config = {"frozen": True, "extra": "ignore"}


class Attachment(CamelModel):
    id: Optional[str] = None
    name: str
    size: int
    type: str
    url: str


class TurnRequest(CamelModel):
    messages: List[Message] = Field(min_length=1)
    team_id: Optional[str] = None
    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    attachments: List[Attachment] = Field(default_factory=list)

    @field_validator("messages")
    @classmethod
    def _latest_has_content(cls, value: List[Message]) -> List[Message]:
        if not value[-1].content.strip():
            raise ValueError("No message content provided")
        return value


# Team configuration (read-only, supplied by the host product)


class JurisdictionConfig(CamelModel):
    supported_states: List[str] = Field(default_factory=list)
    supported_countries: List[str] = Field(default_factory=list)
    require_location: bool = False


class TeamFeatures(CamelModel):
    enable_paralegal_agent: bool = False
    paralegal_first: bool = False


class TeamConfig(CamelModel):
    id: str = ""
    slug: Optional[str] = None
    name: str = "our legal team"
    available_services: List[str] = Field(default_factory=list)
    jurisdiction: Optional[JurisdictionConfig] = None
    features: TeamFeatures = Field(default_factory=TeamFeatures)
    brand_color: str = "#334e68"

    model_config = {"extra": "allow"}


# Conversation context


class CaseDraft(BaseModel):
    matter_type: str
    key_facts: List[str] = Field(default_factory=list)
    timeline: str = ""
    parties: List[Dict[str, Any]] = Field(default_factory=list)
    documents: List[str] = Field(default_factory=list)
    evidence: List[str] = Field(default_factory=list)
    jurisdiction: str = ""
    urgency: Literal["low", "medium", "high", "urgent"] = "medium"
    status: Literal["draft", "ready"] = "draft"
    created_at: str = ""
    updated_at: str = ""


class DocumentChecklist(BaseModel):
    matter_type: str
    required: List[str] = Field(default_factory=list)
    provided: List[str] = Field(default_factory=list)
    missing: List[str] = Field(default_factory=list)
    last_updated: str = ""


class GeneratedPDF(CamelModel):
    filename: str
    size: int
    generated_at: str
    matter_type: str
    storage_key: str


class Lawyer(CamelModel):
    id: str
    name: str
    firm: Optional[str] = None
    location: str = ""
    practice_areas: List[str] = Field(default_factory=list)
    rating: Optional[float] = None
    review_count: Optional[int] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None

    model_config = {"extra": "allow"}


class LawyerSearchResults(CamelModel):
    matter_type: str
    lawyers: List[Lawyer] = Field(default_factory=list)
    total: int = 0


class ContactInfo(CamelModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[str] = None


class PendingContactForm(CamelModel):
    matter_type: str
    urgency: str
    reason: str


class ConversationContext(CamelModel):
    session_id: str
    organization_id: str
    established_matters: List[str] = Field(default_factory=list)
    jurisdiction: Optional[str] = None
    safety_flags: List[str] = Field(default_factory=list)
    user_intent: Optional[UserIntent] = None
    conversation_phase: ConversationPhase = "greeting"
    message_count: int = 0
    contact_info: ContactInfo = Field(default_factory=ContactInfo)
    case_draft: Optional[CaseDraft] = None
    document_checklist: Optional[DocumentChecklist] = None
    generated_pdf: Optional[GeneratedPDF] = Field(default=None, alias="generatedPDF")
    lawyer_search_results: Optional[LawyerSearchResults] = None
    pending_contact_form: Optional[PendingContactForm] = None
    last_updated: Optional[str] = None


class PipelineResult(CamelModel):
    response: Optional[str] = None
    context: ConversationContext
    middleware_used: List[str] = Field(default_factory=list)
    blocked: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


# Status records and document analysis


class StatusRecord(CamelModel):
    id: str
    session_id: str
    organization_id: str
    type: str = "file_processing"
    status: StatusState = "queued"
    message: str = ""
    progress: int = Field(default=0, ge=0, le=100)
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    expires_at: Optional[str] = None


class Entities(BaseModel):
    people: List[str] = Field(default_factory=list)
    orgs: List[str] = Field(default_factory=list)
    dates: List[str] = Field(default_factory=list)


class AnalysisResult(BaseModel):
    summary: str = Field(min_length=1)
    entities: Entities = Field(default_factory=Entities)
    key_facts: List[str] = Field(default_factory=list)
    action_items: List[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    error: Optional[str] = None

    @classmethod
    def failure(cls, summary: str, error: str) -> "AnalysisResult":
        return cls(summary=summary, confidence=0.0, error=error)


class FileRef(CamelModel):
    key: str
    name: str
    mime: str
    size: int = 0


class AutoAnalysisJob(CamelModel):
    type: Literal["analyze_uploaded_document"] = "analyze_uploaded_document"
    session_id: str
    organization_id: str
    file: FileRef
    status_id: Optional[str] = None


class DocumentJob(CamelModel):
    key: str
    organization_id: str
    session_id: str
    mime: str


# Stream events (tagged union on ``type``)


class ConnectedEvent(CamelModel):
    type: Literal["connected"] = "connected"


class TextEvent(CamelModel):
    type: Literal["text"] = "text"
    text: str


class TypingEvent(CamelModel):
    type: Literal["typing"] = "typing"
    message: Optional[str] = None


class ToolCallEvent(CamelModel):
    type: Literal["tool_call"] = "tool_call"
    tool_name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ToolResultEvent(CamelModel):
    type: Literal["tool_result"] = "tool_result"
    tool_name: str
    result: Dict[str, Any] = Field(default_factory=dict)


class SecurityBlockEvent(CamelModel):
    type: Literal["security_block"] = "security_block"
    response: str
    reason: Optional[str] = None
    violations: List[str] = Field(default_factory=list)


class PipelineResponseEvent(CamelModel):
    type: Literal["pipeline_response"] = "pipeline_response"
    response: str
    middleware_used: List[str] = Field(default_factory=list)


class FinalEvent(CamelModel):
    type: Literal["final"] = "final"
    response: str
    conversation_state: Optional[Dict[str, Any]] = None


class CompleteEvent(CamelModel):
    type: Literal["complete"] = "complete"


class ErrorEvent(CamelModel):
    type: Literal["error"] = "error"
    message: str
    correlation_id: str


class MatterSummary(CamelModel):
    type: str
    description: str
    urgency: Optional[str] = None
    matter_id: Optional[str] = None

    model_config = {"extra": "allow"}


class MatterCanvasData(CamelModel):
    matter: MatterSummary


class MatterCanvasEvent(CamelModel):
    type: Literal["matter_canvas"] = "matter_canvas"
    data: MatterCanvasData


class DocumentChecklistEvent(CamelModel):
    type: Literal["document_checklist"] = "document_checklist"
    data: DocumentChecklist


class PdfGenerationEvent(CamelModel):
    type: Literal["pdf_generation"] = "pdf_generation"
    data: GeneratedPDF


class LawyerSearchEvent(CamelModel):
    type: Literal["lawyer_search"] = "lawyer_search"
    data: LawyerSearchResults


class ContactFormData(CamelModel):
    fields: List[str]
    required: List[str]
    message: str = "Please fill out the contact form below."


class ContactFormEvent(CamelModel):
    type: Literal["contact_form"] = "contact_form"
    data: ContactFormData


StreamEvent = Annotated[
    Union[
        ConnectedEvent,
        TextEvent,
        TypingEvent,
        ToolCallEvent,
        ToolResultEvent,
        SecurityBlockEvent,
        PipelineResponseEvent,
        FinalEvent,
        CompleteEvent,
        ErrorEvent,
        MatterCanvasEvent,
        DocumentChecklistEvent,
        PdfGenerationEvent,
        LawyerSearchEvent,
        ContactFormEvent,
    ],
    Field(discriminator="type"),
]
STREAM_EVENT_ADAPTER: TypeAdapter = TypeAdapter(StreamEvent)
EVENT_TYPES = {
    "connected",
    "text",
    "typing",
    "tool_call",
    "tool_result",
    "security_block",
    "pipeline_response",
    "final",
    "complete",
    "error",
    "matter_canvas",
    "document_checklist",
    "pdf_generation",
    "lawyer_search",
    "contact_form",
}
