import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from pydantic import ValidationError

from .agents import analysis_prompt, intake_prompt, paralegal_prompt
from .casework import CaseDraftMiddleware, DocumentChecklistMiddleware, PdfGenerationMiddleware
from .config import AppSettings
from .context_store import ContextStore, advance_phase
from .db import Database
from .lawyers import LawyerSearchClient
from .llm import LMStudioClient
from .pipeline import LoggingMiddleware, Middleware, run_pipeline
from .policies import BusinessScopeMiddleware, ContentPolicyMiddleware, JurisdictionMiddleware, SkipToLawyerMiddleware
from .retry import with_retry
from .router import SupervisorRouter
from .schemas import (
    AgentKind,
    CompleteEvent,
    ConnectedEvent,
    ConversationContext,
    ErrorEvent,
    FinalEvent,
    PipelineResponseEvent,
    SecurityBlockEvent,
    TeamConfig,
    TextEvent,
    ToolCallEvent,
    ToolResultEvent,
    TurnRequest,
    TypingEvent,
)
from .storage import FileStore
from .streaming import EventChannel, StreamClosed, ToolMarkerFilter, context_events, new_correlation_id, tool_events
from .tools import TOOL_HANDLERS, ToolCallParseError, ToolContext, parse_tool_call, visible_text

logger = logging.getLogger("uvicorn.error")

GENERIC_ERROR = "Something went wrong while preparing a response. Please try again."
TOOL_PARSE_FALLBACK = "I had trouble completing that step. Could you please rephrase your request?"


class TurnValidationError(ValueError):
    pass


def validate_turn(payload: Any, settings: AppSettings) -> TurnRequest:
    """Parse an inbound turn; any problem rejects the whole turn before side effects."""
    try:
        turn = TurnRequest.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        message = str(first.get("msg") or "Invalid request body")
        raise TurnValidationError(message.removeprefix("Value error, ")) from exc
    if len(turn.messages) > settings.max_messages:
        raise TurnValidationError(f"Too many messages (>{settings.max_messages}).")
    cap = settings.attachment_max_mb * 1024 * 1024
    for attachment in turn.attachments:
        parsed = urlparse(attachment.url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise TurnValidationError(f"Attachment {attachment.name!r} must use an absolute http(s) URL.")
        if attachment.size < 0 or attachment.size > cap:
            raise TurnValidationError(f"Attachment {attachment.name!r} is too large (>{settings.attachment_max_mb} MB).")
    return turn


def default_middlewares(
    settings: AppSettings,
    lawyer_client: Optional[LawyerSearchClient] = None,
    file_store: Optional[FileStore] = None,
) -> List[Middleware]:
    return [
        LoggingMiddleware(),
        ContentPolicyMiddleware(),
        BusinessScopeMiddleware(),
        SkipToLawyerMiddleware(lawyer_client, settings.is_public_team),
        JurisdictionMiddleware(),
        CaseDraftMiddleware(),
        DocumentChecklistMiddleware(),
        PdfGenerationMiddleware(file_store),
    ]


def conversation_state(context: ConversationContext, saved: bool) -> Dict[str, Any]:
    return {
        "conversationPhase": context.conversation_phase,
        "establishedMatters": list(context.established_matters),
        "userIntent": context.user_intent,
        "persisted": saved,
    }


class TurnOrchestrator:
    """Run one conversation turn and push its events into an ``EventChannel``."""

    def __init__(
        self,
        settings: AppSettings,
        db: Database,
        lm_client: LMStudioClient,
        lawyer_client: Optional[LawyerSearchClient] = None,
        file_store: Optional[FileStore] = None,
        middlewares: Optional[Sequence[Middleware]] = None,
        router: Optional[SupervisorRouter] = None,
        store: Optional[ContextStore] = None,
    ):
        self.settings = settings
        self.db = db
        self.lm_client = lm_client
        self.store = store or ContextStore(db)
        self.router = router or SupervisorRouter()
        self.middlewares = list(middlewares) if middlewares is not None else default_middlewares(
            settings, lawyer_client, file_store
        )

    async def run_turn(self, turn: TurnRequest, channel: EventChannel) -> None:
        correlation_id = new_correlation_id()
        try:
            await channel.send(ConnectedEvent())
            await self._handle(turn, channel, correlation_id)
            await channel.send(CompleteEvent())
            await channel.close()
        except StreamClosed:
            logger.info("Client left session %s mid-stream (correlation %s)", turn.session_id, correlation_id)
        except asyncio.CancelledError:
            logger.info("Turn for session %s cancelled (correlation %s)", turn.session_id, correlation_id)
            raise
        except Exception:
            logger.exception("Turn failed for session %s (correlation %s)", turn.session_id, correlation_id)
            try:
                await channel.send(ErrorEvent(message=GENERIC_ERROR, correlation_id=correlation_id))
                await channel.close()
            except StreamClosed:
                pass

    async def _handle(self, turn: TurnRequest, channel: EventChannel, correlation_id: str) -> None:
        team = self.settings.team_config(turn.team_id)
        team_id = turn.team_id or team.id or self.settings.default_team_id
        agent = self.router.route(turn, team)

        loaded = await self.store.load(turn.session_id, team_id)
        context = self.store.update_context(loaded, turn.messages)
        result = await run_pipeline(turn.messages, context, team, self.middlewares)
        saved = await self.store.save(result.context)

        if result.response is not None:
            if result.blocked:
                await channel.send(
                    SecurityBlockEvent(
                        response=result.response,
                        reason=result.metadata.get("reason") or result.metadata.get("failedMiddleware"),
                        violations=result.metadata.get("violations") or [],
                    )
                )
                return
            await channel.send(PipelineResponseEvent(response=result.response, middleware_used=result.middleware_used))
            for event in context_events(loaded, result.context):
                await channel.send(event)
            await channel.send(
                FinalEvent(response=result.response, conversation_state=conversation_state(result.context, saved))
            )
            return

        await self._stream_agent(agent, turn, result.context, team, channel, correlation_id, saved=saved)

    async def _agent_messages(
        self, agent: AgentKind, turn: TurnRequest, context: ConversationContext, team: TeamConfig
    ) -> List[Dict[str, Any]]:
        if agent == "analysis":
            system = analysis_prompt(team, await self._document_summaries(turn))
        elif agent == "paralegal":
            system = paralegal_prompt(context, team)
        else:
            system = intake_prompt(context, team)
        history = [{"role": m.role, "content": m.content} for m in turn.messages if m.role != "system"]
        return [{"role": "system", "content": system}, *history]

    async def _document_summaries(self, turn: TurnRequest) -> List[str]:
        previews = await self.db.list_previews(turn.session_id)
        summaries = [f"{p.get('name') or p['key']}: {p.get('summary', '')}" for p in previews]
        seen = {p.get("name") for p in previews} | {p["key"] for p in previews}
        for attachment in turn.attachments:
            if attachment.name not in seen and attachment.id not in seen:
                summaries.append(f"{attachment.name}: still being analyzed")
        return summaries

    async def _open_stream(self, messages: List[Dict[str, Any]]) -> Tuple[AsyncIterator[str], Optional[str]]:
        """Start a model stream, retrying transient failures until the first chunk arrives."""
        endpoint = self.settings.agent_endpoint

        async def attempt() -> Tuple[AsyncIterator[str], Optional[str]]:
            stream = self.lm_client.stream_text(
                endpoint.model_id,
                messages,
                temperature=self.settings.agent_temperature,
                max_tokens=self.settings.agent_max_tokens,
                base_url=endpoint.base_url,
            )
            try:
                first = await stream.__anext__()
            except StopAsyncIteration:
                return stream, None
            return stream, first

        return await with_retry(attempt, self.settings.retry, operation="agent stream")

    async def _stream_agent(
        self,
        agent: AgentKind,
        turn: TurnRequest,
        context: ConversationContext,
        team: TeamConfig,
        channel: EventChannel,
        correlation_id: str,
        saved: bool,
    ) -> None:
        messages = await self._agent_messages(agent, turn, context, team)
        stream, first = await self._open_stream(messages)
        text_filter = ToolMarkerFilter()
        try:
            if first is not None:
                visible = text_filter.feed(first)
                if visible:
                    await channel.send(TextEvent(text=visible))
                async for delta in stream:
                    visible = text_filter.feed(delta)
                    if visible:
                        await channel.send(TextEvent(text=visible))
        finally:
            await stream.aclose()
        tail = text_filter.flush()
        if tail:
            await channel.send(TextEvent(text=tail))

        full_text = text_filter.full_text
        try:
            call = parse_tool_call(full_text)
        except ToolCallParseError as exc:
            logger.warning("Bad tool call from %s agent (correlation %s): %s", agent, correlation_id, exc)
            await channel.send(FinalEvent(response=visible_text(full_text) or TOOL_PARSE_FALLBACK))
            return
        if call is None:
            await channel.send(FinalEvent(response=full_text.strip(), conversation_state=conversation_state(context, saved)))
            return

        await channel.send(TypingEvent(message="Working on it..."))
        await channel.send(ToolCallEvent(tool_name=call.name, parameters=call.parameters))
        handler = TOOL_HANDLERS.get(call.name)
        if handler is None:
            logger.warning("Unknown tool %s requested (correlation %s)", call.name, correlation_id)
            result = {"success": False, "message": TOOL_PARSE_FALLBACK, "data": {}}
        else:
            result = await handler(call.parameters, ToolContext(self.db, turn.session_id, team, context))
        await channel.send(ToolResultEvent(tool_name=call.name, result=result))
        for event in tool_events(call.name, result):
            await channel.send(event)

        if call.name == "create_matter" and result.get("success"):
            context = advance_phase(context, "handoff")
            context.user_intent = "intake"
            saved = await self.store.save(context)
        response = "\n\n".join(part for part in (visible_text(full_text), result.get("message") or "") if part)
        await channel.send(FinalEvent(response=response, conversation_state=conversation_state(context, saved)))
