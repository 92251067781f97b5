import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .schemas import ConversationContext, Message, PipelineResult, TeamConfig

logger = logging.getLogger("uvicorn.error")

SAFE_BLOCK_RESPONSE = (
    "I'm sorry, I can't help with that request right now. "
    "If you have a legal question, please describe your situation and I'll do my best to help."
)


@dataclass
class MiddlewareResult:
    context: ConversationContext
    response: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    blocked: bool = False


class Middleware:
    """One pipeline stage.

    ``execute`` receives its own copy of the context and returns the (possibly new) context,
    optionally with a response that ends the pipeline for this turn.
    """

    name = "middleware"
    fail_closed = False

    async def execute(
        self,
        messages: Sequence[Message],
        context: ConversationContext,
        team_config: TeamConfig,
    ) -> MiddlewareResult:
        raise NotImplementedError


class LoggingMiddleware(Middleware):
    name = "logging"

    async def execute(self, messages, context, team_config):
        latest = messages[-1].content if messages else ""
        logger.info(
            "Turn session=%s messages=%s latest=%r matters=%s intent=%s services=%s",
            context.session_id,
            len(messages),
            latest[:100],
            context.established_matters,
            context.user_intent,
            team_config.available_services,
        )
        return MiddlewareResult(context=context)


async def run_pipeline(
    messages: Sequence[Message],
    context: ConversationContext,
    team_config: TeamConfig,
    middlewares: Sequence[Middleware],
) -> PipelineResult:
    current = context
    used: List[str] = []
    metadata: Dict[str, Any] = {}
    for middleware in middlewares:
        # Each stage gets a private copy so a failing stage cannot leave partial mutations behind.
        working = current.model_copy(deep=True)
        try:
            result = await middleware.execute(messages, working, team_config)
        except Exception as exc:
            if middleware.fail_closed:
                logger.warning("Middleware %s failed, blocking turn: %s", middleware.name, exc)
                used.append(middleware.name)
                return PipelineResult(
                    response=SAFE_BLOCK_RESPONSE,
                    context=current,
                    middleware_used=used,
                    blocked=True,
                    metadata={**metadata, "failedMiddleware": middleware.name},
                )
            logger.warning("Middleware %s failed, skipping: %s", middleware.name, exc)
            continue
        if middleware.name != "logging":
            used.append(middleware.name)
        current = result.context
        metadata.update(result.metadata)
        if result.response is not None:
            return PipelineResult(
                response=result.response,
                context=current,
                middleware_used=used,
                blocked=result.blocked,
                metadata=metadata,
            )
    return PipelineResult(response=None, context=current, middleware_used=used, metadata=metadata)
