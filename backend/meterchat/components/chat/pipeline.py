"""
Credit-gated chat pipeline.

Validating -> Authenticating -> Pricing -> Reserving -> SessionResolving ->
LoggingUserTurn -> Streaming -> LoggingAssistantTurn -> Done, with Aborted
reachable from every state before Done. Credits are reserved before the
provider is called; conversation logging is best-effort and never blocks the
answer. Each ledger or log write runs in its own short database session.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from ...domains.identity_access.identity import NO_ORGANIZATION_MESSAGE, IdentityResolver, Principal
from ...models.history_session import SessionType
from ...models.interaction import InteractionType
from ...platform import side_channel
from ...platform.config import settings
from ...platform.database import async_session_maker
from ...platform.logging import log_event
from ...platform.request_context import bind_log_fields
from ...schemas.chat import ChatRequest
from ...services.conversation_log_service import append_interaction, ensure_session, seed_title, touch_session
from ...services.credit_ledger_service import (
    BillingEntityNotFound,
    InsufficientCreditsError,
    Reservation,
    grant_credits,
    reserve_credits,
)
from ...services.pricing import CREDIT_ERRORS, ChatPrice, price_chat
from .errors import AbortReason, ChatAborted, UpstreamStreamError
from .relay import CompletionRelay, RelayStream

logger = logging.getLogger("meterchat.chat")

UPSTREAM_FAILURE_MESSAGE = "Failed to generate response from AI service"


class PipelineState(str, enum.Enum):
    VALIDATING = "Validating"
    AUTHENTICATING = "Authenticating"
    PRICING = "Pricing"
    RESERVING = "Reserving"
    SESSION_RESOLVING = "SessionResolving"
    LOGGING_USER_TURN = "LoggingUserTurn"
    STREAMING = "Streaming"
    LOGGING_ASSISTANT_TURN = "LoggingAssistantTurn"
    DONE = "Done"
    ABORTED = "Aborted"


class TurnChunks:
    """Async iterator over the streamed answer.

    Closing it, whether or not iteration ever began, logs the assistant turn
    exactly once.
    """

    def __init__(self, chunks: AsyncGenerator[str, None], finalize: Callable[[], Awaitable[None]]):
        self._chunks = chunks
        self._finalize = finalize

    def __aiter__(self) -> "TurnChunks":
        return self

    async def __anext__(self) -> str:
        return await self._chunks.__anext__()

    async def aclose(self) -> None:
        try:
            await self._chunks.aclose()
        finally:
            await self._finalize()


@dataclass
class ChatStream:
    session_id: Optional[str]
    chunks: TurnChunks


@dataclass
class _Turn:
    principal: Principal
    message: str
    request: ChatRequest
    price: ChatPrice
    reservation: Reservation
    session_id: Optional[str] = None
    finished: bool = False


class ChatPipeline:
    def __init__(
        self,
        *,
        identity: IdentityResolver,
        relay_factory: Callable[[], CompletionRelay],
        session_factory: Callable[[], Any] = async_session_maker,
    ):
        self.identity = identity
        self.relay_factory = relay_factory
        self.session_factory = session_factory
        self.state = PipelineState.VALIDATING

    def _transition(self, state: PipelineState, **context) -> None:
        self.state = state
        log_event(logger, logging.INFO, "chat.state", state=state.value, **context)

    async def run(self, request: ChatRequest) -> ChatStream:
        """Run every step up to the first streamed chunk.

        Raises:
            ChatAborted: the request was rejected before any bytes were streamed.
        """
        try:
            return await self._run(request)
        except ChatAborted as exc:
            self._transition(PipelineState.ABORTED, reason=exc.reason.value, status_code=exc.status_code)
            raise

    async def _run(self, request: ChatRequest) -> ChatStream:
        self._transition(PipelineState.VALIDATING)
        message = request.message or ""
        if not message.strip():
            raise ChatAborted(AbortReason.INVALID_REQUEST, "Message is required")
        if not settings.claude_configured:
            logger.error("ANTHROPIC_API_KEY is not configured; rejecting chat request")
            raise ChatAborted(AbortReason.CONFIGURATION_ERROR, "AI service is not configured")

        self._transition(PipelineState.AUTHENTICATING)
        principal = self.identity.principal()
        bind_log_fields(organization_id=principal.organization_id, user_id=principal.user_id)

        self._transition(PipelineState.PRICING, organization_id=principal.organization_id)
        price = price_chat(
            message,
            use_web_search=request.use_web_search,
            use_code_generation=request.use_code_generation,
        )

        self._transition(PipelineState.RESERVING, credits=price.credits, feature_id=price.feature_id)
        reservation = await self._reserve(principal, price, message)
        turn = _Turn(principal=principal, message=message, request=request, price=price, reservation=reservation)

        self._transition(PipelineState.SESSION_RESOLVING)
        turn.session_id = await side_channel.run(
            "ensure_session",
            self._ensure_session(turn),
            organization_id=principal.organization_id,
        )
        bind_log_fields(session_id=turn.session_id)

        self._transition(PipelineState.LOGGING_USER_TURN, session_id=turn.session_id)
        if turn.session_id:
            await side_channel.run(
                "append_user_turn",
                self._append(turn, InteractionType.USER_MESSAGE, message, {}, cost_credits=0),
                session_id=turn.session_id,
            )

        self._transition(PipelineState.STREAMING, session_id=turn.session_id)
        stream = self.relay_factory().open(
            system_preamble=settings.CHAT_SYSTEM_PROMPT,
            prior_turns=request.history,
            message=message,
            use_web_search=request.use_web_search,
        )
        try:
            await stream.start()
        except UpstreamStreamError as exc:
            logger.error("Upstream stream failed before first byte: %s", exc)
            await self._refund(turn, exc)
            raise ChatAborted(AbortReason.UPSTREAM_FAILURE, UPSTREAM_FAILURE_MESSAGE) from exc

        return ChatStream(
            session_id=turn.session_id,
            chunks=TurnChunks(self._forward(stream, turn), lambda: self._finalize(stream, turn)),
        )

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    async def _reserve(self, principal: Principal, price: ChatPrice, message: str) -> Reservation:
        try:
            async with self.session_factory() as db:
                return await reserve_credits(
                    db,
                    organization_id=principal.organization_id,
                    amount=price.credits,
                    reason=price.description,
                    feature_id=price.feature_id,
                    metadata={"user_id": principal.user_id, "message_length": len(message)},
                )
        except InsufficientCreditsError as exc:
            raise ChatAborted(AbortReason.INSUFFICIENT_CREDITS, CREDIT_ERRORS["INSUFFICIENT_CREDITS"]) from exc
        except BillingEntityNotFound as exc:
            raise ChatAborted(AbortReason.NO_BILLING_ENTITY, NO_ORGANIZATION_MESSAGE) from exc
        except SQLAlchemyError as exc:
            logger.exception("Credit reservation failed for organization_id=%s", principal.organization_id)
            raise ChatAborted(AbortReason.INTERNAL, CREDIT_ERRORS["FAILED_TO_DEDUCT"]) from exc

    async def _refund(self, turn: _Turn, exc: UpstreamStreamError) -> None:
        if not settings.REFUND_ON_UPSTREAM_FAILURE or turn.price.credits <= 0:
            log_event(
                logger,
                logging.WARNING,
                "chat.charged_without_answer",
                organization_id=turn.principal.organization_id,
                credits=turn.price.credits,
                error_type=type(exc.cause).__name__,
            )
            return

        async def _grant():
            async with self.session_factory() as db:
                return await grant_credits(
                    db,
                    organization_id=turn.principal.organization_id,
                    amount=turn.price.credits,
                    reason=f"Refund: {turn.price.description}",
                    external_ref=f"refund:{turn.reservation.entry_id}",
                    feature_id=turn.price.feature_id,
                    metadata={"error": type(exc.cause).__name__, "session_id": turn.session_id},
                )

        await side_channel.run(
            "refund_credits",
            _grant(),
            organization_id=turn.principal.organization_id,
            credits=turn.price.credits,
        )

    # ------------------------------------------------------------------
    # Conversation log
    # ------------------------------------------------------------------

    async def _ensure_session(self, turn: _Turn) -> str:
        async with self.session_factory() as db:
            return await ensure_session(
                db,
                organization_id=turn.principal.organization_id,
                user_id=turn.principal.user_id,
                type=SessionType.CHAT,
                seed=turn.message,
                metadata={"webSearch": turn.request.use_web_search},
                session_id=turn.request.session_id,
            )

    async def _append(self, turn: _Turn, type: InteractionType, content: str, metadata: dict, *, cost_credits: int):
        async with self.session_factory() as db:
            return await append_interaction(
                db,
                session_id=turn.session_id,
                type=type,
                content=content,
                metadata=metadata,
                cost_credits=cost_credits,
                organization_id=turn.principal.organization_id,
            )

    async def _touch(self, turn: _Turn) -> None:
        async with self.session_factory() as db:
            await touch_session(db, turn.session_id, latest_title=seed_title(turn.message))

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def _forward(self, stream: RelayStream, turn: _Turn) -> AsyncGenerator[str, None]:
        try:
            async for chunk in stream:
                yield chunk
        finally:
            await self._finalize(stream, turn)

    async def _finalize(self, stream: RelayStream, turn: _Turn) -> None:
        if turn.finished:
            return
        turn.finished = True
        # Runs in its own task so a disconnecting caller cannot cancel it
        task = side_channel.spawn("log_assistant_turn", self._finish(stream, turn), session_id=turn.session_id)
        await asyncio.shield(task)

    async def _finish(self, stream: RelayStream, turn: _Turn) -> None:
        await stream.aclose()
        result = stream.result()
        self._transition(
            PipelineState.LOGGING_ASSISTANT_TURN,
            session_id=turn.session_id,
            partial=result.partial,
            chars=len(result.text),
        )
        if result.partial:
            log_event(
                logger,
                logging.WARNING,
                "chat.stream_partial",
                organization_id=turn.principal.organization_id,
                session_id=turn.session_id,
                credits=turn.price.credits,
                chars=len(result.text),
                error_type=result.error,
            )

        metadata: dict[str, Any] = {
            "web_search": turn.request.use_web_search,
            "code_generation": turn.request.use_code_generation,
        }
        if result.citations:
            metadata["citations"] = [citation.to_dict() for citation in result.citations]
        if result.partial:
            metadata["partial"] = True
        if result.error:
            metadata["error"] = result.error
        if result.usage:
            metadata["usage"] = result.usage

        logged = None
        if turn.session_id:
            logged = await side_channel.run(
                "append_assistant_turn",
                self._append(
                    turn,
                    InteractionType.ASSISTANT_MESSAGE,
                    result.content,
                    metadata,
                    cost_credits=turn.price.credits,
                ),
                session_id=turn.session_id,
            )
        if logged is None:
            log_event(
                logger,
                logging.WARNING,
                "chat.turn_unlogged",
                organization_id=turn.principal.organization_id,
                session_id=turn.session_id,
                credits=turn.price.credits,
            )
        else:
            await side_channel.run("touch_session", self._touch(turn), session_id=turn.session_id)
        self._transition(PipelineState.DONE, session_id=turn.session_id)
