"""Metered chat: POST /chat streams the assistant answer as plain text."""

from typing import Callable

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from ...components.chat.pipeline import ChatPipeline
from ...components.chat.relay import CompletionRelay
from ...components.integrations.claude.service import ClaudeService
from ...platform.config import settings
from ...schemas.chat import ChatRequest
from ..identity_access.identity import IdentityResolver, get_identity_resolver

router = APIRouter(tags=["Chat"])


class ChatStreamingResponse(StreamingResponse):
    """Closes the chat chunks once the response ends, even if the body was never sent."""

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.body_iterator.aclose()


def build_completion_relay() -> CompletionRelay:
    return CompletionRelay(ClaudeService(api_key=settings.ANTHROPIC_API_KEY))


def get_relay_factory() -> Callable[[], CompletionRelay]:
    """Dependency seam for the provider; the relay is only built once the request is admitted."""
    return build_completion_relay


@router.post("/chat")
async def chat(
    payload: ChatRequest,
    identity: IdentityResolver = Depends(get_identity_resolver),
    relay_factory: Callable[[], CompletionRelay] = Depends(get_relay_factory),
):
    pipeline = ChatPipeline(identity=identity, relay_factory=relay_factory)
    prepared = await pipeline.run(payload)
    return ChatStreamingResponse(
        prepared.chunks,
        media_type="text/plain; charset=utf-8",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "Connection": "keep-alive",
            "X-Session-Id": prepared.session_id or "",
        },
    )
