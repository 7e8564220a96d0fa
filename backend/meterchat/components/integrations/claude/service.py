"""
Streaming access to the Anthropic Messages API for the chat feature.

Yields the raw stream events (``message_start``, ``content_block_*``,
``message_delta``...) so callers can pick text deltas and citation deltas apart
themselves. Model aliases that the account cannot use are retried down the
fallback chain before anything has been streamed.
"""

import logging
from typing import Any, AsyncIterator, Optional

from anthropic import AsyncAnthropic

from ....platform.config import settings
from .model_fallback import candidate_models_for, is_model_not_found_error

logger = logging.getLogger(__name__)

WEB_SEARCH_TOOL_TYPE = "web_search_20250305"


class ClaudeService:
    """Service for streaming chat completions from the Anthropic Claude API."""

    def __init__(self, api_key: str, model: Optional[str] = None, client: Any = None):
        """
        Initialise the Claude service.

        Args:
            api_key: Anthropic API key.
            model: Override for the configured chat model.
            client: Pre-built async client (anything exposing ``messages.stream``).
        """
        self.client = client or AsyncAnthropic(api_key=api_key)
        self.model = model or settings.resolved_claude_model
        self.max_tokens_per_response = settings.MAX_TOKENS_PER_RESPONSE
        logger.info("ClaudeService initialised with model=%s", self.model)

    def build_request(self, *, system: str, messages: list[dict], use_web_search: bool = False) -> dict:
        """
        Build the keyword arguments for ``messages.stream`` (without the model).

        Args:
            system: System prompt.
            messages: Alternating user/assistant message dicts ending with a user turn.
            use_web_search: Attach the server-side web search tool.

        Returns:
            Dict of request kwargs.
        """
        request: dict = {
            "max_tokens": self.max_tokens_per_response,
            "system": system,
            "messages": messages,
        }
        if use_web_search:
            request["tools"] = [
                {
                    "type": WEB_SEARCH_TOOL_TYPE,
                    "name": "web_search",
                    "max_uses": settings.CHAT_WEB_SEARCH_MAX_USES,
                }
            ]
        return request

    async def stream_events(
        self, *, system: str, messages: list[dict], use_web_search: bool = False
    ) -> AsyncIterator[Any]:
        """Yield raw stream events for one completion."""
        request = self.build_request(system=system, messages=messages, use_web_search=use_web_search)
        candidates = candidate_models_for(self.model)
        for index, model in enumerate(candidates):
            started = False
            try:
                logger.info(
                    "Opening Claude stream (messages=%d, model=%s, web_search=%s)",
                    len(messages),
                    model,
                    use_web_search,
                )
                async with self.client.messages.stream(model=model, **request) as stream:
                    async for event in stream:
                        started = True
                        yield event
                return
            except Exception as exc:
                has_fallback = index + 1 < len(candidates)
                if started or not has_fallback or not is_model_not_found_error(exc):
                    raise
                logger.warning(
                    "Claude model %s unavailable, falling back to %s", model, candidates[index + 1]
                )
