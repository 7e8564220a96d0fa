"""
Completion relay: turns a provider event stream into caller-facing text chunks.

The relay knows nothing about credits or the conversation log. It forwards text
as it arrives, collects citation annotations on the side and, once the stream is
over, exposes a self-contained ``RelayResult`` describing what was produced.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from ..integrations.claude.service import ClaudeService
from .citations import Citation, format_citation_footer
from .errors import UpstreamStreamError
from .history import build_messages

logger = logging.getLogger("meterchat.relay")


@dataclass
class RelayResult:
    text: str
    citations: list[Citation] = field(default_factory=list)
    footer: str = ""
    partial: bool = False
    error: str | None = None
    usage: dict[str, int] = field(default_factory=dict)

    @property
    def content(self) -> str:
        return self.text + self.footer


class RelayStream:
    """Lazy, finite, non-restartable sequence of text chunks for one completion."""

    def __init__(self, events: AsyncIterator[Any]):
        self._events = events
        self._text_parts: list[str] = []
        self._text_length = 0
        self._citations: list[Citation] = []
        self._block_start = 0
        self._block_citations: list[Citation] = []
        self._primed: list[str] = []
        self._usage: dict[str, int] = {}
        self._started = False
        self._iterated = False
        self._exhausted = False
        self._completed = False
        self._footer = ""
        self._error: str | None = None

    async def start(self) -> None:
        """Open the upstream stream and buffer the first text fragment.

        Raises:
            UpstreamStreamError: the provider failed before any text was produced.
        """
        if self._started:
            raise RuntimeError("RelayStream.start() called twice")
        self._started = True
        try:
            while not self._primed:
                event = await self._events.__anext__()
                chunk = self._consume(event)
                if chunk:
                    self._primed.append(chunk)
        except StopAsyncIteration:
            self._exhausted = True
        except Exception as exc:
            self._error = type(exc).__name__
            await self.aclose()
            raise UpstreamStreamError(exc) from exc

    def __aiter__(self) -> AsyncIterator[str]:
        if not self._started:
            raise RuntimeError("RelayStream.start() must be awaited before iterating")
        if self._iterated:
            raise RuntimeError("RelayStream can only be iterated once")
        self._iterated = True
        return self._chunks()

    async def _chunks(self) -> AsyncIterator[str]:
        for chunk in self._primed:
            yield chunk
        self._primed = []
        if not self._exhausted:
            try:
                async for event in self._events:
                    chunk = self._consume(event)
                    if chunk:
                        yield chunk
            except Exception as exc:
                # Bytes already went out: end the stream cleanly and mark it partial
                self._error = type(exc).__name__
                logger.warning(
                    "Upstream stream failed after %d chars: %s: %s",
                    self._text_length,
                    type(exc).__name__,
                    exc,
                )
                return
            self._exhausted = True
        # A caller that stops iterating never gets here, so the result stays partial
        self._footer = format_citation_footer(self._citations)
        self._completed = True
        if self._footer:
            yield self._footer

    def _consume(self, event: Any) -> str | None:
        event_type = getattr(event, "type", None)
        if event_type == "message_start":
            usage = getattr(getattr(event, "message", None), "usage", None)
            if usage is not None and getattr(usage, "input_tokens", None) is not None:
                self._usage["input_tokens"] = int(usage.input_tokens)
        elif event_type == "content_block_start":
            block = getattr(event, "content_block", None)
            if getattr(block, "type", None) == "text":
                self._block_start = self._text_length
                self._block_citations = []
        elif event_type == "content_block_delta":
            delta = event.delta
            delta_type = getattr(delta, "type", None)
            if delta_type == "text_delta":
                text = delta.text or ""
                if text:
                    self._text_parts.append(text)
                    self._text_length += len(text)
                return text
            if delta_type == "citations_delta":
                location = getattr(delta, "citation", None)
                url = getattr(location, "url", None)
                if url:
                    citation = Citation(
                        url=url,
                        title=getattr(location, "title", None),
                        start_index=self._block_start,
                        end_index=self._text_length,
                    )
                    self._citations.append(citation)
                    self._block_citations.append(citation)
        elif event_type == "content_block_stop":
            for citation in self._block_citations:
                citation.end_index = self._text_length
            self._block_citations = []
        elif event_type == "message_delta":
            usage = getattr(event, "usage", None)
            if usage is not None and getattr(usage, "output_tokens", None) is not None:
                self._usage["output_tokens"] = int(usage.output_tokens)
        return None

    def result(self) -> RelayResult:
        return RelayResult(
            text="".join(self._text_parts),
            citations=list(self._citations),
            footer=self._footer if self._completed else "",
            partial=not self._completed,
            error=self._error,
            usage=dict(self._usage),
        )

    async def aclose(self) -> None:
        """Close the upstream stream. Safe to call more than once."""
        aclose = getattr(self._events, "aclose", None)
        if aclose is not None:
            await aclose()


class CompletionRelay:
    """Opens relay streams against the Claude chat model."""

    def __init__(self, claude: ClaudeService):
        self.claude = claude

    def open(
        self,
        *,
        system_preamble: str,
        prior_turns: list[Any] | None,
        message: str,
        use_web_search: bool = False,
    ) -> RelayStream:
        messages = build_messages(prior_turns, message)
        events = self.claude.stream_events(
            system=system_preamble,
            messages=messages,
            use_web_search=use_web_search,
        )
        return RelayStream(events)
