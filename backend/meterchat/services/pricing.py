"""Flat credit pricing for chat turns."""

from __future__ import annotations

from dataclasses import dataclass

from ..platform.config import settings

CREDIT_ERRORS = {
    "INSUFFICIENT_CREDITS": "Insufficient credits. Please add more credits to continue using this feature.",
    "FAILED_TO_DEDUCT": "Failed to deduct credits. Please try again.",
}

_DESCRIPTION_SUFFIX_CHARS = 30


@dataclass(frozen=True)
class ChatPrice:
    credits: int
    feature_id: str
    description: str


def calculate_chat_cost(*, use_web_search: bool = False, use_code_generation: bool = False) -> int:
    if use_code_generation:
        return settings.CREDIT_COST_CHAT_CODE_GEN
    if use_web_search:
        return settings.CREDIT_COST_CHAT_WEB_SEARCH
    return settings.CREDIT_COST_CHAT_BASIC


def chat_feature_id(*, use_web_search: bool = False, use_code_generation: bool = False) -> str:
    if use_code_generation:
        return "chat_with_code_gen"
    if use_web_search:
        return "chat_with_search"
    return "chat"


def chat_description(message: str = "", *, use_web_search: bool = False, use_code_generation: bool = False) -> str:
    if use_code_generation:
        base = "Chat: Code generation"
    elif use_web_search:
        base = "Chat: With web search"
    else:
        base = "Chat: Basic usage"
    snippet = (message or "").strip()
    if not snippet:
        return base
    if len(snippet) > _DESCRIPTION_SUFFIX_CHARS:
        snippet = snippet[:_DESCRIPTION_SUFFIX_CHARS] + "..."
    return f"{base}: {snippet}"


def price_chat(message: str, *, use_web_search: bool = False, use_code_generation: bool = False) -> ChatPrice:
    flags = {"use_web_search": use_web_search, "use_code_generation": use_code_generation}
    return ChatPrice(
        credits=calculate_chat_cost(**flags),
        feature_id=chat_feature_id(**flags),
        description=chat_description(message, **flags),
    )


def pricing_table() -> dict[str, int]:
    return {
        "chat": settings.CREDIT_COST_CHAT_BASIC,
        "chat_with_search": settings.CREDIT_COST_CHAT_WEB_SEARCH,
        "chat_with_code_gen": settings.CREDIT_COST_CHAT_CODE_GEN,
    }
