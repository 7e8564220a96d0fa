from __future__ import annotations

from typing import Any

from ...platform.config import settings

_ALLOWED_ROLES = {"user", "assistant"}


def normalize_history(history: list[Any] | None, message: str) -> list[dict[str, str]]:
    """Clean caller-supplied prior turns into provider-ready messages.

    Keeps user/assistant turns with content, truncates each turn, keeps the most
    recent ones, drops leading assistant turns and a trailing copy of ``message``
    (it is sent as the new turn). Consecutive turns of one role are merged.
    """
    max_chars = settings.CHAT_MAX_HISTORY_CHARS
    turns: list[dict[str, str]] = []
    for item in history or []:
        role = item.get("role") if isinstance(item, dict) else getattr(item, "role", None)
        content = item.get("content") if isinstance(item, dict) else getattr(item, "content", None)
        if role not in _ALLOWED_ROLES or not isinstance(content, str) or not content.strip():
            continue
        turns.append({"role": role, "content": content[:max_chars]})

    if turns and turns[-1]["role"] == "user" and turns[-1]["content"].strip() == message.strip():
        turns.pop()

    turns = turns[-settings.CHAT_MAX_HISTORY_MESSAGES:]
    while turns and turns[0]["role"] != "user":
        turns.pop(0)

    merged: list[dict[str, str]] = []
    for turn in turns:
        if merged and merged[-1]["role"] == turn["role"]:
            merged[-1] = {"role": turn["role"], "content": merged[-1]["content"] + "\n\n" + turn["content"]}
        else:
            merged.append(turn)
    return merged


def build_messages(history: list[Any] | None, message: str) -> list[dict[str, str]]:
    """Prior turns plus the new user turn, alternating roles and ending with the user."""
    messages = normalize_history(history, message)
    if messages and messages[-1]["role"] == "user":
        messages[-1] = {"role": "user", "content": messages[-1]["content"] + "\n\n" + message}
    else:
        messages.append({"role": "user", "content": message})
    return messages
