"""Per-request values that every log record of the request should carry."""

from contextvars import ContextVar, Token
from typing import Any, Optional

_request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_log_fields_ctx: ContextVar[Optional[dict]] = ContextVar("log_fields", default=None)


def set_request_id(request_id: str) -> Token:
    return _request_id_ctx.set(request_id)


def get_request_id() -> Optional[str]:
    return _request_id_ctx.get()


def bind_log_fields(**fields: Any) -> Token:
    """Add fields (organization_id, session_id...) to the JSON context of later records.

    Tasks spawned afterwards inherit the bound fields.
    """
    merged = dict(_log_fields_ctx.get() or {})
    merged.update({key: value for key, value in fields.items() if value is not None})
    return _log_fields_ctx.set(merged)


def get_log_fields() -> dict:
    return dict(_log_fields_ctx.get() or {})
