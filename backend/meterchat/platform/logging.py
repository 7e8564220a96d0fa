import json
import logging
import sys
from datetime import datetime, timezone

from ..platform.config import settings
from ..platform.request_context import get_log_fields, get_request_id

_NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "anthropic")


class JsonFormatter(logging.Formatter):
    """One JSON object per line.

    ``event`` and ``context`` come from ``log_event``; fields bound with
    ``bind_log_fields`` are merged under ``context`` so ledger and chat events
    can be joined on organization and session.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", None) or get_request_id()
        if request_id:
            payload["request_id"] = request_id
        event = getattr(record, "event", None)
        if event:
            payload["event"] = event
        context = {**get_log_fields(), **(getattr(record, "context", None) or {})}
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def setup_logging():
    """Configure structured logging for the application."""
    log_level = logging.getLevelName((settings.LOG_LEVEL or "INFO").upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger


def log_event(logger: logging.Logger, level: int, event: str, message: str = "", **context) -> None:
    """Emit a structured event record (``event`` plus ``context`` fields)."""
    logger.log(
        level,
        "%s %s",
        event,
        message or " ".join(f"{key}={value}" for key, value in context.items()),
        extra={"event": event, "context": context},
    )
