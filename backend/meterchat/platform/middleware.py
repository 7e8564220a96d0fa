import logging
import time
import uuid
from collections import defaultdict
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from .config import settings
from .request_context import set_request_id

logger = logging.getLogger("meterchat.middleware")

# In-memory rate limit: bucket key -> request timestamps inside the window
_rate_limit_store = defaultdict(list)
_RATE_WINDOW_SEC = 60

_AUTH_PATHS = ("/api/v1/auth/jwt/login", "/api/v1/auth/register", "/api/v1/auth/forgot-password")


def _get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _rate_limit_bucket(path: str) -> Optional[tuple[str, int]]:
    """(bucket name, allowed requests per window) for limited paths, else None."""
    if any(auth_path in path for auth_path in _AUTH_PATHS):
        return "auth", settings.RATE_LIMIT_AUTH_PER_MINUTE
    if path.rstrip("/").endswith("/api/v1/chat"):
        return "chat", settings.RATE_LIMIT_CHAT_PER_MINUTE
    return None


class RateLimitMiddleware(BaseHTTPMiddleware):
    """429 once an IP exceeds its per-minute budget on the auth or chat endpoints."""

    async def dispatch(self, request: Request, call_next):
        bucket = _rate_limit_bucket(request.url.path)
        if bucket is None:
            return await call_next(request)

        name, max_allowed = bucket
        key = f"{name}:{_get_client_ip(request)}"
        now = time.time()
        store = _rate_limit_store[key]
        store[:] = [t for t in store if t > now - _RATE_WINDOW_SEC]
        if len(store) >= max_allowed:
            retry_after = max(1, int(store[0] + _RATE_WINDOW_SEC - now))
            logger.warning("Rate limit exceeded key=%s path=%s", key, request.url.path)
            return JSONResponse(
                status_code=429,
                content={"error": "Too many requests. Please try again later."},
                headers={"Retry-After": str(retry_after)},
            )
        store.append(now)
        return await call_next(request)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with method, path, status, and duration."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        set_request_id(request_id)
        response = await call_next(request)

        # Streamed chat responses are measured to the headers, not the last byte
        duration_ms = (time.time() - start_time) * 1000
        if request.url.path != "/health":
            logger.info(
                "method=%s path=%s status=%d duration=%.1fms",
                request.method,
                request.url.path,
                response.status_code,
                duration_ms,
                extra={"request_id": request_id},
            )

        response.headers["X-Process-Time-Ms"] = f"{duration_ms:.1f}"
        response.headers["X-Request-ID"] = request_id
        return response
