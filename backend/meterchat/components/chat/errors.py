from __future__ import annotations

import enum


class AbortReason(str, enum.Enum):
    INVALID_REQUEST = "InvalidRequest"
    CONFIGURATION_ERROR = "ConfigurationError"
    UNAUTHENTICATED = "Unauthenticated"
    NO_BILLING_ENTITY = "NoBillingEntity"
    INSUFFICIENT_CREDITS = "InsufficientCredits"
    UPSTREAM_FAILURE = "UpstreamFailure"
    INTERNAL = "Internal"


_STATUS_BY_REASON = {
    AbortReason.INVALID_REQUEST: 400,
    AbortReason.CONFIGURATION_ERROR: 500,
    AbortReason.UNAUTHENTICATED: 401,
    AbortReason.NO_BILLING_ENTITY: 400,
    AbortReason.INSUFFICIENT_CREDITS: 402,
    AbortReason.UPSTREAM_FAILURE: 500,
    AbortReason.INTERNAL: 500,
}


class ChatAborted(Exception):
    """The chat pipeline stopped before streaming. Rendered as ``{"error": message}``."""

    def __init__(self, reason: AbortReason, message: str):
        super().__init__(message)
        self.reason = reason
        self.message = message

    @property
    def status_code(self) -> int:
        return _STATUS_BY_REASON[self.reason]


class UpstreamStreamError(Exception):
    """The provider failed before any text reached the caller."""

    def __init__(self, cause: BaseException):
        super().__init__(f"{type(cause).__name__}: {cause}")
        self.cause = cause
