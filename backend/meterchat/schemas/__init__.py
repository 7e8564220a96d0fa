from .chat import ChatHistoryMessage, ChatRequest
from .history import (
    ArtifactCreate,
    ArtifactResponse,
    InteractionCreate,
    InteractionResponse,
    SessionCreate,
    SessionDetail,
    SessionListResponse,
    SessionResponse,
    SessionUpdate,
)
from .organization import OrgResponse

__all__ = [
    "ChatHistoryMessage",
    "ChatRequest",
    "ArtifactCreate",
    "ArtifactResponse",
    "InteractionCreate",
    "InteractionResponse",
    "SessionCreate",
    "SessionDetail",
    "SessionListResponse",
    "SessionResponse",
    "SessionUpdate",
    "OrgResponse",
]
