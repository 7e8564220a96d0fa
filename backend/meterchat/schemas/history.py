from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models.artifact import ArtifactType
from ..models.history_session import SessionType
from ..models.interaction import InteractionType


class SessionCreate(BaseModel):
    type: Optional[str] = None
    title: Optional[str] = Field(default=None, max_length=500)
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    organization_id: Optional[int] = None


class SessionUpdate(BaseModel):
    title: Optional[str] = Field(default=None, max_length=500)
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    starred: Optional[bool] = None
    archived: Optional[bool] = None


class InteractionCreate(BaseModel):
    session_id: Optional[str] = None
    type: Optional[str] = None
    content: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    cost_credits: int = Field(default=0, ge=0)


class ArtifactCreate(BaseModel):
    interaction_id: Optional[str] = None
    type: Optional[str] = None
    url: Optional[str] = None
    filename: Optional[str] = None
    size_bytes: Optional[int] = Field(default=None, ge=0)
    mime_type: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class ArtifactResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    interaction_id: str
    type: ArtifactType
    url: Optional[str] = None
    filename: Optional[str] = None
    size_bytes: Optional[int] = None
    mime_type: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="artifact_metadata")
    created_at: Optional[datetime] = None


class InteractionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    session_id: str
    type: InteractionType
    content: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="interaction_metadata")
    cost_credits: int = 0
    sequence: int
    created_at: Optional[datetime] = None


class InteractionWithArtifacts(InteractionResponse):
    artifacts: List[ArtifactResponse] = Field(default_factory=list)


class SessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    organization_id: int
    user_id: Optional[int] = None
    type: SessionType
    title: Optional[str] = None
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="session_metadata")
    starred: bool = False
    archived: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SessionListItem(SessionResponse):
    interaction_count: int = 0


class SessionDetail(SessionResponse):
    interactions: List[InteractionWithArtifacts] = Field(default_factory=list)


class SessionListResponse(BaseModel):
    sessions: List[SessionListItem]
    total_count: int
    has_more: bool
