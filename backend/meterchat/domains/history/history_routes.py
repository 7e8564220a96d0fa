"""History: sessions, their ordered interactions and attached artifacts."""

from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ...deps import get_current_user
from ...models.artifact import ArtifactType
from ...models.history_session import HistorySession, SessionType
from ...models.interaction import InteractionType
from ...models.user import User
from ...platform.database import get_async_db
from ...schemas.history import (
    ArtifactCreate,
    ArtifactResponse,
    InteractionCreate,
    InteractionResponse,
    SessionCreate,
    SessionDetail,
    SessionListItem,
    SessionListResponse,
    SessionResponse,
    SessionUpdate,
)
from ...services import conversation_log_service as log_service

router = APIRouter(prefix="/history", tags=["History"])


def _require_organization(user: User) -> int:
    if user.organization_id is None:
        raise HTTPException(
            status_code=400,
            detail="No organizations found. Please create or join an organization.",
        )
    return user.organization_id


def _parse_enum(enum_cls, value: Optional[str]):
    try:
        return enum_cls(value)
    except ValueError:
        return None


def _parse_session_types(raw: Optional[str]) -> list[SessionType]:
    if not raw:
        return []
    types = []
    for item in raw.split(","):
        parsed = _parse_enum(SessionType, item.strip())
        if parsed is None:
            raise HTTPException(status_code=400, detail=f"Invalid session type: {item.strip()}")
        types.append(parsed)
    return types


def _assert_owner(session: HistorySession, user: User) -> None:
    if session.organization_id != user.organization_id or session.user_id != user.id:
        raise HTTPException(status_code=403, detail="Unauthorized")


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(
    type: Optional[str] = Query(default=None, description="Comma-separated session types"),
    starred: Optional[bool] = None,
    archived: Optional[bool] = None,
    search: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    order_by: Literal["created_at", "updated_at", "title"] = "updated_at",
    order_direction: Literal["asc", "desc"] = "desc",
    db: AsyncSession = Depends(get_async_db),
    current_user: User = Depends(get_current_user),
):
    organization_id = _require_organization(current_user)
    rows, total = await log_service.list_sessions(
        db,
        organization_id=organization_id,
        types=_parse_session_types(type),
        starred=starred,
        archived=archived,
        search=search,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
        order_by=order_by,
        order_direction=order_direction,
    )
    sessions = [
        SessionListItem.model_validate(session).model_copy(update={"interaction_count": count})
        for session, count in rows
    ]
    return SessionListResponse(sessions=sessions, total_count=total, has_more=offset + len(sessions) < total)


@router.post("/sessions", status_code=201)
async def create_session(
    data: SessionCreate,
    db: AsyncSession = Depends(get_async_db),
    current_user: User = Depends(get_current_user),
):
    organization_id = _require_organization(current_user)
    session_type = _parse_enum(SessionType, data.type)
    if session_type is None:
        raise HTTPException(status_code=400, detail="Valid session type is required")
    if data.organization_id is not None and data.organization_id != organization_id:
        raise HTTPException(status_code=403, detail="Invalid organization")
    session = await log_service.create_session(
        db,
        organization_id=organization_id,
        user_id=current_user.id,
        type=session_type,
        title=data.title,
        description=data.description,
        metadata=data.metadata,
    )
    return {"session": SessionResponse.model_validate(session)}


@router.get("/sessions/{session_id}")
async def get_session(
    session_id: str,
    db: AsyncSession = Depends(get_async_db),
    current_user: User = Depends(get_current_user),
):
    organization_id = _require_organization(current_user)
    session = await log_service.session_with_interactions(db, session_id, organization_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    return {"session": SessionDetail.model_validate(session)}


@router.patch("/sessions/{session_id}")
async def update_session(
    session_id: str,
    data: SessionUpdate,
    db: AsyncSession = Depends(get_async_db),
    current_user: User = Depends(get_current_user),
):
    session = await log_service.get_session(db, session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    _assert_owner(session, current_user)
    session = await log_service.update_session(db, session, data.model_dump(exclude_unset=True))
    return {"session": SessionResponse.model_validate(session)}


@router.delete("/sessions/{session_id}")
async def delete_session(
    session_id: str,
    db: AsyncSession = Depends(get_async_db),
    current_user: User = Depends(get_current_user),
):
    session = await log_service.get_session(db, session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    _assert_owner(session, current_user)
    await log_service.delete_session(db, session_id)
    return {"success": True}


# ---------------------------------------------------------------------------
# Interactions and artifacts
# ---------------------------------------------------------------------------

@router.post("/interactions", status_code=201)
async def create_interaction(
    data: InteractionCreate,
    db: AsyncSession = Depends(get_async_db),
    current_user: User = Depends(get_current_user),
):
    organization_id = _require_organization(current_user)
    if not data.session_id or not data.type:
        raise HTTPException(status_code=400, detail="Session ID and interaction type are required")
    interaction_type = _parse_enum(InteractionType, data.type)
    if interaction_type is None:
        raise HTTPException(status_code=400, detail="Valid interaction type is required")
    if interaction_type == InteractionType.USER_MESSAGE and data.cost_credits:
        raise HTTPException(status_code=400, detail="User messages cannot carry a credit cost")
    session = await log_service.get_session(db, data.session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    if session.organization_id != organization_id:
        raise HTTPException(status_code=403, detail="Unauthorized")
    try:
        interaction = await log_service.append_interaction(
            db,
            session_id=data.session_id,
            type=interaction_type,
            content=data.content,
            metadata=data.metadata,
            cost_credits=data.cost_credits,
            organization_id=organization_id,
        )
    except log_service.SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found")
    return {"interaction": InteractionResponse.model_validate(interaction)}


@router.post("/artifacts", status_code=201)
async def create_artifact(
    data: ArtifactCreate,
    db: AsyncSession = Depends(get_async_db),
    current_user: User = Depends(get_current_user),
):
    organization_id = _require_organization(current_user)
    if not data.interaction_id or not data.type:
        raise HTTPException(status_code=400, detail="Interaction ID and artifact type are required")
    artifact_type = _parse_enum(ArtifactType, data.type)
    if artifact_type is None:
        raise HTTPException(status_code=400, detail="Valid artifact type is required")
    interaction = await log_service.get_interaction_for_organization(db, data.interaction_id, organization_id)
    if not interaction:
        raise HTTPException(status_code=404, detail="Interaction not found or access denied")
    artifact = await log_service.create_artifact(
        db,
        interaction_id=data.interaction_id,
        type=artifact_type,
        url=data.url,
        filename=data.filename,
        size_bytes=data.size_bytes,
        mime_type=data.mime_type,
        metadata=data.metadata,
    )
    return {"artifact": ArtifactResponse.model_validate(artifact)}
