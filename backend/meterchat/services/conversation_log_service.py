"""
Conversation log: sessions and their append-only, strictly ordered interactions.

Sequence numbers come from the per-session ``last_sequence`` counter, bumped by a
single ``UPDATE ... RETURNING`` in the same transaction as the insert. The row
lock on the counter serializes concurrent appends to one session and the
(session_id, sequence) unique constraint backs it up.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import asc, delete, desc, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..models.artifact import Artifact, ArtifactType
from ..models.history_session import HistorySession, SessionType
from ..models.interaction import Interaction, InteractionType

logger = logging.getLogger("meterchat.conversation_log")

SEED_TITLE_CHARS = 50

SESSION_ORDER_COLUMNS = {
    "created_at": HistorySession.created_at,
    "updated_at": HistorySession.updated_at,
    "title": HistorySession.title,
}


class SessionNotFound(LookupError):
    pass


def seed_title(message: str) -> str:
    text = (message or "").strip()
    if len(text) > SEED_TITLE_CHARS:
        return text[:SEED_TITLE_CHARS] + "..."
    return text


async def get_session(
    db: AsyncSession, session_id: str, organization_id: int | None = None
) -> HistorySession | None:
    query = select(HistorySession).where(HistorySession.id == session_id)
    if organization_id is not None:
        query = query.where(HistorySession.organization_id == organization_id)
    return (await db.execute(query)).scalar_one_or_none()


async def create_session(
    db: AsyncSession,
    *,
    organization_id: int,
    user_id: int | None,
    type: SessionType,
    title: str | None = None,
    description: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> HistorySession:
    session = HistorySession(
        organization_id=organization_id,
        user_id=user_id,
        type=SessionType(type),
        title=title,
        description=description,
        session_metadata=metadata or {},
        starred=False,
        archived=False,
        last_sequence=0,
    )
    db.add(session)
    await db.commit()
    return session


async def ensure_session(
    db: AsyncSession,
    *,
    organization_id: int,
    user_id: int | None,
    type: SessionType,
    seed: str,
    metadata: dict[str, Any] | None = None,
    session_id: str | None = None,
) -> str:
    """Return ``session_id`` when it exists in ``organization_id``, else create a session."""
    if session_id:
        existing = await get_session(db, session_id, organization_id)
        if existing is not None:
            return existing.id
        logger.info(
            "Session %s not found for organization_id=%s; starting a new one",
            session_id,
            organization_id,
        )
    session = await create_session(
        db,
        organization_id=organization_id,
        user_id=user_id,
        type=type,
        title=seed_title(seed),
        metadata=metadata,
    )
    return session.id


async def append_interaction(
    db: AsyncSession,
    *,
    session_id: str,
    type: InteractionType,
    content: str | None,
    metadata: dict[str, Any] | None = None,
    cost_credits: int = 0,
    organization_id: int | None = None,
) -> Interaction:
    """Append one interaction with the next sequence number for the session.

    Raises:
        SessionNotFound: no such session (or it belongs to another organization).
        ValueError: negative cost, or a cost on a user message.
    """
    if cost_credits < 0:
        raise ValueError("cost_credits must be non-negative")
    if type == InteractionType.USER_MESSAGE and cost_credits != 0:
        raise ValueError("user messages cannot carry a credit cost")

    counter = (
        update(HistorySession)
        .where(HistorySession.id == session_id)
        .values(last_sequence=HistorySession.last_sequence + 1)
        .returning(HistorySession.last_sequence)
        .execution_options(synchronize_session=False)
    )
    if organization_id is not None:
        counter = counter.where(HistorySession.organization_id == organization_id)
    sequence = (await db.execute(counter)).scalar_one_or_none()
    if sequence is None:
        await db.rollback()
        raise SessionNotFound(session_id)

    interaction = Interaction(
        session_id=session_id,
        type=InteractionType(type),
        content=content,
        interaction_metadata=metadata or {},
        cost_credits=int(cost_credits),
        sequence=int(sequence),
    )
    db.add(interaction)
    await db.commit()
    return interaction


async def touch_session(db: AsyncSession, session_id: str, latest_title: str | None = None) -> None:
    """Bump ``updated_at``; set the title only while the session has none."""
    values: dict[str, Any] = {"updated_at": func.now()}
    if latest_title:
        values["title"] = func.coalesce(func.nullif(HistorySession.title, ""), latest_title)
    await db.execute(
        update(HistorySession)
        .where(HistorySession.id == session_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def list_sessions(
    db: AsyncSession,
    *,
    organization_id: int,
    types: Iterable[SessionType] | None = None,
    starred: bool | None = None,
    archived: bool | None = None,
    search: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    limit: int = 20,
    offset: int = 0,
    order_by: str = "updated_at",
    order_direction: str = "desc",
) -> tuple[list[tuple[HistorySession, int]], int]:
    """Return ``[(session, interaction_count)]`` for one page and the total match count."""
    filters = [HistorySession.organization_id == organization_id]
    type_list = list(types or [])
    if type_list:
        filters.append(HistorySession.type.in_(type_list))
    if starred is not None:
        filters.append(HistorySession.starred == starred)
    if archived is not None:
        filters.append(HistorySession.archived == archived)
    if search:
        pattern = f"%{search}%"
        filters.append(or_(HistorySession.title.ilike(pattern), HistorySession.description.ilike(pattern)))
    if date_from is not None:
        filters.append(HistorySession.created_at >= date_from)
    if date_to is not None:
        filters.append(HistorySession.created_at <= date_to)

    total = (await db.execute(select(func.count(HistorySession.id)).where(*filters))).scalar_one()

    column = SESSION_ORDER_COLUMNS.get(order_by, HistorySession.updated_at)
    direction = asc if order_direction == "asc" else desc
    counts = (
        select(Interaction.session_id, func.count(Interaction.id).label("interaction_count"))
        .group_by(Interaction.session_id)
        .subquery()
    )
    rows = await db.execute(
        select(HistorySession, func.coalesce(counts.c.interaction_count, 0))
        .outerjoin(counts, counts.c.session_id == HistorySession.id)
        .where(*filters)
        .order_by(direction(column), direction(HistorySession.id))
        .limit(limit)
        .offset(offset)
    )
    return [(session, int(count)) for session, count in rows.all()], int(total)


async def session_with_interactions(
    db: AsyncSession, session_id: str, organization_id: int
) -> HistorySession | None:
    result = await db.execute(
        select(HistorySession)
        .where(HistorySession.id == session_id, HistorySession.organization_id == organization_id)
        .options(selectinload(HistorySession.interactions).selectinload(Interaction.artifacts))
    )
    return result.scalar_one_or_none()


async def update_session(db: AsyncSession, session: HistorySession, changes: dict[str, Any]) -> HistorySession:
    for field in ("title", "description", "starred", "archived"):
        if field in changes:
            setattr(session, field, changes[field])
    if "metadata" in changes:
        session.session_metadata = changes["metadata"]
    session.updated_at = func.now()
    await db.commit()
    await db.refresh(session)
    return session


async def delete_session(db: AsyncSession, session_id: str) -> None:
    interaction_ids = select(Interaction.id).where(Interaction.session_id == session_id)
    await db.execute(delete(Artifact).where(Artifact.interaction_id.in_(interaction_ids)))
    await db.execute(delete(Interaction).where(Interaction.session_id == session_id))
    await db.execute(delete(HistorySession).where(HistorySession.id == session_id))
    await db.commit()


async def get_interaction_for_organization(
    db: AsyncSession, interaction_id: str, organization_id: int
) -> Interaction | None:
    result = await db.execute(
        select(Interaction)
        .join(HistorySession, HistorySession.id == Interaction.session_id)
        .where(Interaction.id == interaction_id, HistorySession.organization_id == organization_id)
    )
    return result.scalar_one_or_none()


async def create_artifact(
    db: AsyncSession,
    *,
    interaction_id: str,
    type: ArtifactType,
    url: str | None = None,
    filename: str | None = None,
    size_bytes: int | None = None,
    mime_type: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> Artifact:
    artifact = Artifact(
        interaction_id=interaction_id,
        type=ArtifactType(type),
        url=url,
        filename=filename,
        size_bytes=size_bytes,
        mime_type=mime_type,
        artifact_metadata=metadata or {},
    )
    db.add(artifact)
    await db.commit()
    return artifact
