import enum
import uuid

from sqlalchemy import Boolean, Column, DateTime, Enum, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..platform.database import Base


class SessionType(str, enum.Enum):
    CHAT = "chat"
    SANDBOX = "sandbox"
    AGENT = "agent"
    MAGIC_ADS = "magic_ads"


class HistorySession(Base):
    """A conversation container owned by one organization."""

    __tablename__ = "sessions"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column(Integer, ForeignKey("organizations.id"), index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=True)
    type = Column(Enum(SessionType, values_callable=lambda e: [m.value for m in e], native_enum=False, length=20), nullable=False)
    title = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    session_metadata = Column("metadata", JSON, nullable=True)
    starred = Column(Boolean, nullable=False, default=False)
    archived = Column(Boolean, nullable=False, default=False)
    # Highest sequence handed out so far; bumped with UPDATE ... RETURNING on every append
    last_sequence = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    organization = relationship("Organization", back_populates="history_sessions")
    user = relationship("User", back_populates="history_sessions")
    interactions = relationship(
        "Interaction",
        back_populates="session",
        order_by="Interaction.sequence",
        cascade="all, delete-orphan",
    )
