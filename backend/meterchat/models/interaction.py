import enum
import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, Enum, ForeignKey, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..platform.database import Base


class InteractionType(str, enum.Enum):
    USER_MESSAGE = "user_message"
    ASSISTANT_MESSAGE = "assistant_message"
    IMAGE_GENERATION = "image_generation"
    IMAGE_EDIT = "image_edit"
    IMAGE_VARIATION = "image_variation"
    AGENT_ACTION = "agent_action"
    AGENT_FINDING = "agent_finding"


class Interaction(Base):
    """One append-only turn of a session. Ordered by ``sequence``."""

    __tablename__ = "interactions"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        UniqueConstraint("session_id", "sequence", name="uq_interactions_session_sequence"),
        CheckConstraint("cost_credits >= 0", name="ck_interactions_cost_credits_non_negative"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(String(36), ForeignKey("sessions.id", ondelete="CASCADE"), index=True, nullable=False)
    type = Column(Enum(InteractionType, values_callable=lambda e: [m.value for m in e], native_enum=False, length=32), nullable=False)
    content = Column(Text, nullable=True)
    interaction_metadata = Column("metadata", JSON, nullable=True)
    cost_credits = Column(Integer, nullable=False, default=0, server_default="0")
    sequence = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    session = relationship("HistorySession", back_populates="interactions")
    artifacts = relationship("Artifact", back_populates="interaction", cascade="all, delete-orphan")
