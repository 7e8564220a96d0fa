import enum
import uuid

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..platform.database import Base


class ArtifactType(str, enum.Enum):
    IMAGE = "image"
    DOCUMENT = "document"
    CODE = "code"
    DATA = "data"


class Artifact(Base):
    __tablename__ = "artifacts"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    interaction_id = Column(String(36), ForeignKey("interactions.id", ondelete="CASCADE"), index=True, nullable=False)
    type = Column(Enum(ArtifactType, values_callable=lambda e: [m.value for m in e], native_enum=False, length=20), nullable=False)
    url = Column(String, nullable=True)
    filename = Column(String, nullable=True)
    size_bytes = Column(Integer, nullable=True)
    mime_type = Column(String, nullable=True)
    artifact_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    interaction = relationship("Interaction", back_populates="artifacts")
