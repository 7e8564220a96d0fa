from sqlalchemy import CheckConstraint, Column, Integer, String, DateTime, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from ..platform.database import Base


class Organization(Base):
    __tablename__ = "organizations"
    __table_args__ = (
        CheckConstraint("credits_balance >= 0", name="ck_organizations_credits_balance_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    slug = Column(String, unique=True, index=True)
    billing_config = Column(JSON, nullable=True)
    # Only mutated through services.credit_ledger_service
    credits_balance = Column(Integer, nullable=False, default=0, server_default="0")
    plan = Column(String, default="free")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    users = relationship("User", back_populates="organization")
    credit_ledger_entries = relationship("BillingCreditLedger", back_populates="organization", cascade="all, delete-orphan")
    history_sessions = relationship("HistorySession", back_populates="organization", passive_deletes=True)
