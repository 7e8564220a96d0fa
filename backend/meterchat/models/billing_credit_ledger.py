from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..platform.database import Base


class BillingCreditLedger(Base):
    """Append-only credit movements for an organization.

    Negative ``delta`` is a chat charge, positive is a grant or refund.
    ``balance_after`` snapshots ``organizations.credits_balance`` as of the
    movement; ``external_ref`` makes grants idempotent.
    """

    __tablename__ = "billing_credit_ledger"
    __table_args__ = (CheckConstraint("balance_after >= 0", name="ck_billing_credit_ledger_balance_nonnegative"),)
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), index=True, nullable=False)
    delta = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    reason = Column(String, nullable=False)
    # pricing.chat_feature_id() for chat charges, None for grants
    feature_id = Column(String, nullable=True, index=True)
    external_ref = Column(String, nullable=True, unique=True, index=True)
    entry_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    organization = relationship("Organization", back_populates="credit_ledger_entries")
