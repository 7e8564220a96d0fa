"""
Credit ledger: the only code that mutates ``Organization.credits_balance``.

Both primitives are a single conditional UPDATE evaluated by the database, so
concurrent callers can never overdraw a balance. Each call commits its own short
transaction and never holds a lock across a network call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.billing_credit_ledger import BillingCreditLedger
from ..models.organization import Organization
from ..platform.logging import log_event

logger = logging.getLogger("meterchat.ledger")


class BillingEntityNotFound(LookupError):
    def __init__(self, organization_id: int):
        super().__init__(f"Organization {organization_id} not found")
        self.organization_id = organization_id


class InsufficientCreditsError(Exception):
    def __init__(self, organization_id: int, requested: int, balance: int):
        super().__init__(
            f"Organization {organization_id} has {balance} credits, {requested} requested"
        )
        self.organization_id = organization_id
        self.requested = requested
        self.balance = balance


@dataclass(frozen=True)
class Reservation:
    success: bool
    new_balance: int
    entry_id: int | None = None


async def reserve_credits(
    db: AsyncSession,
    *,
    organization_id: int,
    amount: int,
    reason: str,
    feature_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> Reservation:
    """Atomically deduct ``amount`` credits if and only if the balance covers it.

    Raises:
        InsufficientCreditsError: balance below ``amount``; nothing is written.
        BillingEntityNotFound: no organization with that id.
    """
    amount = int(amount)
    if amount < 0:
        raise ValueError("amount must be non-negative")

    result = await db.execute(
        update(Organization)
        .where(Organization.id == organization_id, Organization.credits_balance >= amount)
        .values(credits_balance=Organization.credits_balance - amount)
        .returning(Organization.credits_balance)
        .execution_options(synchronize_session=False)
    )
    new_balance = result.scalar_one_or_none()
    if new_balance is None:
        await db.rollback()
        balance = (
            await db.execute(select(Organization.credits_balance).where(Organization.id == organization_id))
        ).scalar_one_or_none()
        if balance is None:
            raise BillingEntityNotFound(organization_id)
        log_event(
            logger,
            logging.INFO,
            "ledger.reserve_declined",
            organization_id=organization_id,
            amount=amount,
            balance=balance,
            feature_id=feature_id,
        )
        raise InsufficientCreditsError(organization_id, amount, int(balance))

    entry = BillingCreditLedger(
        organization_id=organization_id,
        delta=-amount,
        balance_after=int(new_balance),
        reason=reason,
        feature_id=feature_id,
        entry_metadata=metadata or {},
    )
    db.add(entry)
    await db.commit()
    log_event(
        logger,
        logging.INFO,
        "ledger.reserved",
        organization_id=organization_id,
        amount=amount,
        new_balance=int(new_balance),
        feature_id=feature_id,
        entry_id=entry.id,
    )
    return Reservation(success=True, new_balance=int(new_balance), entry_id=entry.id)


async def grant_credits(
    db: AsyncSession,
    *,
    organization_id: int,
    amount: int,
    reason: str,
    external_ref: str | None = None,
    feature_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> tuple[BillingCreditLedger, bool]:
    """Atomically add ``amount`` credits. Idempotent on ``external_ref``.

    Returns the ledger entry and whether it was created by this call. A repeated
    ``external_ref`` returns the original entry and leaves the balance untouched.
    """
    amount = int(amount)
    if amount <= 0:
        raise ValueError("amount must be positive")

    # Write first: the increment and the unique external_ref insert share one
    # transaction, so a duplicate ref rolls the increment back.
    result = await db.execute(
        update(Organization)
        .where(Organization.id == organization_id)
        .values(credits_balance=Organization.credits_balance + amount)
        .returning(Organization.credits_balance)
        .execution_options(synchronize_session=False)
    )
    new_balance = result.scalar_one_or_none()
    if new_balance is None:
        await db.rollback()
        raise BillingEntityNotFound(organization_id)

    entry = BillingCreditLedger(
        organization_id=organization_id,
        delta=amount,
        balance_after=int(new_balance),
        reason=reason,
        feature_id=feature_id,
        external_ref=external_ref,
        entry_metadata=metadata or {},
    )
    db.add(entry)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        if not external_ref:
            raise
        existing = (
            await db.execute(
                select(BillingCreditLedger).where(BillingCreditLedger.external_ref == external_ref)
            )
        ).scalar_one_or_none()
        if existing is None:
            raise
        return existing, False

    log_event(
        logger,
        logging.INFO,
        "ledger.granted",
        organization_id=organization_id,
        amount=amount,
        new_balance=int(new_balance),
        external_ref=external_ref,
        entry_id=entry.id,
    )
    return entry, True


async def get_balance(db: AsyncSession, organization_id: int) -> int:
    balance = (
        await db.execute(select(Organization.credits_balance).where(Organization.id == organization_id))
    ).scalar_one_or_none()
    if balance is None:
        raise BillingEntityNotFound(organization_id)
    return int(balance)


async def recent_entries(db: AsyncSession, organization_id: int, limit: int = 50) -> list[BillingCreditLedger]:
    result = await db.execute(
        select(BillingCreditLedger)
        .where(BillingCreditLedger.organization_id == organization_id)
        .order_by(BillingCreditLedger.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
