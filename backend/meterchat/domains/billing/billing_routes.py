"""Billing: credit balance, price list and recent ledger entries."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from ...deps import get_current_user
from ...models.billing_credit_ledger import BillingCreditLedger
from ...models.user import User
from ...platform.database import get_async_db
from ...services.credit_ledger_service import BillingEntityNotFound, get_balance, recent_entries
from ...services.pricing import pricing_table

router = APIRouter(prefix="/billing", tags=["Billing"])


def _serialize_ledger_entry(entry: BillingCreditLedger) -> dict:
    return {
        "id": entry.id,
        "delta": entry.delta,
        "balance_after": entry.balance_after,
        "reason": entry.reason,
        "feature_id": entry.feature_id,
        "external_ref": entry.external_ref,
        "metadata": entry.entry_metadata or {},
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


@router.get("/credits")
async def get_credits(
    db: AsyncSession = Depends(get_async_db),
    current_user: User = Depends(get_current_user),
):
    if current_user.organization_id is None:
        raise HTTPException(status_code=404, detail="Organization not found")
    try:
        balance = await get_balance(db, current_user.organization_id)
    except BillingEntityNotFound:
        raise HTTPException(status_code=404, detail="Organization not found")
    entries = await recent_entries(db, current_user.organization_id, limit=50)
    return {
        "credits_balance": balance,
        "pricing": pricing_table(),
        "entries": [_serialize_ledger_entry(entry) for entry in entries],
    }
