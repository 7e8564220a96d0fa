"""
Grant credits to an organization (manual top-up, support goodwill).

Usage (from backend/ with DATABASE_URL set):
  python -m meterchat.scripts.grant_credits acme-inc 500 "Goodwill top-up" [external_ref]

Passing the same external_ref twice grants only once.
"""
from __future__ import annotations

import asyncio
import sys

from sqlalchemy import select

from meterchat.models.organization import Organization
from meterchat.platform.database import async_session_maker
from meterchat.services.credit_ledger_service import grant_credits


async def _grant(slug: str, amount: int, reason: str, external_ref: str | None) -> int:
    async with async_session_maker() as db:
        org = (await db.execute(select(Organization).where(Organization.slug == slug))).scalar_one_or_none()
        if not org:
            print(f"Organization not found: {slug}", file=sys.stderr)
            return 2
        org_id = org.id
        entry, created = await grant_credits(
            db,
            organization_id=org_id,
            amount=amount,
            reason=reason,
            external_ref=external_ref,
            metadata={"source": "grant_credits_script"},
        )
    if created:
        print(f"Granted {amount} credits to {slug} (org_id={org_id}). Balance is now {entry.balance_after}.")
    else:
        print(f"external_ref {external_ref} was already applied (entry {entry.id}). Nothing changed.")
    return 0


def main() -> None:
    if len(sys.argv) < 3:
        print(
            "Usage: python -m meterchat.scripts.grant_credits <org_slug> <amount> [reason] [external_ref]",
            file=sys.stderr,
        )
        sys.exit(1)
    slug = sys.argv[1].strip().lower()
    try:
        amount = int(sys.argv[2])
    except ValueError:
        print(f"Amount must be an integer: {sys.argv[2]}", file=sys.stderr)
        sys.exit(1)
    if amount <= 0:
        print("Amount must be positive", file=sys.stderr)
        sys.exit(1)
    reason = sys.argv[3] if len(sys.argv) > 3 else "Manual credit grant"
    external_ref = sys.argv[4] if len(sys.argv) > 4 else None
    sys.exit(asyncio.run(_grant(slug, amount, reason, external_ref)))


if __name__ == "__main__":
    main()
