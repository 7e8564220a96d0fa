"""
Meterchat service layer: credit ledger, pricing and the conversation log.
"""

from .credit_ledger_service import (
    BillingEntityNotFound,
    InsufficientCreditsError,
    Reservation,
    grant_credits,
    reserve_credits,
)
from .pricing import calculate_chat_cost, chat_description, price_chat

__all__ = [
    "BillingEntityNotFound",
    "InsufficientCreditsError",
    "Reservation",
    "grant_credits",
    "reserve_credits",
    "calculate_chat_cost",
    "chat_description",
    "price_chat",
]
