from .user import User
from .organization import Organization
from .billing_credit_ledger import BillingCreditLedger
from .history_session import HistorySession, SessionType
from .interaction import Interaction, InteractionType
from .artifact import Artifact, ArtifactType

__all__ = [
    "User",
    "Organization",
    "BillingCreditLedger",
    "HistorySession",
    "SessionType",
    "Interaction",
    "InteractionType",
    "Artifact",
    "ArtifactType",
]
