"""Ledger module for settlement records and the subscription cursor."""

from voip_relayer.ledger.cursor import CursorTracker
from voip_relayer.ledger.database import get_db, init_db
from voip_relayer.ledger.models import (
    Settlement,
    SettlementStatus,
    SubscriptionCursor,
)
from voip_relayer.ledger.repository import SettlementRepository

__all__ = [
    # Models
    "Settlement",
    "SubscriptionCursor",
    # Enums
    "SettlementStatus",
    # Database
    "get_db",
    "init_db",
    "SettlementRepository",
    "CursorTracker",
]
