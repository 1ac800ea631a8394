"""Ledger module for durable forwarder state."""

from usdc_forwarder.ledger.database import close_db, get_db, init_db
from usdc_forwarder.ledger.models import (
    ForwardKind,
    ForwardLog,
    NetworkCursor,
    ProcessedDeposit,
)
from usdc_forwarder.ledger.repository import LedgerRepository

__all__ = [
    # Models
    "ProcessedDeposit",
    "NetworkCursor",
    "ForwardLog",
    # Enums
    "ForwardKind",
    # Database
    "get_db",
    "init_db",
    "close_db",
    "LedgerRepository",
]
