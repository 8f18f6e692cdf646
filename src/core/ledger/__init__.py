# src/core/ledger/__init__.py
"""
Леджер: кошельки, переводы, расчёт по поездкам.
"""

from src.core.ledger.models import (
    LedgerEntry,
    ReproducibilityReport,
    SettlementResult,
    TransferResult,
    WalletAccount,
    account_number_for,
)
from src.core.ledger.repository import (
    AccountLock,
    InMemoryLedgerRepository,
    LedgerRepository,
    PostgresLedgerRepository,
)
from src.core.ledger.service import LedgerService

__all__ = [
    "LedgerEntry",
    "ReproducibilityReport",
    "SettlementResult",
    "TransferResult",
    "WalletAccount",
    "account_number_for",
    "AccountLock",
    "InMemoryLedgerRepository",
    "LedgerRepository",
    "PostgresLedgerRepository",
    "LedgerService",
]
