"""
Coin Ledger for the Campus Marketplace

This module provides:
- Per-account balances with a non-negative invariant (system escrow exempt)
- Append-only transaction log
- Atomic, optimistic units of work over balances and records
- Idempotent multi-leg transfers
- Consistency audit with account freezing
"""

from .models import (
    SYSTEM_ACCOUNT,
    TransactionType,
    TransactionStatus,
    TransactionMetadata,
    Transaction,
    Account,
    TransferResult,
)
from .storage import InMemoryStorage, UnitOfWork
from .store import LedgerStore, IdempotencyIndex
from .transfers import Leg, TransferEngine
from .reconciliation import LedgerAuditor

__all__ = [
    "SYSTEM_ACCOUNT",
    "TransactionType",
    "TransactionStatus",
    "TransactionMetadata",
    "Transaction",
    "Account",
    "TransferResult",
    "InMemoryStorage",
    "UnitOfWork",
    "LedgerStore",
    "IdempotencyIndex",
    "Leg",
    "TransferEngine",
    "LedgerAuditor",
]
