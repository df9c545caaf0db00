"""
Row storage and the atomic unit primitive.

Every mutation of balances, transactions, items and reward profiles goes
through a ``UnitOfWork``: reads are versioned, writes are buffered, and the
commit validates the read set before applying the buffered writes in one
step. Nothing is visible to other units until commit, and a conflicting
commit applies nothing.
"""

import copy
import logging
import threading
from typing import Callable, Optional

from .errors import AccountFrozenError, ConcurrentConflictError, LedgerServiceError

logger = logging.getLogger(__name__)

APPEND_ONLY_TABLES = frozenset({"transactions", "idempotency"})

RowRef = tuple[str, str]


class InMemoryStorage:
    def __init__(self):
        self.accounts: dict[str, dict] = {}
        self.transactions: dict[str, dict] = {}
        self.idempotency_index: dict[str, dict] = {}
        self.items: dict[str, dict] = {}
        self.profiles: dict[str, dict] = {}
        self.referral_codes: dict[str, dict] = {}
        self.frozen_accounts: set[str] = set()
        self._tables: dict[str, dict[str, dict]] = {
            "accounts": self.accounts,
            "transactions": self.transactions,
            "idempotency": self.idempotency_index,
            "items": self.items,
            "profiles": self.profiles,
            "referral_codes": self.referral_codes,
        }
        self._versions: dict[RowRef, int] = {}
        self._latch = threading.Lock()

    def unit_of_work(self) -> "UnitOfWork":
        return UnitOfWork(self)

    def read(self, table: str, key: str) -> Optional[dict]:
        row, _ = self._read(table, key)
        return row

    def snapshot(self, table: str) -> list[dict]:
        with self._latch:
            return copy.deepcopy(list(self._table(table).values()))

    def snapshot_many(self, tables: list[str]) -> dict[str, list[dict]]:
        """Copy several tables under one latch so they describe the same instant."""
        with self._latch:
            return {table: copy.deepcopy(list(self._table(table).values())) for table in tables}

    def freeze(self, account_id: str) -> None:
        with self._latch:
            self.frozen_accounts.add(account_id)
        logger.error("Account %s frozen pending manual reconciliation", account_id)

    def unfreeze(self, account_id: str) -> bool:
        with self._latch:
            if account_id not in self.frozen_accounts:
                return False
            self.frozen_accounts.discard(account_id)
        logger.warning("Account %s unfrozen", account_id)
        return True

    def is_frozen(self, account_id: str) -> bool:
        with self._latch:
            return account_id in self.frozen_accounts

    def _table(self, table: str) -> dict[str, dict]:
        try:
            return self._tables[table]
        except KeyError:
            raise LedgerServiceError(f"Unknown table {table}") from None

    def _read(self, table: str, key: str) -> tuple[Optional[dict], int]:
        with self._latch:
            row = self._table(table).get(key)
            return copy.deepcopy(row), self._versions.get((table, key), 0)

    def _apply(self, reads: dict[RowRef, int], writes: dict[RowRef, dict]) -> None:
        with self._latch:
            for ref, version in reads.items():
                if self._versions.get(ref, 0) != version:
                    table, key = ref
                    logger.warning("Commit rejected: %s %s changed concurrently", table, key)
                    raise ConcurrentConflictError("Concurrent update detected, please retry")
            for table, key in writes:
                if table == "accounts" and key in self.frozen_accounts:
                    raise AccountFrozenError(f"Account {key} is frozen pending reconciliation")
            for ref, row in writes.items():
                table, key = ref
                self._table(table)[key] = copy.deepcopy(row)
                self._versions[ref] = self._versions.get(ref, 0) + 1


class UnitOfWork:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage
        self._reads: dict[RowRef, int] = {}
        self._writes: dict[RowRef, dict] = {}
        self._after_commit: list[Callable[[], None]] = []
        self.committed = False
        self.closed = False

    def __enter__(self) -> "UnitOfWork":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self.closed:
            return False
        if exc_type is None:
            self.commit()
        else:
            self.rollback()
        return False

    def get(self, table: str, key: str) -> Optional[dict]:
        ref = (table, key)
        if ref in self._writes:
            return copy.deepcopy(self._writes[ref])
        row, version = self.storage._read(table, key)
        # first read wins so a row that moves under us conflicts at commit
        self._reads.setdefault(ref, version)
        return row

    def put(self, table: str, key: str, row: dict) -> None:
        if table in APPEND_ONLY_TABLES:
            raise LedgerServiceError(f"{table} is append-only, use insert")
        self._ensure_open()
        self._writes[(table, key)] = copy.deepcopy(row)

    def insert(self, table: str, key: str, row: dict) -> None:
        self._ensure_open()
        if self.get(table, key) is not None:
            raise LedgerServiceError(f"{table} row {key} already exists")
        self._writes[(table, key)] = copy.deepcopy(row)

    def on_commit(self, callback: Callable[[], None]) -> None:
        self._after_commit.append(callback)

    def commit(self) -> None:
        self._ensure_open()
        try:
            self.storage._apply(self._reads, self._writes)
        except Exception:
            self.rollback()
            raise
        self.closed = True
        self.committed = True
        logger.debug("Committed unit of work with %d writes", len(self._writes))
        callbacks, self._after_commit = self._after_commit, []
        for callback in callbacks:
            callback()

    def rollback(self) -> None:
        self._reads.clear()
        self._writes.clear()
        self._after_commit.clear()
        self.closed = True

    def _ensure_open(self) -> None:
        if self.closed:
            raise LedgerServiceError("Unit of work is already closed")
