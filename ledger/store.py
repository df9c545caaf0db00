from datetime import datetime, timezone
from typing import Optional

from .errors import (
    AccountFrozenError,
    IdempotencyConflictError,
    InsufficientFundsError,
    TransactionNotFoundError,
)
from .models import (
    SYSTEM_ACCOUNT,
    Account,
    AccountBalance,
    IdempotencyRecord,
    LedgerHistoryResponse,
    Transaction,
)
from .storage import InMemoryStorage, UnitOfWork


class LedgerStore:
    """Per-account balances plus the append-only transaction log.

    The system account has no balance row. Its balance is the sum of its
    legs in the log, so units that only share the system account never
    conflict with each other.
    """

    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def get_balance(self, account_id: str) -> int:
        if account_id == SYSTEM_ACCOUNT:
            return sum(t.delta_for(SYSTEM_ACCOUNT) for t in self.transactions_for(SYSTEM_ACCOUNT))
        row = self.storage.read("accounts", account_id)
        return row["balance"] if row else 0

    def get_account(self, account_id: str) -> Account:
        row = self.storage.read("accounts", account_id)
        if not row:
            return Account(account_id=account_id, balance=self.get_balance(account_id))
        return Account(**row)

    def apply_delta(self, uow: UnitOfWork, account_id: str, delta: int, now: Optional[datetime] = None) -> Optional[int]:
        if self.storage.is_frozen(account_id):
            raise AccountFrozenError(f"Account {account_id} is frozen pending reconciliation")
        if account_id == SYSTEM_ACCOUNT:
            return None

        row = uow.get("accounts", account_id) or {
            "account_id": account_id, "balance": 0, "last_updated": None,
        }
        new_balance = row["balance"] + delta
        if new_balance < 0:
            raise InsufficientFundsError("Insufficient coins")

        row["balance"] = new_balance
        row["last_updated"] = now or datetime.now(timezone.utc)
        uow.put("accounts", account_id, row)
        return new_balance

    def append(self, uow: UnitOfWork, transaction: Transaction) -> None:
        uow.insert("transactions", transaction.id, transaction.model_dump())

    def get_transaction(self, transaction_id: str) -> Transaction:
        row = self.storage.read("transactions", transaction_id)
        if not row:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        return Transaction(**row)

    def transactions_for(self, account_id: str) -> list[Transaction]:
        return [
            Transaction(**row) for row in self.storage.snapshot("transactions")
            if row["from_account"] == account_id or row["to_account"] == account_id
        ]

    def get_account_balance(self, account_id: str) -> AccountBalance:
        entries = self.transactions_for(account_id)
        last_entry = max(entries, key=lambda e: e.created_at) if entries else None
        return AccountBalance(
            account_id=account_id,
            balance=self.get_balance(account_id),
            total_entries=len(entries),
            last_transaction_at=last_entry.created_at if last_entry else None,
            frozen=self.storage.is_frozen(account_id),
        )

    def get_history(self, account_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        all_entries = self.transactions_for(account_id)
        all_entries.sort(key=lambda e: e.created_at, reverse=True)
        paginated = all_entries[offset:offset + limit]

        return LedgerHistoryResponse(
            account_id=account_id,
            entries=paginated,
            total_count=len(all_entries),
            current_balance=self.get_balance(account_id),
        )


class IdempotencyIndex:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def lookup(self, key: str) -> Optional[Transaction]:
        record = self.storage.read("idempotency", key)
        if not record:
            return None
        return self._load(record["transaction_id"])

    def lookup_in(self, uow: UnitOfWork, key: str) -> Optional[Transaction]:
        record = uow.get("idempotency", key)
        if not record:
            return None
        row = uow.get("transactions", record["transaction_id"])
        return Transaction(**row) if row else None

    def record(self, uow: UnitOfWork, key: str, transaction: Transaction) -> None:
        if uow.get("idempotency", key) is not None:
            raise IdempotencyConflictError(f"Idempotency key {key} already used")
        record = IdempotencyRecord(
            key=key,
            transaction_id=transaction.id,
            transaction_type=transaction.type,
            created_at=transaction.created_at,
        )
        uow.insert("idempotency", key, record.model_dump())

    def _load(self, transaction_id: str) -> Optional[Transaction]:
        row = self.storage.read("transactions", transaction_id)
        return Transaction(**row) if row else None
