import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import uuid4

from core.events import BalanceChanged, EventBus

from .errors import (
    IdempotencyConflictError,
    InvalidAmountError,
    SelfTransferError,
)
from .models import (
    TransactionMetadata,
    TransactionStatus,
    TransactionType,
    Transaction,
    TransferResult,
)
from .storage import InMemoryStorage, UnitOfWork
from .store import IdempotencyIndex, LedgerStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Leg:
    from_account: str
    to_account: str
    amount: int
    type: TransactionType
    metadata: TransactionMetadata = field(default_factory=TransactionMetadata)

    def validate(self) -> None:
        if isinstance(self.amount, bool) or not isinstance(self.amount, int) or self.amount <= 0:
            raise InvalidAmountError("Amount must be a positive whole number of coins")
        if self.from_account == self.to_account:
            raise SelfTransferError("Cannot transfer to self")


class TransferEngine:
    def __init__(
        self,
        storage: InMemoryStorage,
        events: Optional[EventBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage
        self.ledger = LedgerStore(storage)
        self.idempotency = IdempotencyIndex(storage)
        self.events = events or EventBus()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def transfer(
        self,
        from_account: str,
        to_account: str,
        amount: int,
        type: TransactionType,
        metadata: Optional[TransactionMetadata] = None,
        idempotency_key: Optional[str] = None,
    ) -> TransferResult:
        leg = Leg(from_account, to_account, amount, type, metadata or TransactionMetadata())
        leg.validate()

        if idempotency_key:
            existing = self.idempotency.lookup(idempotency_key)
            if existing:
                return self._replay(existing, type, idempotency_key)

        with self.storage.unit_of_work() as uow:
            if idempotency_key:
                existing = self.idempotency.lookup_in(uow, idempotency_key)
                if existing:
                    return self._replay(existing, type, idempotency_key)
            transactions = self.post(uow, [leg], idempotency_key=idempotency_key)

        logger.info(
            "Transfer %s: %s -> %s %d coins (%s)",
            transactions[0].id, from_account, to_account, amount, type.value,
        )
        return TransferResult(transaction_id=transactions[0].id, transactions=transactions)

    def post(
        self,
        uow: UnitOfWork,
        legs: list[Leg],
        idempotency_key: Optional[str] = None,
    ) -> list[Transaction]:
        """Post legs inside the caller's unit; nothing is visible until it commits.

        Debits are checked against the balance read inside the same unit, so
        two units racing on one account cannot both pass the check.
        """
        for leg in legs:
            leg.validate()

        now = self.clock()
        transactions = []
        for leg in legs:
            metadata = leg.metadata
            if idempotency_key and metadata.idempotency_key is None:
                metadata = metadata.model_copy(update={"idempotency_key": idempotency_key})

            self.ledger.apply_delta(uow, leg.from_account, -leg.amount, now)
            self.ledger.apply_delta(uow, leg.to_account, leg.amount, now)

            transaction = Transaction(
                id=str(uuid4()),
                type=leg.type,
                amount=leg.amount,
                from_account=leg.from_account,
                to_account=leg.to_account,
                status=TransactionStatus.COMPLETED,
                metadata=metadata,
                created_at=now,
            )
            self.ledger.append(uow, transaction)
            transactions.append(transaction)

        if idempotency_key and transactions:
            self.idempotency.record(uow, idempotency_key, transactions[0])

        uow.on_commit(lambda: self._publish(transactions))
        return transactions

    def _replay(self, existing: Transaction, type: TransactionType, key: str) -> TransferResult:
        if existing.type != type:
            raise IdempotencyConflictError(
                f"Idempotency key {key} was already used for a {existing.type.value} transaction"
            )
        logger.info("Idempotent replay of transaction %s for key %s", existing.id, key)
        return TransferResult(transaction_id=existing.id, transactions=[existing], replayed=True)

    def _publish(self, transactions: list[Transaction]) -> None:
        for transaction in transactions:
            self.events.publish(BalanceChanged(
                account_id=transaction.from_account,
                transaction_id=transaction.id,
                delta=-transaction.amount,
            ))
            self.events.publish(BalanceChanged(
                account_id=transaction.to_account,
                transaction_id=transaction.id,
                delta=transaction.amount,
            ))
