"""
Purchase settlement.

Both escrow legs (buyer -> system for the price, system -> seller for the
price less the platform fee) are posted in the same unit of work as the
item's transition to SOLD, so a settlement is either fully visible or not
visible at all. The buyer-leg transaction id is the canonical reference for
the purchase and is what an idempotency key maps to.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Optional
from uuid import uuid4

from core.events import EventBus, ItemSold
from ledger.errors import (
    IdempotencyConflictError,
    ItemNotAvailableError,
    SelfPurchaseError,
)
from ledger.models import SYSTEM_ACCOUNT, Transaction, TransactionMetadata, TransactionType
from ledger.storage import InMemoryStorage
from ledger.transfers import Leg, TransferEngine

from .items import ItemStore, expire_stale
from .models import Item, ItemStatus, PurchaseResult

logger = logging.getLogger(__name__)

DEFAULT_FEE_RATE = Decimal("0.05")


def purchase_key(buyer_id: str, idempotency_key: str) -> str:
    return f"purchase:{buyer_id}:{idempotency_key}"


def platform_fee_for(price: int, fee_rate: Decimal) -> int:
    # half-up, not banker's rounding
    fee = (Decimal(price) * Decimal(str(fee_rate))).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return min(int(fee), price)


class PurchaseOrchestrator:
    def __init__(
        self,
        storage: InMemoryStorage,
        transfers: TransferEngine,
        events: Optional[EventBus] = None,
        fee_rate: Decimal = DEFAULT_FEE_RATE,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage
        self.items = ItemStore(storage)
        self.transfers = transfers
        self.events = events or transfers.events
        self.fee_rate = Decimal(str(fee_rate))
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def purchase(self, buyer_id: str, item_id: str, idempotency_key: Optional[str] = None) -> PurchaseResult:
        # client keys are scoped to the buyer so they can never name another
        # account's purchase or a server-side reward key
        key = purchase_key(buyer_id, idempotency_key) if idempotency_key else None
        if key:
            existing = self.transfers.idempotency.lookup(key)
            if existing:
                return self._replay(existing, buyer_id, item_id, key)

        with self.storage.unit_of_work() as uow:
            if key:
                existing = self.transfers.idempotency.lookup_in(uow, key)
                if existing:
                    return self._replay(existing, buyer_id, item_id, key)

            item = self.items.load(uow, item_id)
            now = self.clock()
            expire_stale(item, now)
            self._check_purchasable(item, buyer_id, now)

            price = item.price
            platform_fee = platform_fee_for(price, self.fee_rate)
            seller_amount = price - platform_fee
            metadata = TransactionMetadata(
                item_id=item.id,
                campus_id=item.campus_id,
                idempotency_key=key,
                original_amount=price,
                platform_fee=platform_fee,
                net_amount=seller_amount,
                settlement_id=str(uuid4()),
            )

            legs = [Leg(buyer_id, SYSTEM_ACCOUNT, price, TransactionType.ITEM_PURCHASE, metadata)]
            if seller_amount > 0:
                legs.append(Leg(SYSTEM_ACCOUNT, item.owner_id, seller_amount, TransactionType.ITEM_PURCHASE, metadata))
            transactions = self.transfers.post(uow, legs, idempotency_key=key)
            buyer_leg = transactions[0]

            item.status = ItemStatus.SOLD
            item.buyer_id = buyer_id
            item.sold_at = now
            item.sold_price = price
            item.reserved_by = None
            item.reserved_until = None
            item.updated_at = now
            self.items.save(uow, item)

            uow.on_commit(lambda: self.events.publish(ItemSold(
                item_id=item.id,
                seller_id=item.owner_id,
                buyer_id=buyer_id,
                transaction_id=buyer_leg.id,
                price=price,
            )))

        logger.info(
            "Item %s sold to %s for %d coins (fee %d, seller %d), txn %s",
            item_id, buyer_id, price, platform_fee, seller_amount, buyer_leg.id,
        )
        return PurchaseResult(
            transaction_id=buyer_leg.id,
            item_id=item_id,
            price=price,
            platform_fee=platform_fee,
            seller_amount=seller_amount,
        )

    def _check_purchasable(self, item: Item, buyer_id: str, now: datetime) -> None:
        if item.status in (ItemStatus.SOLD, ItemStatus.REMOVED):
            raise ItemNotAvailableError("Item not available")
        if item.is_held_by_other(buyer_id, now):
            raise ItemNotAvailableError("Item already reserved")
        if item.owner_id == buyer_id:
            raise SelfPurchaseError("Cannot purchase your own item")

    def _replay(self, existing: Transaction, buyer_id: str, item_id: str, key: str) -> PurchaseResult:
        if (
            existing.type != TransactionType.ITEM_PURCHASE
            or existing.from_account != buyer_id
            or existing.metadata.item_id != item_id
        ):
            raise IdempotencyConflictError(f"Idempotency key {key} was already used for a different request")

        logger.info("Idempotent replay of purchase %s for key %s", existing.id, key)
        price = existing.metadata.original_amount or existing.amount
        platform_fee = existing.metadata.platform_fee or 0
        return PurchaseResult(
            transaction_id=existing.id,
            item_id=item_id,
            price=price,
            platform_fee=platform_fee,
            seller_amount=price - platform_fee,
            replayed=True,
        )
