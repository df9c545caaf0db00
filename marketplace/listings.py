import logging
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import uuid4

from core.events import EventBus, ItemListed, ItemRemoved, ReservationReleased
from ledger.errors import InvalidInputError, InvalidStateTransitionError, PermissionDeniedError
from ledger.models import SYSTEM_ACCOUNT, TransactionMetadata, TransactionType
from ledger.storage import InMemoryStorage
from ledger.transfers import Leg, TransferEngine

from .items import ItemStore, expire_stale
from .models import Item, ItemStatus

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = frozenset({"title", "description", "category", "price"})


class ListingService:
    def __init__(
        self,
        storage: InMemoryStorage,
        transfers: TransferEngine,
        events: Optional[EventBus] = None,
        listing_fee: int = 0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage
        self.items = ItemStore(storage)
        self.transfers = transfers
        self.events = events or transfers.events
        self.listing_fee = listing_fee
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def list_item(
        self,
        owner_id: str,
        title: str,
        price: int,
        campus_id: Optional[str] = None,
        description: str = "",
        category: Optional[str] = None,
    ) -> Item:
        if isinstance(price, bool) or not isinstance(price, int) or price <= 0:
            raise InvalidInputError("Price must be a positive whole number of coins")
        if not title or not title.strip():
            raise InvalidInputError("Title is required")

        now = self.clock()
        item = Item(
            id=str(uuid4()),
            owner_id=owner_id,
            campus_id=campus_id,
            title=title.strip(),
            description=description,
            category=category,
            price=price,
            status=ItemStatus.AVAILABLE,
            created_at=now,
            updated_at=now,
        )

        with self.storage.unit_of_work() as uow:
            uow.insert("items", item.id, item.model_dump())
            if self.listing_fee > 0:
                self.transfers.post(uow, [Leg(
                    owner_id, SYSTEM_ACCOUNT, self.listing_fee, TransactionType.LISTING_FEE,
                    TransactionMetadata(item_id=item.id, campus_id=campus_id),
                )])
            uow.on_commit(lambda: self.events.publish(
                ItemListed(item_id=item.id, owner_id=owner_id, campus_id=campus_id)
            ))

        logger.info("Item %s listed by %s at %d coins", item.id, owner_id, price)
        return item

    def get_item(self, item_id: str) -> Item:
        with self.storage.unit_of_work() as uow:
            item = self.items.load(uow, item_id)
            if expire_stale(item, self.clock()):
                self.items.save(uow, item)
                uow.on_commit(lambda: self.events.publish(ReservationReleased(item_id=item_id)))
        return item

    def browse(self, campus_id: Optional[str] = None, owner_id: Optional[str] = None) -> list[Item]:
        now = self.clock()
        items = self.items.list_items(campus_id=campus_id, owner_id=owner_id)
        for item in items:
            expire_stale(item, now)
        return [i for i in items if i.status in (ItemStatus.AVAILABLE, ItemStatus.RESERVED)]

    def update_listing(self, owner_id: str, item_id: str, updates: dict) -> Item:
        if "status" in updates:
            raise InvalidInputError("Cannot update status through this function")
        unknown = set(updates) - EDITABLE_FIELDS
        if unknown:
            raise InvalidInputError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        if "price" in updates:
            price = updates["price"]
            if isinstance(price, bool) or not isinstance(price, int) or price <= 0:
                raise InvalidInputError("Price must be a positive whole number of coins")

        with self.storage.unit_of_work() as uow:
            item = self.items.load(uow, item_id)
            if item.owner_id != owner_id:
                raise PermissionDeniedError("You do not own this item")
            if item.status in (ItemStatus.SOLD, ItemStatus.REMOVED):
                raise InvalidStateTransitionError(f"Cannot edit an item that is {item.status.value}")

            item = item.model_copy(update={**updates, "updated_at": self.clock()})
            self.items.save(uow, item)

        return item

    def remove_listing(self, actor_id: str, item_id: str, is_admin: bool = False) -> Item:
        with self.storage.unit_of_work() as uow:
            item = self.items.load(uow, item_id)
            if item.owner_id != actor_id and not is_admin:
                raise PermissionDeniedError("You do not have permission to remove this listing")
            if item.status == ItemStatus.SOLD:
                raise InvalidStateTransitionError("Sold items cannot be removed")
            if item.status == ItemStatus.REMOVED:
                return item

            now = self.clock()
            item.status = ItemStatus.REMOVED
            item.reserved_by = None
            item.reserved_until = None
            item.removed_at = now
            item.removed_by = actor_id
            item.updated_at = now
            self.items.save(uow, item)
            uow.on_commit(lambda: self.events.publish(ItemRemoved(item_id=item_id, removed_by=actor_id)))

        logger.info("Item %s removed by %s", item_id, actor_id)
        return item
