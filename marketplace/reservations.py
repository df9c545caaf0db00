import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from core.events import EventBus, ItemReserved, ReservationReleased
from ledger.errors import (
    ConcurrentConflictError,
    InvalidInputError,
    ItemNotAvailableError,
    PermissionDeniedError,
    SelfPurchaseError,
)
from ledger.storage import InMemoryStorage

from .items import ItemStore, expire_stale
from .models import Item, ItemStatus

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(minutes=5)


class ReservationManager:
    """Time-boxed holds on items.

    State machine: AVAILABLE <-> RESERVED -> SOLD, any non-SOLD -> REMOVED.
    Lapsed holds are released lazily by whichever path observes them.
    """

    def __init__(
        self,
        storage: InMemoryStorage,
        events: Optional[EventBus] = None,
        ttl: timedelta = DEFAULT_TTL,
        retry_attempts: int = 3,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage
        self.items = ItemStore(storage)
        self.events = events or EventBus()
        self.ttl = ttl
        self.retry_attempts = max(1, retry_attempts)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def reserve(self, item_id: str, by_account: str, ttl: Optional[timedelta] = None) -> datetime:
        hold = ttl if ttl is not None else self.ttl
        if hold <= timedelta(0):
            raise InvalidInputError("Reservation TTL must be positive")

        # re-evaluating a hold has no side effects beyond the hold itself,
        # so a conflicting commit is retried against fresh state
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return self._reserve_once(item_id, by_account, hold)
            except ConcurrentConflictError:
                if attempt == self.retry_attempts:
                    raise
                logger.info("Reservation of %s by %s conflicted, retry %d", item_id, by_account, attempt)

    def _reserve_once(self, item_id: str, by_account: str, hold: timedelta) -> datetime:
        with self.storage.unit_of_work() as uow:
            item = self.items.load(uow, item_id)
            now = self.clock()
            expire_stale(item, now)
            self._check_reservable(item, by_account, now)

            reserved_until = now + hold
            item.status = ItemStatus.RESERVED
            item.reserved_by = by_account
            item.reserved_until = reserved_until
            item.updated_at = now
            self.items.save(uow, item)
            uow.on_commit(lambda: self.events.publish(
                ItemReserved(item_id=item_id, reserved_by=by_account, reserved_until=reserved_until)
            ))

        logger.info("Item %s reserved by %s until %s", item_id, by_account, reserved_until.isoformat())
        return reserved_until

    def cancel(self, item_id: str, by_account: str) -> Item:
        with self.storage.unit_of_work() as uow:
            item = self.items.load(uow, item_id)
            now = self.clock()
            if expire_stale(item, now):
                self.items.save(uow, item)
                uow.on_commit(lambda: self.events.publish(ReservationReleased(item_id=item_id)))
                return item
            if item.status != ItemStatus.RESERVED:
                raise ItemNotAvailableError("Item is not reserved")
            if item.reserved_by != by_account:
                raise PermissionDeniedError("Reservation belongs to another account")

            item.status = ItemStatus.AVAILABLE
            item.reserved_by = None
            item.reserved_until = None
            item.updated_at = now
            self.items.save(uow, item)
            uow.on_commit(lambda: self.events.publish(
                ReservationReleased(item_id=item_id, released_by=by_account, reason="cancelled")
            ))

        logger.info("Reservation on %s cancelled by %s", item_id, by_account)
        return item

    def release_if_expired(self, item_id: str) -> bool:
        with self.storage.unit_of_work() as uow:
            item = self.items.load(uow, item_id)
            if not expire_stale(item, self.clock()):
                return False
            self.items.save(uow, item)
            uow.on_commit(lambda: self.events.publish(ReservationReleased(item_id=item_id)))
        logger.info("Expired reservation on %s released", item_id)
        return True

    def _check_reservable(self, item: Item, by_account: str, now: datetime) -> None:
        if item.status in (ItemStatus.SOLD, ItemStatus.REMOVED):
            raise ItemNotAvailableError("Item not available")
        if item.owner_id == by_account:
            raise SelfPurchaseError("Cannot reserve your own item")
        if item.is_held_by_other(by_account, now):
            raise ItemNotAvailableError("Item already reserved")
