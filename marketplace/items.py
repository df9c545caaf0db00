import logging
from datetime import datetime
from typing import Optional

from ledger.errors import ItemNotFoundError
from ledger.storage import InMemoryStorage, UnitOfWork

from .models import Item, ItemStatus

logger = logging.getLogger(__name__)


def expire_stale(item: Item, now: datetime) -> bool:
    """Revert a lapsed hold to AVAILABLE in place. Returns True if it changed."""
    if item.status != ItemStatus.RESERVED:
        return False
    if item.reserved_until is not None and item.reserved_until > now:
        return False
    item.status = ItemStatus.AVAILABLE
    item.reserved_by = None
    item.reserved_until = None
    item.updated_at = now
    return True


class ItemStore:
    """Item rows keyed by item id, read and written inside units of work."""

    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def load(self, uow: UnitOfWork, item_id: str) -> Item:
        row = uow.get("items", item_id)
        if not row:
            raise ItemNotFoundError("Item not found")
        return Item(**row)

    def find(self, item_id: str) -> Optional[Item]:
        row = self.storage.read("items", item_id)
        return Item(**row) if row else None

    def save(self, uow: UnitOfWork, item: Item) -> None:
        uow.put("items", item.id, item.model_dump())

    def list_items(
        self,
        campus_id: Optional[str] = None,
        status: Optional[ItemStatus] = None,
        owner_id: Optional[str] = None,
    ) -> list[Item]:
        items = [Item(**row) for row in self.storage.snapshot("items")]
        if campus_id:
            items = [i for i in items if i.campus_id == campus_id]
        if owner_id:
            items = [i for i in items if i.owner_id == owner_id]
        if status:
            items = [i for i in items if i.status == status]
        items.sort(key=lambda i: i.created_at, reverse=True)
        return items
