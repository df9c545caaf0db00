"""
Marketplace settlement

- Listings: create, edit and remove items
- Reservations: TTL-bound holds with lazy expiry
- Purchases: two-leg escrow settlement committed with the item's SOLD transition
"""

from .models import Item, ItemStatus, PurchaseResult
from .items import ItemStore, expire_stale
from .listings import ListingService
from .reservations import ReservationManager
from .purchases import PurchaseOrchestrator, platform_fee_for

__all__ = [
    "Item",
    "ItemStatus",
    "PurchaseResult",
    "ItemStore",
    "expire_stale",
    "ListingService",
    "ReservationManager",
    "PurchaseOrchestrator",
    "platform_fee_for",
]
