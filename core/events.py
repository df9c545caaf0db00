"""
Post-commit domain events.

Events are published after the unit of work that produced them commits.
Delivery is fire-and-forget: a failing subscriber is logged and never
affects the caller or the other subscribers.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DomainEvent:
    occurred_at: datetime = field(default_factory=_now, kw_only=True)


@dataclass(frozen=True)
class BalanceChanged(DomainEvent):
    account_id: str
    transaction_id: str
    delta: int


@dataclass(frozen=True)
class ItemListed(DomainEvent):
    item_id: str
    owner_id: str
    campus_id: Optional[str] = None


@dataclass(frozen=True)
class ItemReserved(DomainEvent):
    item_id: str
    reserved_by: str
    reserved_until: datetime


@dataclass(frozen=True)
class ReservationReleased(DomainEvent):
    item_id: str
    released_by: Optional[str] = None
    reason: str = "expired"


@dataclass(frozen=True)
class ItemSold(DomainEvent):
    item_id: str
    seller_id: str
    buyer_id: str
    transaction_id: str
    price: int


@dataclass(frozen=True)
class ItemRemoved(DomainEvent):
    item_id: str
    removed_by: str


Handler = Callable[[DomainEvent], None]


class EventBus:
    def __init__(self):
        self._handlers: dict[type, list[Handler]] = defaultdict(list)
        self.published: list[DomainEvent] = []
        self.keep_history = False

    def subscribe(self, event_type: type, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def publish(self, event: DomainEvent) -> None:
        if self.keep_history:
            self.published.append(event)
        for handler in list(self._handlers.get(type(event), [])):
            try:
                handler(event)
            except Exception:
                logger.exception("Subscriber %r failed on %s", handler, type(event).__name__)
