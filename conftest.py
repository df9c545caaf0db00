from datetime import datetime, timedelta, timezone

import pytest

from core.events import EventBus
from ledger.models import SYSTEM_ACCOUNT, TransactionType
from ledger.storage import InMemoryStorage
from ledger.transfers import TransferEngine
from marketplace.listings import ListingService
from marketplace.purchases import PurchaseOrchestrator
from marketplace.reservations import ReservationManager
from rewards.service import RewardService


class FakeClock:
    def __init__(self, start: datetime = datetime(2024, 9, 2, 10, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def storage():
    return InMemoryStorage()


@pytest.fixture()
def events():
    bus = EventBus()
    bus.keep_history = True
    return bus


@pytest.fixture()
def transfers(storage, events, clock):
    return TransferEngine(storage, events, clock=clock)


@pytest.fixture()
def fund(transfers):
    """Seed an account from the system account."""
    def _fund(account_id: str, amount: int):
        return transfers.transfer(SYSTEM_ACCOUNT, account_id, amount, TransactionType.ADMIN_CREDIT)
    return _fund


@pytest.fixture()
def listings(storage, transfers, events, clock):
    return ListingService(storage, transfers, events, clock=clock)


@pytest.fixture()
def reservations(storage, events, clock):
    return ReservationManager(storage, events, clock=clock)


@pytest.fixture()
def purchases(storage, transfers, events, clock):
    return PurchaseOrchestrator(storage, transfers, events, clock=clock)


@pytest.fixture()
def rewards(storage, transfers, events, clock):
    service = RewardService(storage, transfers, events, clock=clock)
    service.subscribe()
    return service
