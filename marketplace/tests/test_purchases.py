"""
Unit Tests for Purchase Settlement

Tests cover:
1. Two-leg escrow settlement and fee arithmetic
2. Idempotent purchase retries
3. Availability, reservation and self-purchase rules
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from core.events import ItemSold
from ledger.errors import (
    ConcurrentConflictError,
    IdempotencyConflictError,
    InsufficientFundsError,
    ItemNotAvailableError,
    ItemNotFoundError,
    SelfPurchaseError,
)
from ledger.models import SYSTEM_ACCOUNT, TransactionStatus, TransactionType
from marketplace.models import ItemStatus
from marketplace.purchases import PurchaseOrchestrator, platform_fee_for, purchase_key


def purchase_legs(storage):
    return [t for t in storage.transactions.values() if t["type"] == TransactionType.ITEM_PURCHASE]


class TestSettlement:
    """Tests for the buyer -> escrow -> seller settlement."""

    def test_purchase_scenario(self, transfers, listings, purchases, fund):
        """Test A (500) buying B's 100-coin item with B at 1000 and a 5% fee."""
        fund("alice", 500)
        fund("bob", 1000)
        system_before = transfers.ledger.get_balance(SYSTEM_ACCOUNT)
        item = listings.list_item("bob", "Drafter", 100)

        result = purchases.purchase("alice", item.id)

        assert transfers.ledger.get_balance("alice") == 400
        assert transfers.ledger.get_balance("bob") == 1095
        assert transfers.ledger.get_balance(SYSTEM_ACCOUNT) - system_before == 5
        assert result.platform_fee == 5
        assert result.seller_amount == 95

        txn = transfers.ledger.get_transaction(result.transaction_id)
        assert txn.amount == 100
        assert txn.status == TransactionStatus.COMPLETED
        assert txn.from_account == "alice"
        assert txn.to_account == SYSTEM_ACCOUNT

    def test_item_marked_sold(self, listings, purchases, clock, fund):
        """Test the item carries the sale details and no reservation."""
        fund("alice", 500)
        item = listings.list_item("bob", "Lab coat", 80)

        purchases.purchase("alice", item.id)

        sold = listings.get_item(item.id)
        assert sold.status == ItemStatus.SOLD
        assert sold.buyer_id == "alice"
        assert sold.sold_price == 80
        assert sold.sold_at == clock.now
        assert sold.reserved_by is None
        assert sold.reserved_until is None

    def test_insufficient_funds(self, transfers, listings, purchases, fund):
        """Test A (50) cannot buy a 100-coin item and nothing changes."""
        fund("alice", 50)
        fund("bob", 1000)
        item = listings.list_item("bob", "Desk lamp", 100)

        with pytest.raises(InsufficientFundsError, match="Insufficient coins"):
            purchases.purchase("alice", item.id)

        assert transfers.ledger.get_balance("alice") == 50
        assert transfers.ledger.get_balance("bob") == 1000
        assert listings.get_item(item.id).status == ItemStatus.AVAILABLE

    @pytest.mark.parametrize("price, fee", [(1, 0), (10, 1), (19, 1), (30, 2), (99, 5), (250, 13)])
    def test_fee_rounds_half_up(self, price, fee):
        """Test the platform fee is round(price * rate) with halves rounded up."""
        assert platform_fee_for(price, Decimal("0.05")) == fee

    def test_legs_balance(self, storage, listings, purchases, fund):
        """Test buyer debit equals seller credit plus fee, in one settlement."""
        fund("alice", 1000)
        item = listings.list_item("bob", "Bicycle", 250)

        result = purchases.purchase("alice", item.id)

        legs = purchase_legs(storage)
        buyer_leg = next(t for t in legs if t["to_account"] == SYSTEM_ACCOUNT)
        seller_leg = next(t for t in legs if t["from_account"] == SYSTEM_ACCOUNT)
        assert buyer_leg["id"] == result.transaction_id
        assert buyer_leg["amount"] == seller_leg["amount"] + result.platform_fee
        assert result.platform_fee == platform_fee_for(250, Decimal("0.05"))
        assert buyer_leg["metadata"]["settlement_id"] == seller_leg["metadata"]["settlement_id"]

    def test_sold_event_published(self, events, listings, purchases, fund):
        """Test a committed sale publishes ItemSold with the buyer-leg id."""
        fund("alice", 500)
        item = listings.list_item("bob", "Kettle", 60)

        result = purchases.purchase("alice", item.id)

        sold = [e for e in events.published if isinstance(e, ItemSold)]
        assert len(sold) == 1
        assert sold[0].transaction_id == result.transaction_id
        assert sold[0].seller_id == "bob"


class TestPurchaseIdempotency:
    """Tests for purchase retries."""

    def test_same_key_settles_once(self, storage, transfers, listings, purchases, fund):
        """Test a double-click with one key yields one sale and one debit."""
        fund("alice", 500)
        item = listings.list_item("bob", "Textbook", 100)

        first = purchases.purchase("alice", item.id, idempotency_key="buy-001")
        second = purchases.purchase("alice", item.id, idempotency_key="buy-001")

        assert second.transaction_id == first.transaction_id
        assert second.replayed is True
        assert second.platform_fee == first.platform_fee
        assert transfers.ledger.get_balance("alice") == 400
        assert len([t for t in purchase_legs(storage) if t["from_account"] == "alice"]) == 1

    def test_retry_without_key_fails(self, listings, purchases, fund):
        """Test a second purchase without a key sees the item as sold."""
        fund("alice", 500)
        item = listings.list_item("bob", "Textbook", 100)
        purchases.purchase("alice", item.id)

        with pytest.raises(ItemNotAvailableError):
            purchases.purchase("alice", item.id)

    def test_key_reused_for_other_item(self, listings, purchases, fund):
        """Test a key bound to one item cannot buy another."""
        fund("alice", 500)
        first = listings.list_item("bob", "Textbook", 100)
        other = listings.list_item("bob", "Notebook", 20)
        purchases.purchase("alice", first.id, idempotency_key="buy-002")

        with pytest.raises(IdempotencyConflictError):
            purchases.purchase("alice", other.id, idempotency_key="buy-002")

    def test_key_from_another_buyer(self, transfers, listings, purchases, fund):
        """Test a second buyer reusing someone's key gets no replay of their purchase."""
        fund("alice", 500)
        fund("carol", 500)
        item = listings.list_item("bob", "Textbook", 100)
        purchases.purchase("alice", item.id, idempotency_key="k1")

        with pytest.raises(ItemNotAvailableError):
            purchases.purchase("carol", item.id, idempotency_key="k1")

        assert transfers.ledger.get_balance("carol") == 500
        assert transfers.idempotency.lookup("k1") is None
        assert transfers.idempotency.lookup(purchase_key("alice", "k1")).from_account == "alice"


class TestConcurrentPurchases:
    """Tests for purchases whose units overlap."""

    def _interleave(self, monkeypatch, purchases, during):
        """Run ``during`` once, after the outer purchase has read its rows but before it commits."""
        original = purchases.items.save
        pending = [during]

        def save(uow, item):
            if pending:
                pending.pop()()
            original(uow, item)

        monkeypatch.setattr(purchases.items, "save", save)

    def test_unrelated_purchases_both_commit(self, monkeypatch, storage, transfers, events, clock, listings, purchases, fund):
        """Test purchases sharing no buyer, seller or item never conflict."""
        fund("alice", 500)
        fund("carol", 500)
        first = listings.list_item("bob", "Drafter", 100)
        second = listings.list_item("dave", "Kettle", 60)
        other = PurchaseOrchestrator(storage, transfers, events, clock=clock)
        self._interleave(monkeypatch, purchases, lambda: other.purchase("carol", second.id))

        purchases.purchase("alice", first.id)

        assert transfers.ledger.get_balance("alice") == 400
        assert transfers.ledger.get_balance("carol") == 440
        assert transfers.ledger.get_balance("bob") == 95
        assert transfers.ledger.get_balance("dave") == 57
        assert transfers.ledger.get_balance(SYSTEM_ACCOUNT) == -1000 + 5 + 3

    def test_same_item_single_winner(self, monkeypatch, storage, transfers, events, clock, listings, purchases, fund):
        """Test an overlapping purchase of the same item leaves one sale and one debit."""
        fund("alice", 500)
        fund("carol", 500)
        item = listings.list_item("bob", "Drafter", 100)
        other = PurchaseOrchestrator(storage, transfers, events, clock=clock)
        self._interleave(monkeypatch, purchases, lambda: other.purchase("carol", item.id))

        with pytest.raises(ConcurrentConflictError):
            purchases.purchase("alice", item.id)

        assert listings.get_item(item.id).buyer_id == "carol"
        assert transfers.ledger.get_balance("alice") == 500
        assert transfers.ledger.get_balance("bob") == 95
        assert len(purchase_legs(storage)) == 2

    def test_racing_threads_same_item(self, storage, transfers, listings, purchases, fund):
        """Test threads racing for one item: exactly one buys, the rest are refused."""
        buyers = ["alice", "carol", "dave", "erin"]
        for buyer in buyers:
            fund(buyer, 500)
        item = listings.list_item("bob", "Bicycle", 250)
        barrier = threading.Barrier(len(buyers))

        def attempt(buyer):
            barrier.wait()
            try:
                purchases.purchase(buyer, item.id)
                return "bought"
            except (ItemNotAvailableError, ConcurrentConflictError):
                return "refused"

        with ThreadPoolExecutor(max_workers=len(buyers)) as pool:
            outcomes = list(pool.map(attempt, buyers))

        assert outcomes.count("bought") == 1
        winner = listings.get_item(item.id).buyer_id
        assert transfers.ledger.get_balance(winner) == 250
        assert sum(transfers.ledger.get_balance(b) for b in buyers) == 4 * 500 - 250
        assert len([t for t in purchase_legs(storage) if t["to_account"] == SYSTEM_ACCOUNT]) == 1

    def test_racing_threads_unrelated_items(self, transfers, listings, purchases, fund):
        """Test concurrent purchases between different parties all succeed."""
        pairs = [(f"buyer-{n}", listings.list_item(f"seller-{n}", f"Item {n}", 40).id) for n in range(6)]
        for buyer, _ in pairs:
            fund(buyer, 40)
        barrier = threading.Barrier(len(pairs))

        def attempt(pair):
            barrier.wait()
            return purchases.purchase(*pair)

        with ThreadPoolExecutor(max_workers=len(pairs)) as pool:
            results = list(pool.map(attempt, pairs))

        assert len(results) == len(pairs)
        assert all(transfers.ledger.get_balance(f"seller-{n}") == 38 for n in range(6))


class TestPurchaseRules:
    """Tests for availability and ownership checks."""

    @pytest.mark.parametrize("balance", [0, 10_000])
    def test_self_purchase_rejected(self, listings, purchases, fund, balance):
        """Test owners cannot buy their own item regardless of balance."""
        if balance:
            fund("bob", balance)
        item = listings.list_item("bob", "Guitar", 300)

        with pytest.raises(SelfPurchaseError):
            purchases.purchase("bob", item.id)

    def test_missing_item(self, purchases):
        """Test purchasing an unknown item fails."""
        with pytest.raises(ItemNotFoundError):
            purchases.purchase("alice", "no-such-item")

    def test_reserved_by_other(self, listings, reservations, purchases, fund):
        """Test a live hold by someone else blocks the purchase."""
        fund("alice", 500)
        fund("carol", 500)
        item = listings.list_item("bob", "Mini fridge", 200)
        reservations.reserve(item.id, "carol")

        with pytest.raises(ItemNotAvailableError, match="Item already reserved"):
            purchases.purchase("alice", item.id)

    def test_holder_can_buy(self, listings, reservations, purchases, fund):
        """Test the account holding the reservation can complete the sale."""
        fund("carol", 500)
        item = listings.list_item("bob", "Mini fridge", 200)
        reservations.reserve(item.id, "carol")

        result = purchases.purchase("carol", item.id)

        assert result.price == 200

    def test_expired_hold_is_purchasable(self, listings, reservations, purchases, clock, fund):
        """Test a lapsed reservation no longer blocks other buyers."""
        fund("alice", 500)
        item = listings.list_item("bob", "Mini fridge", 200)
        reservations.reserve(item.id, "carol")
        clock.advance(minutes=5, seconds=1)

        result = purchases.purchase("alice", item.id)

        assert listings.get_item(item.id).buyer_id == "alice"
        assert result.transaction_id

    def test_removed_item(self, listings, purchases, fund):
        """Test removed listings cannot be bought."""
        fund("alice", 500)
        item = listings.list_item("bob", "Poster", 30)
        listings.remove_listing("bob", item.id)

        with pytest.raises(ItemNotAvailableError):
            purchases.purchase("alice", item.id)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
