"""
API Tests for the Campus Coin Ledger

Exercises the HTTP surface end to end with FastAPI's TestClient:
authentication, purchase settlement, reservations, rewards and admin routes.
"""

import pytest
from fastapi.testclient import TestClient

from api.app import build_services, create_app
from core.config import ApiConfig, AppConfig

TOKENS = {"tok-alice": "alice", "tok-bob": "bob", "tok-carol": "carol", "tok-admin": "admin"}


def auth(account_id):
    token = next(t for t, a in TOKENS.items() if a == account_id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def config():
    return AppConfig(api=ApiConfig(api_tokens=TOKENS, admin_accounts=frozenset({"admin"})))


@pytest.fixture()
def services(config, clock):
    return build_services(config, clock=clock)


@pytest.fixture()
def client(config, services):
    return TestClient(create_app(config, services=services))


@pytest.fixture()
def credit(client):
    def _credit(account_id, amount):
        response = client.post(
            "/admin/transfers",
            json={"account_id": account_id, "amount": amount, "type": "ADMIN_CREDIT"},
            headers=auth("admin"),
        )
        assert response.status_code == 201
        return response.json()
    return _credit


@pytest.fixture()
def item_id(client):
    response = client.post("/items", json={"title": "Drafter", "price": 100, "campusId": "vitap"}, headers=auth("bob"))
    assert response.status_code == 201
    return response.json()["id"]


def balance_of(client, account_id):
    return client.get("/accounts/me/balance", headers=auth(account_id)).json()["balance"]


class TestAuthentication:
    """Tests for token resolution."""

    def test_health_is_public(self, client):
        """Test the health check needs no token."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_missing_token(self, client):
        """Test protected routes reject requests without a token."""
        response = client.post("/purchase", json={"itemId": "x"})

        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized - No token provided"}

    def test_unknown_token(self, client):
        """Test an unknown bearer token is rejected."""
        response = client.get("/accounts/me/balance", headers={"Authorization": "Bearer forged"})

        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized - Invalid token"}

    def test_user_header_ignored_by_default(self, client):
        """Test X-User-Id is not trusted unless header auth is enabled."""
        response = client.get("/accounts/me/balance", headers={"X-User-Id": "alice"})

        assert response.status_code == 401

    def test_user_header_when_enabled(self, clock):
        """Test X-User-Id resolves the account when header auth is on."""
        config = AppConfig(api=ApiConfig(allow_header_auth=True))
        client = TestClient(create_app(config, services=build_services(config, clock=clock)))

        response = client.get("/accounts/me/balance", headers={"X-User-Id": "dave"})

        assert response.status_code == 200
        assert response.json()["account_id"] == "dave"


class TestPurchaseRoute:
    """Tests for POST /purchase."""

    def test_purchase_settles(self, client, credit, item_id):
        """Test a purchase returns the fee split and moves the coins."""
        credit("alice", 500)

        response = client.post("/purchase", json={"itemId": item_id, "idempotencyKey": "buy-1"}, headers=auth("alice"))

        assert response.status_code == 200
        body = response.json()
        assert body["itemId"] == item_id
        assert body["platformFee"] == 5
        assert body["sellerAmount"] == 95
        assert body["transactionId"]
        assert balance_of(client, "alice") == 400
        assert balance_of(client, "bob") == 95
        assert client.get(f"/items/{item_id}").json()["status"] == "SOLD"

    def test_retry_with_same_key(self, client, credit, item_id):
        """Test a retried purchase returns the original transaction."""
        credit("alice", 500)
        payload = {"itemId": item_id, "idempotencyKey": "buy-2"}

        first = client.post("/purchase", json=payload, headers=auth("alice")).json()
        second = client.post("/purchase", json=payload, headers=auth("alice")).json()

        assert second["transactionId"] == first["transactionId"]
        assert second["replayed"] is True
        assert balance_of(client, "alice") == 400

    @pytest.mark.parametrize("buyer, funds, message", [
        ("carol", 50, "Insufficient coins"),
        ("bob", 500, "Cannot purchase your own item"),
    ])
    def test_rejected_purchases(self, client, credit, item_id, buyer, funds, message):
        """Test business rule violations map to 400 with a message."""
        credit(buyer, funds)

        response = client.post("/purchase", json={"itemId": item_id}, headers=auth(buyer))

        assert response.status_code == 400
        assert response.json() == {"error": message}

    def test_unknown_item(self, client):
        """Test purchasing a missing item is a 404."""
        response = client.post("/purchase", json={"itemId": "missing"}, headers=auth("alice"))

        assert response.status_code == 404
        assert response.json() == {"error": "Item not found"}

    def test_missing_item_id(self, client):
        """Test request validation errors are reported as 400."""
        response = client.post("/purchase", json={}, headers=auth("alice"))

        assert response.status_code == 400
        assert "error" in response.json()


class TestReservationRoutes:
    """Tests for POST /reserve and /reserve/cancel."""

    def test_reserve_blocks_other_buyers(self, client, credit, item_id):
        """Test a held item cannot be bought by someone else."""
        credit("carol", 500)

        response = client.post("/reserve", json={"itemId": item_id}, headers=auth("alice"))
        assert response.status_code == 200
        assert response.json()["reservedUntil"]

        blocked = client.post("/purchase", json={"itemId": item_id}, headers=auth("carol"))
        assert blocked.status_code == 400
        assert blocked.json() == {"error": "Item already reserved"}

    def test_cancel(self, client, item_id):
        """Test the holder can cancel and others cannot."""
        client.post("/reserve", json={"itemId": item_id}, headers=auth("alice"))

        assert client.post("/reserve/cancel", json={"itemId": item_id}, headers=auth("carol")).status_code == 403
        response = client.post("/reserve/cancel", json={"itemId": item_id}, headers=auth("alice"))
        assert response.status_code == 200
        assert response.json()["status"] == "AVAILABLE"


class TestListingRoutes:
    """Tests for the item routes."""

    def test_invalid_price(self, client):
        """Test a zero price is rejected by validation."""
        response = client.post("/items", json={"title": "Pen", "price": 0}, headers=auth("bob"))

        assert response.status_code == 400

    def test_browse_and_update(self, client, item_id):
        """Test listings can be browsed and edited by their owner."""
        assert [i["id"] for i in client.get("/items", params={"campus_id": "vitap"}).json()] == [item_id]

        assert client.patch(f"/items/{item_id}", json={"price": 90}, headers=auth("alice")).status_code == 403
        response = client.patch(f"/items/{item_id}", json={"price": 90}, headers=auth("bob"))
        assert response.json()["price"] == 90

    def test_remove(self, client, item_id):
        """Test the owner removes a listing and it leaves the catalog."""
        response = client.delete(f"/items/{item_id}", headers=auth("bob"))

        assert response.json()["status"] == "REMOVED"
        assert client.get("/items").json() == []


class TestRewardRoutes:
    """Tests for the signup bonus and reward profile routes."""

    def test_signup_bonus(self, client):
        """Test signup credits once and reports whether it was new."""
        payload = {"uid": "alice", "email": "alice@vitap.edu.in"}

        first = client.post("/signup-bonus", json=payload, headers=auth("alice"))
        second = client.post("/signup-bonus", json=payload, headers=auth("alice"))

        assert first.status_code == 200
        assert first.json()["success"] is True
        assert first.json()["created"] is True
        assert second.json()["created"] is False
        assert balance_of(client, "alice") == 100

    def test_uid_mismatch(self, client):
        """Test an account cannot sign up on behalf of another."""
        response = client.post("/signup-bonus", json={"uid": "bob", "email": "bob@vitap.edu.in"}, headers=auth("alice"))

        assert response.status_code == 403

    def test_referral_flow(self, client):
        """Test a referred account's first listing pays both sides."""
        code = client.post(
            "/signup-bonus", json={"uid": "alice", "email": "alice@vitap.edu.in"}, headers=auth("alice"),
        ).json()["profile"]["referral_code"]
        client.post(
            "/signup-bonus",
            json={"uid": "carol", "email": "carol@vitap.edu.in", "referralCode": code},
            headers=auth("carol"),
        )

        client.post("/items", json={"title": "Kettle", "price": 60}, headers=auth("carol"))

        assert balance_of(client, "alice") == 300
        assert balance_of(client, "carol") == 325
        profile = client.get("/rewards/profile", headers=auth("carol")).json()
        assert profile["referral_bonus_paid_out"] is True

    def test_profile_not_found(self, client):
        """Test reading a profile before signup is a 404."""
        assert client.get("/rewards/profile", headers=auth("bob")).status_code == 404


class TestAdminRoutes:
    """Tests for admin transfers, audit and unfreeze."""

    def test_non_admin_forbidden(self, client):
        """Test regular accounts cannot use admin routes."""
        response = client.post(
            "/admin/transfers", json={"account_id": "alice", "amount": 500}, headers=auth("alice"),
        )

        assert response.status_code == 403
        assert client.post("/admin/audit", headers=auth("bob")).status_code == 403

    def test_only_admin_types(self, client):
        """Test admin transfers are limited to credits and debits."""
        response = client.post(
            "/admin/transfers", json={"account_id": "alice", "amount": 5, "type": "REFUND"}, headers=auth("admin"),
        )

        assert response.status_code == 400

    def test_debit_and_history(self, client, credit):
        """Test a debit is recorded in the account history."""
        credit("alice", 500)
        response = client.post(
            "/admin/transfers", json={"account_id": "alice", "amount": 200, "type": "ADMIN_DEBIT"}, headers=auth("admin"),
        )
        assert response.status_code == 201

        history = client.get("/accounts/me/transactions", headers=auth("alice")).json()
        assert history["total_count"] == 2
        assert history["current_balance"] == 300

    def test_audit_and_unfreeze(self, client, services, credit, item_id):
        """Test a tampered balance is found, frozen and then unfrozen."""
        credit("alice", 500)
        client.post("/purchase", json={"itemId": item_id}, headers=auth("alice"))
        assert client.post("/admin/audit", headers=auth("admin")).json()["findings"] == []

        services.storage.accounts["alice"]["balance"] += 1
        report = client.post("/admin/audit", headers=auth("admin")).json()

        assert report["frozen_accounts"] == ["alice"]
        assert client.get("/accounts/me/balance", headers=auth("alice")).json()["frozen"] is True
        response = client.post("/admin/accounts/alice/unfreeze", headers=auth("admin"))
        assert response.json() == {"account_id": "alice", "unfrozen": True}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
