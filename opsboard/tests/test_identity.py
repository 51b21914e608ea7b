import base64
import json

import pytest
from fastapi.testclient import TestClient

from opsboard.app import app
from opsboard.billing_service import BillingUpdater
from opsboard.payments import PaymentProviderError, PaymentsClient, get_payments_client
from opsboard.schemas import BillingRecord
from opsboard.user_store import InMemoryUserStore, get_in_memory_user_store, get_user_store, reset_in_memory_user_store

client = TestClient(app)


def make_token(sub: str, groups, email: str = "user@example.com", name=None):
    payload = {
        "sub": sub,
        "cognito:groups": groups,
        "email": email,
        "cognito:username": sub,
    }
    if name:
        payload["name"] = name
    header = base64.urlsafe_b64encode(json.dumps({"alg": "none"}).encode()).rstrip(b"=")
    body = base64.urlsafe_b64encode(json.dumps(payload).encode()).rstrip(b"=")
    return f"{header.decode()}.{body.decode()}."


class _FakePaymentsClient(PaymentsClient):
    def __init__(self, fail=False):
        self.fail = fail
        self.customers = []

    def retrieve_checkout_session(self, session_id):
        raise PaymentProviderError("not used")

    def list_recent_checkout_sessions(self, limit):
        return []

    def create_customer(self, user_id, email, name):
        if self.fail:
            raise PaymentProviderError("Stripe is not configured")
        self.customers.append((user_id, email, name))
        return {"id": f"cus_{user_id}"}


@pytest.fixture
def payments_client():
    return _FakePaymentsClient()


@pytest.fixture(autouse=True)
def _test_env(monkeypatch, payments_client):
    monkeypatch.setenv("JWT_VERIFY_SIGNATURE", "false")
    monkeypatch.setenv("USE_IN_MEMORY_USER_STORE", "true")
    monkeypatch.setenv("USE_IN_MEMORY_BILLING_AUDIT_STORE", "true")
    reset_in_memory_user_store()
    app.dependency_overrides.clear()
    app.dependency_overrides[get_payments_client] = lambda: payments_client
    yield
    app.dependency_overrides.clear()


def test_first_sync_creates_inactive_user_with_customer(payments_client):
    token = make_token("u1", ["Client"], name="User One")

    response = client.get("/users/me", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    body = response.json()
    assert body["user_id"] == "u1"
    assert body["roles"] == ["Client"]
    assert body["billing"]["status"] == "inactive"
    assert body["billing"]["provider_customer_id"] == "cus_u1"
    assert body["payment_status"] == "pending"
    assert body["provider_customer_id"] == "cus_u1"
    assert payments_client.customers == [("u1", "user@example.com", "User One")]


def test_later_syncs_refresh_profile_without_touching_billing(payments_client):
    first = make_token("u1", ["Client"])
    client.post("/users/me/sync", headers={"Authorization": f"Bearer {first}"})
    BillingUpdater(get_in_memory_user_store()).update_billing("u1", {"billing.status": "active", "billing.plan": "pro"})

    second = make_token("u1", ["Client", "COO"], email="new@example.com")
    response = client.post("/users/me/sync", headers={"Authorization": f"Bearer {second}"})

    assert response.status_code == 200
    body = response.json()
    assert body["email"] == "new@example.com"
    assert body["roles"] == ["Client", "COO"]
    assert body["billing"]["status"] == "active"
    assert body["billing"]["plan"] == "pro"
    assert body["payment_status"] == "paid"
    assert body["version"] == 2
    assert len(payments_client.customers) == 1


def test_customer_creation_failure_still_creates_user(payments_client):
    payments_client.fail = True
    token = make_token("u2", ["Client"])

    response = client.get("/users/me", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert response.json()["provider_customer_id"] is None
    assert response.json()["billing"]["status"] == "inactive"


def test_sync_requires_authentication():
    response = client.get("/users/me")
    assert response.status_code == 401


def test_team_member_sync_bypasses_billing_gate():
    header = base64.urlsafe_b64encode(json.dumps({"alg": "none"}).encode()).rstrip(b"=")
    body = base64.urlsafe_b64encode(
        json.dumps({"sub": "member-1", "cognito:groups": ["Client"], "custom:owner_id": "owner-1"}).encode()
    ).rstrip(b"=")
    headers = {"Authorization": f"Bearer {header.decode()}.{body.decode()}."}

    synced = client.post("/users/me/sync", headers=headers)
    access = client.get("/billing/access", headers=headers)

    assert synced.status_code == 200
    assert synced.json()["is_team_member"] is True
    assert synced.json()["owner_id"] == "owner-1"
    assert access.json()["allowed"] is True
    assert access.json()["exempt"] is True


class _LosingCreateStore(InMemoryUserStore):
    """Another sync creates the user between this sync's read and its create."""

    def __init__(self):
        super().__init__()
        self.create_calls = 0

    def create_user(self, user):
        self.create_calls += 1
        if self.create_calls == 1:
            super().create_user(user.model_copy(update={"provider_customer_id": "cus_winner", "billing": BillingRecord()}))
        return super().create_user(user)


def test_losing_create_race_refreshes_without_second_customer(payments_client):
    store = _LosingCreateStore()
    app.dependency_overrides[get_user_store] = lambda: store
    token = make_token("u3", ["Client"], email="late@example.com")

    response = client.post("/users/me/sync", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert response.json()["provider_customer_id"] == "cus_winner"
    assert response.json()["email"] == "late@example.com"
    assert response.json()["version"] == 1
    assert store.create_calls == 1
    assert payments_client.customers == [("u3", "late@example.com", "u3")]


def test_dashboard_requires_active_billing():
    headers = {"Authorization": f"Bearer {make_token('u4', ['Client'])}"}
    client.post("/users/me/sync", headers=headers)

    blocked = client.get("/dashboard", headers=headers)
    BillingUpdater(get_in_memory_user_store()).update_billing("u4", {"billing.status": "active"})
    allowed = client.get("/dashboard", headers=headers)

    assert blocked.status_code == 402
    assert blocked.json()["detail"]["redirect_to"] == "/payment"
    assert allowed.status_code == 200
    assert allowed.json()["billing"]["status"] == "active"
