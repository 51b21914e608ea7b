from datetime import datetime, timezone
from decimal import Decimal

import pytest
from botocore.exceptions import ClientError

from opsboard.schemas import BillingRecord, BillingStatus, UserRecord
from opsboard.user_store import (
    DynamoUserStore,
    InMemoryUserStore,
    PersistenceError,
    VersionConflictError,
    get_in_memory_user_store,
    get_user_store,
)


def _client_error(code: str, operation: str = "PutItem") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class _FakeTable:
    def __init__(self, get_results=None, scan_results=None, put_error=None):
        self.get_results = list(get_results or [])
        self.scan_results = list(scan_results or [])
        self.put_error = put_error
        self.get_calls = []
        self.put_calls = []
        self.scan_calls = []

    def get_item(self, **kwargs):
        self.get_calls.append(kwargs)
        if not self.get_results:
            return {}
        return self.get_results.pop(0)

    def put_item(self, **kwargs):
        self.put_calls.append(kwargs)
        if self.put_error is not None:
            raise self.put_error
        return {}

    def scan(self, **kwargs):
        self.scan_calls.append(kwargs)
        if not self.scan_results:
            return {"Items": []}
        return self.scan_results.pop(0)


def _store_with_table(table: _FakeTable) -> DynamoUserStore:
    store = DynamoUserStore.__new__(DynamoUserStore)
    store._table = table
    return store


def _user(user_id="u1", version=0):
    now = datetime.now(timezone.utc)
    return UserRecord(
        user_id=user_id,
        billing=BillingRecord(status=BillingStatus.ACTIVE, provider_customer_id="cus_1"),
        version=version,
        created_at=now,
        updated_at=now,
    )


def _item(user_id="u1", version=3):
    return {
        "user_id": user_id,
        "billing": {"status": "active", "plan": "pro", "provider_customer_id": "cus_1"},
        "payment_status": "paid",
        "version": Decimal(version),
        "created_at": "2024-05-01T10:00:00+00:00",
        "updated_at": "2024-05-01T10:00:00+00:00",
    }


def test_get_user_uses_consistent_read_and_parses_numbers():
    table = _FakeTable(get_results=[{"Item": _item(version=3)}])
    store = _store_with_table(table)

    user = store.get_user("u1")

    assert table.get_calls == [{"Key": {"user_id": "u1"}, "ConsistentRead": True}]
    assert user.version == 3
    assert user.billing.status == BillingStatus.ACTIVE


def test_get_missing_user_returns_none():
    assert _store_with_table(_FakeTable()).get_user("ghost") is None


def test_update_is_conditional_on_expected_version():
    table = _FakeTable()
    store = _store_with_table(table)

    store.update_user(_user(version=4), expected_version=3)

    call = table.put_calls[0]
    assert call["ConditionExpression"] == "attribute_exists(user_id) AND version = :expected"
    assert call["ExpressionAttributeValues"] == {":expected": 3}
    assert call["Item"]["version"] == 4
    assert call["Item"]["billing"]["status"] == "active"


def test_update_of_unversioned_document_accepts_missing_version():
    table = _FakeTable()
    store = _store_with_table(table)

    store.update_user(_user(version=1), expected_version=0)

    assert "attribute_not_exists(version)" in table.put_calls[0]["ConditionExpression"]


def test_conditional_failure_is_a_version_conflict():
    store = _store_with_table(_FakeTable(put_error=_client_error("ConditionalCheckFailedException")))

    with pytest.raises(VersionConflictError):
        store.update_user(_user(version=2), expected_version=1)


def test_other_client_errors_are_persistence_errors():
    store = _store_with_table(_FakeTable(put_error=_client_error("ProvisionedThroughputExceededException")))

    with pytest.raises(PersistenceError):
        store.update_user(_user(version=2), expected_version=1)


def test_create_refuses_to_overwrite():
    table = _FakeTable(put_error=_client_error("ConditionalCheckFailedException"))
    store = _store_with_table(table)

    with pytest.raises(VersionConflictError):
        store.create_user(_user())
    assert table.put_calls[0]["ConditionExpression"] == "attribute_not_exists(user_id)"


def test_customer_lookup_follows_scan_pages():
    table = _FakeTable(
        scan_results=[
            {"Items": [], "LastEvaluatedKey": {"user_id": "u0"}},
            {"Items": [_item("u7")]},
        ]
    )
    store = _store_with_table(table)

    user = store.find_user_by_provider_customer_id("cus_1")

    assert user.user_id == "u7"
    assert len(table.scan_calls) == 2
    assert table.scan_calls[1]["ExclusiveStartKey"] == {"user_id": "u0"}


def test_in_memory_store_rejects_stale_versions_and_notifies_listeners():
    store = InMemoryUserStore()
    seen = []
    store.add_listener(lambda user: seen.append(user.version))
    store.create_user(_user(version=0))

    store.update_user(_user(version=1), expected_version=0)
    with pytest.raises(VersionConflictError):
        store.update_user(_user(version=1), expected_version=0)

    assert seen == [0, 1]
    assert store.get_user("u1").version == 1


def test_in_memory_create_refuses_to_overwrite_billing():
    store = InMemoryUserStore()
    store.create_user(_user(version=0))
    cancelled = _user(version=1).model_copy(update={"billing": BillingRecord(status=BillingStatus.CANCELLED)})
    store.update_user(cancelled, expected_version=0)

    with pytest.raises(VersionConflictError):
        store.create_user(_user().model_copy(update={"billing": None}))

    stored = store.get_user("u1")
    assert stored.version == 1
    assert stored.billing.status == BillingStatus.CANCELLED


def test_in_memory_store_returns_copies():
    store = InMemoryUserStore()
    store.create_user(_user())

    fetched = store.get_user("u1")
    fetched.billing.status = BillingStatus.CANCELLED

    assert store.get_user("u1").billing.status == BillingStatus.ACTIVE


def test_in_memory_customer_lookup_checks_both_copies():
    store = InMemoryUserStore()
    store.create_user(_user())

    assert store.find_user_by_provider_customer_id("cus_1").user_id == "u1"
    assert store.find_user_by_provider_customer_id("cus_other") is None


def test_store_selection_falls_back_to_memory(monkeypatch):
    monkeypatch.delenv("USE_IN_MEMORY_USER_STORE", raising=False)
    monkeypatch.delenv("USERS_TABLE", raising=False)
    assert get_user_store() is get_in_memory_user_store()

    monkeypatch.setenv("USE_IN_MEMORY_USER_STORE", "true")
    monkeypatch.setenv("USERS_TABLE", "users")
    assert get_user_store() is get_in_memory_user_store()
