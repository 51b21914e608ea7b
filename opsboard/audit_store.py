import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import boto3
from boto3.dynamodb.conditions import Key

from opsboard.schemas import BillingAuditRecord

logger = logging.getLogger("opsboard.audit_store")

UNATTRIBUTED_USER_ID = "unattributed"


def _as_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class BillingAuditStore(ABC):
    @abstractmethod
    def put_event(self, event: BillingAuditRecord) -> BillingAuditRecord:
        raise NotImplementedError

    @abstractmethod
    def list_events(self, user_id: str, limit: int = 100) -> List[BillingAuditRecord]:
        raise NotImplementedError


class InMemoryBillingAuditStore(BillingAuditStore):
    def __init__(self):
        self.items: Dict[Tuple[str, str], BillingAuditRecord] = {}

    def put_event(self, event: BillingAuditRecord) -> BillingAuditRecord:
        self.items[(event.user_id, event.event_id)] = event
        return event

    def list_events(self, user_id: str, limit: int = 100) -> List[BillingAuditRecord]:
        events = [event for (item_user_id, _), event in self.items.items() if item_user_id == user_id]
        events.sort(key=lambda item: item.event_id, reverse=True)
        return events[: max(limit, 0)]


class DynamoBillingAuditStore(BillingAuditStore):
    def __init__(self, table_name: str):
        self._table = boto3.resource("dynamodb").Table(table_name)

    def put_event(self, event: BillingAuditRecord) -> BillingAuditRecord:
        self._table.put_item(Item=event.model_dump(mode="json"))
        return event

    def list_events(self, user_id: str, limit: int = 100) -> List[BillingAuditRecord]:
        safe_limit = max(min(limit, 500), 1)
        response = self._table.query(
            KeyConditionExpression=Key("user_id").eq(user_id),
            ScanIndexForward=False,
            Limit=safe_limit,
        )
        return [BillingAuditRecord.model_validate(item) for item in response.get("Items", [])]


_IN_MEMORY_BILLING_AUDIT_STORE = InMemoryBillingAuditStore()


def get_billing_audit_store() -> BillingAuditStore:
    force_memory = _as_bool(os.environ.get("USE_IN_MEMORY_BILLING_AUDIT_STORE"), default=False)
    if force_memory:
        return _IN_MEMORY_BILLING_AUDIT_STORE

    table_name = (os.environ.get("BILLING_AUDIT_TABLE") or "").strip()
    if not table_name:
        return _IN_MEMORY_BILLING_AUDIT_STORE

    try:
        return DynamoBillingAuditStore(table_name=table_name)
    except Exception:
        logger.exception("Falling back to in-memory audit store; DynamoDB table %s unavailable", table_name)
        return _IN_MEMORY_BILLING_AUDIT_STORE


def reset_in_memory_billing_audit_store():
    _IN_MEMORY_BILLING_AUDIT_STORE.items.clear()


def new_event_id(now: Optional[datetime] = None) -> str:
    event_time = now or datetime.now(timezone.utc)
    millis = int(event_time.timestamp() * 1000)
    # Epoch millis prefix keeps the sort key in creation order.
    return f"{millis:013d}#{os.urandom(8).hex()}"


def record_event(
    audit_store: Optional[BillingAuditStore],
    *,
    user_id: Optional[str],
    action: str,
    source: str,
    details: dict,
    request_id: Optional[str] = None,
) -> Optional[BillingAuditRecord]:
    """Append an audit event; audit failures are logged and never break the billing path."""
    if audit_store is None:
        return None
    now = datetime.now(timezone.utc)
    event = BillingAuditRecord(
        user_id=user_id or UNATTRIBUTED_USER_ID,
        event_id=new_event_id(now),
        action=action,
        source=source,
        request_id=request_id,
        details=details,
        created_at=now,
    )
    try:
        return audit_store.put_event(event)
    except Exception:
        logger.exception("Failed to record billing audit event %s", action)
        return None
