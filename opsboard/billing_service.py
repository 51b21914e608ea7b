"""Billing Updater: the single read-merge-write path for a user's billing fields.

Every writer (provider webhook, manual reconciliation after checkout, internal
callers) funnels through :class:`BillingUpdater`. Partial updates are merged
into the stored ``billing`` sub-record and mirrored onto the legacy root-level
fields so both copies agree after every successful write.
"""

import json
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

from fastapi import Depends

from opsboard.audit_store import BillingAuditStore, get_billing_audit_store, record_event
from opsboard.schemas import (
    BillingPlan,
    BillingRecord,
    BillingStatus,
    BillingUpdateResult,
    PaymentStatus,
    UserRecord,
)
from opsboard.user_store import PersistenceError, UserStore, VersionConflictError, get_user_store

logger = logging.getLogger("opsboard.billing")

DEFAULT_MAX_WRITE_ATTEMPTS = 5

BILLING_FIELDS = {
    "billing.status": ("billing", "status"),
    "billing.plan": ("billing", "plan"),
    "billing.paymentDate": ("billing", "payment_date"),
    "billing.providerCustomerId": ("billing", "provider_customer_id"),
    "billing.providerSessionId": ("billing", "provider_session_id"),
    "paymentStatus": ("root", "payment_status"),
    "subscriptionTier": ("root", "subscription_tier"),
    "paymentDate": ("root", "payment_date"),
    "providerCustomerId": ("root", "provider_customer_id"),
}

STATUS_TO_PAYMENT_STATUS = {
    BillingStatus.ACTIVE: PaymentStatus.PAID,
    BillingStatus.FAILED: PaymentStatus.FAILED,
    BillingStatus.CANCELLED: PaymentStatus.CANCELLED,
    BillingStatus.INACTIVE: PaymentStatus.PENDING,
}
PAYMENT_STATUS_TO_STATUS = {value: key for key, value in STATUS_TO_PAYMENT_STATUS.items()}

# Sub-record field -> legacy root field.
_MIRRORED_FIELDS = {
    "status": "payment_status",
    "plan": "subscription_tier",
    "payment_date": "payment_date",
    "provider_customer_id": "provider_customer_id",
}

INTENDED_TRANSITIONS = {
    (BillingStatus.INACTIVE, BillingStatus.ACTIVE),
    (BillingStatus.ACTIVE, BillingStatus.CANCELLED),
    (BillingStatus.ACTIVE, BillingStatus.FAILED),
    (BillingStatus.INACTIVE, BillingStatus.FAILED),
    (BillingStatus.FAILED, BillingStatus.ACTIVE),
    (BillingStatus.CANCELLED, BillingStatus.ACTIVE),
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _json_log(fields):
    return json.dumps(fields, separators=(",", ":"), default=str)


class UserNotFoundError(Exception):
    """The target user document does not exist. Terminal; do not retry."""


class ReadAfterWriteError(Exception):
    """The confirming re-read failed or disagreed with what was written."""


def _parse_timestamp(value: Any, now: datetime) -> Optional[datetime]:
    if value is None or value is False:
        return None
    if value is True:
        return now
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"Unsupported payment date value: {value!r}")


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _coerce_field(field: str, value: Any, now: datetime) -> Any:
    if field == "status":
        return BillingStatus(value)
    if field == "payment_status":
        return PaymentStatus(value)
    if field in ("plan", "subscription_tier"):
        return BillingPlan(value) if value is not None else None
    if field == "payment_date":
        return _parse_timestamp(value, now)
    return _optional_text(value)


def normalize_billing_updates(
    partial_fields: Mapping[str, Any],
    now: Optional[datetime] = None,
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Split wire-level partial fields into (billing sub-record, root) updates.

    Raises ``ValueError`` for unknown keys or values outside the enums.
    Sub-record values are mirrored onto the root and root-only values back onto
    the sub-record; when both are given and disagree the sub-record wins.
    """
    if not partial_fields:
        raise ValueError("At least one billing field is required")
    unknown = sorted(key for key in partial_fields if key not in BILLING_FIELDS)
    if unknown:
        raise ValueError("Unsupported billing fields: " + ", ".join(unknown))

    timestamp = now or utc_now()
    billing_updates: Dict[str, Any] = {}
    root_updates: Dict[str, Any] = {}
    for key, value in partial_fields.items():
        target, field = BILLING_FIELDS[key]
        coerced = _coerce_field(field, value, timestamp)
        if target == "billing":
            billing_updates[field] = coerced
        else:
            root_updates[field] = coerced

    for billing_field, root_field in _MIRRORED_FIELDS.items():
        if billing_field in billing_updates:
            mirrored = billing_updates[billing_field]
            if billing_field == "status":
                mirrored = STATUS_TO_PAYMENT_STATUS[mirrored]
            if root_field in root_updates and root_updates[root_field] != mirrored:
                logger.warning(
                    _json_log(
                        {
                            "event": "billing.mirror.conflict",
                            "field": root_field,
                            "requested": root_updates[root_field],
                            "mirrored": mirrored,
                        }
                    )
                )
            root_updates[root_field] = mirrored
        elif root_field in root_updates:
            value = root_updates[root_field]
            if root_field == "payment_status":
                value = PAYMENT_STATUS_TO_STATUS[value]
            billing_updates[billing_field] = value

    return billing_updates, root_updates


def next_updated_at(previous: Optional[datetime]) -> datetime:
    now = utc_now()
    if previous is not None:
        if previous.tzinfo is None:
            previous = previous.replace(tzinfo=timezone.utc)
        if now <= previous:
            now = previous + timedelta(microseconds=1)
    return now


def _legacy_billing(current: UserRecord) -> Dict[str, Any]:
    """Starting sub-record for documents written before ``billing`` existed."""
    seeded: Dict[str, Any] = {}
    if current.payment_status is not None:
        seeded["status"] = PAYMENT_STATUS_TO_STATUS[current.payment_status]
    for billing_field, root_field in _MIRRORED_FIELDS.items():
        if billing_field != "status" and getattr(current, root_field) is not None:
            seeded[billing_field] = getattr(current, root_field)
    return seeded


def _root_mirror(billing: BillingRecord, billing_updates: Dict[str, Any]) -> Dict[str, Any]:
    # Unset sub-record values only clear the root copy when this write cleared them.
    mirrored = {
        root_field: getattr(billing, billing_field)
        for billing_field, root_field in _MIRRORED_FIELDS.items()
        if getattr(billing, billing_field) is not None or billing_field in billing_updates
    }
    mirrored["payment_status"] = STATUS_TO_PAYMENT_STATUS[billing.status]
    return mirrored


def merge_billing(
    current: UserRecord,
    billing_updates: Dict[str, Any],
    root_updates: Dict[str, Any],
) -> UserRecord:
    existing_billing = current.billing.model_dump() if current.billing else _legacy_billing(current)
    merged_billing = BillingRecord.model_validate({**existing_billing, **billing_updates})
    return current.model_copy(
        update={
            **root_updates,
            **_root_mirror(merged_billing, billing_updates),
            "billing": merged_billing,
            "version": current.version + 1,
            "updated_at": next_updated_at(current.updated_at),
        }
    )


def _billing_status(user: Optional[UserRecord]) -> Optional[BillingStatus]:
    if user is None or user.billing is None:
        return None
    return user.billing.status


class BillingUpdater:
    def __init__(
        self,
        user_store: UserStore,
        audit_store: Optional[BillingAuditStore] = None,
        max_write_attempts: int = DEFAULT_MAX_WRITE_ATTEMPTS,
    ):
        self._user_store = user_store
        self._audit_store = audit_store
        self._max_write_attempts = max(1, max_write_attempts)

    def _read(self, user_id: str) -> Optional[UserRecord]:
        try:
            return self._user_store.get_user(user_id)
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(f"Failed to read user {user_id}: {exc}") from exc

    def _write(self, user_id: str, billing_updates, root_updates) -> Tuple[UserRecord, Optional[BillingStatus]]:
        for attempt in range(1, self._max_write_attempts + 1):
            current = self._read(user_id)
            if current is None:
                raise UserNotFoundError(f"User {user_id} not found")

            merged = merge_billing(current, billing_updates, root_updates)
            try:
                written = self._user_store.update_user(merged, expected_version=current.version)
            except VersionConflictError:
                logger.info(
                    _json_log(
                        {
                            "event": "billing.write.conflict",
                            "user_id": user_id,
                            "attempt": attempt,
                            "expected_version": current.version,
                        }
                    )
                )
                continue
            except PersistenceError:
                raise
            except Exception as exc:
                raise PersistenceError(f"Failed to update user {user_id}: {exc}") from exc
            return written, _billing_status(current)

        raise PersistenceError(
            f"Gave up updating user {user_id} after {self._max_write_attempts} conflicting writes"
        )

    def _confirm(self, written: UserRecord) -> UserRecord:
        try:
            stored = self._user_store.get_user(written.user_id)
        except Exception as exc:
            raise ReadAfterWriteError(f"Re-read of user {written.user_id} failed: {exc}") from exc
        if stored is None:
            raise ReadAfterWriteError(f"User {written.user_id} missing after update")
        # A newer concurrent write is fine; only an older document is a disagreement.
        if stored.version < written.version:
            raise ReadAfterWriteError(
                f"User {written.user_id} re-read at version {stored.version}, wrote {written.version}"
            )
        return stored

    def update_billing(
        self,
        user_id: str,
        partial_fields: Mapping[str, Any],
        source: str = "internal",
        request_id: Optional[str] = None,
    ) -> BillingUpdateResult:
        user_id = (user_id or "").strip()
        if not user_id:
            raise ValueError("user_id is required")
        billing_updates, root_updates = normalize_billing_updates(partial_fields)

        written, prior_status = self._write(user_id, billing_updates, root_updates)
        new_status = _billing_status(written)
        if prior_status is not None and new_status is not None and prior_status != new_status:
            if (prior_status, new_status) not in INTENDED_TRANSITIONS:
                logger.warning(
                    _json_log(
                        {
                            "event": "billing.transition.unexpected",
                            "user_id": user_id,
                            "from": prior_status,
                            "to": new_status,
                            "source": source,
                        }
                    )
                )

        confirmed = True
        observed = written
        try:
            observed = self._confirm(written)
        except ReadAfterWriteError as exc:
            confirmed = False
            logger.warning(
                _json_log({"event": "billing.read_after_write.failed", "user_id": user_id, "error": str(exc)})
            )

        logger.info(
            _json_log(
                {
                    "event": "billing.updated",
                    "user_id": user_id,
                    "source": source,
                    "prior_status": prior_status,
                    "status": _billing_status(observed),
                    "payment_status": observed.payment_status,
                    "plan": observed.billing.plan if observed.billing else None,
                    "version": observed.version,
                    "confirmed": confirmed,
                }
            )
        )
        record_event(
            self._audit_store,
            user_id=user_id,
            action="billing.updated",
            source=source,
            request_id=request_id,
            details={
                "fields": sorted(partial_fields.keys()),
                "prior_status": prior_status.value if prior_status else None,
                "status": new_status.value if new_status else None,
                "version": written.version,
                "confirmed": confirmed,
            },
        )
        return BillingUpdateResult(
            user_id=user_id,
            status=_billing_status(observed),
            prior_status=prior_status,
            payment_status=observed.payment_status,
            confirmed=confirmed,
            updated_at=observed.updated_at,
        )


def _max_write_attempts() -> int:
    return max(1, _as_int(os.environ.get("BILLING_WRITE_MAX_ATTEMPTS"), DEFAULT_MAX_WRITE_ATTEMPTS))


def get_billing_updater(
    user_store: UserStore = Depends(get_user_store),
    audit_store: BillingAuditStore = Depends(get_billing_audit_store),
) -> BillingUpdater:
    return BillingUpdater(
        user_store=user_store,
        audit_store=audit_store,
        max_write_attempts=_max_write_attempts(),
    )


def plan_from_metadata(metadata: Optional[Mapping[str, Any]], fallback: Optional[str] = None) -> str:
    """Plan named in provider metadata, falling back to the baseline plan."""
    raw = str((metadata or {}).get("plan") or "").strip().lower()
    if raw in {plan.value for plan in BillingPlan}:
        return raw
    if raw:
        logger.warning(_json_log({"event": "billing.unknown_plan", "plan": raw}))
    return fallback or BillingPlan.BASIC.value


def paid_checkout_updates(
    plan: Optional[str],
    session_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    paid_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Partial fields for a confirmed payment, shared by webhook and manual reconciliation."""
    timestamp = paid_at or utc_now()
    updates: Dict[str, Any] = {
        "billing.status": BillingStatus.ACTIVE.value,
        "billing.plan": plan or BillingPlan.BASIC.value,
        "billing.paymentDate": timestamp.isoformat(),
        "paymentStatus": PaymentStatus.PAID.value,
        "subscriptionTier": plan or BillingPlan.BASIC.value,
        "paymentDate": timestamp.isoformat(),
    }
    if session_id:
        updates["billing.providerSessionId"] = session_id
    if customer_id:
        updates["billing.providerCustomerId"] = customer_id
        updates["providerCustomerId"] = customer_id
    return updates
