import json
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status as http_status

from opsboard.access import require_active_billing
from opsboard.auth import get_current_user
from opsboard.billing_service import next_updated_at
from opsboard.payments import PaymentProviderError, get_payments_client, object_id
from opsboard.schemas import BillingRecord, BillingStatus, PaymentStatus, UserRecord
from opsboard.user_store import PersistenceError, VersionConflictError, get_user_store

logger = logging.getLogger("opsboard.identity")

router = APIRouter(tags=["identity"])

_MAX_SYNC_ATTEMPTS = 3


def _json_log(fields):
    return json.dumps(fields, separators=(",", ":"), default=str)


def _display_name(user) -> str:
    return user.get("name") or user.get("username") or user.get("email") or user["sub"]


def _create_customer_id(user, payments_client):
    try:
        customer = payments_client.create_customer(
            user_id=user["sub"],
            email=user.get("email"),
            name=_display_name(user),
        )
    except PaymentProviderError as exc:
        # Left unset; the first checkout attaches the customer instead.
        logger.warning(_json_log({"event": "identity.customer.create_failed", "user_id": user["sub"], "error": str(exc)}))
        return None
    return object_id(customer.get("id"))


def _new_user(user, customer_id) -> UserRecord:
    now = datetime.now(timezone.utc)
    return UserRecord(
        user_id=user["sub"],
        email=user.get("email"),
        name=_display_name(user),
        roles=user.get("groups", []),
        is_team_member=bool(user.get("owner_id")),
        owner_id=user.get("owner_id"),
        billing=BillingRecord(status=BillingStatus.INACTIVE, provider_customer_id=customer_id),
        payment_status=PaymentStatus.PENDING,
        provider_customer_id=customer_id,
        created_at=now,
        updated_at=now,
    )


def _refreshed_user(existing: UserRecord, user) -> UserRecord:
    return existing.model_copy(
        update={
            "email": user.get("email") or existing.email,
            "name": user.get("name") or existing.name,
            "roles": user.get("groups", []),
            "is_team_member": existing.is_team_member or bool(user.get("owner_id")),
            "owner_id": user.get("owner_id") or existing.owner_id,
            "version": existing.version + 1,
            "updated_at": next_updated_at(existing.updated_at),
        }
    )


def _sync_user(user, store, payments_client) -> UserRecord:
    customer_id = None
    customer_requested = False
    for _ in range(_MAX_SYNC_ATTEMPTS):
        existing = store.get_user(user["sub"])
        try:
            if existing is None:
                # At most one provider customer per sync, however many creates race.
                if not customer_requested:
                    customer_id = _create_customer_id(user, payments_client)
                    customer_requested = True
                created = store.create_user(_new_user(user, customer_id))
                logger.info(_json_log({"event": "identity.user.created", "user_id": created.user_id}))
                return created
            if customer_id and customer_id != existing.provider_customer_id:
                logger.warning(
                    _json_log({"event": "identity.customer.unused", "user_id": user["sub"], "customer_id": customer_id})
                )
                customer_id = None
            # Billing fields are owned by the billing updater and are carried over untouched.
            return store.update_user(_refreshed_user(existing, user), expected_version=existing.version)
        except VersionConflictError:
            continue
    raise PersistenceError(f"Gave up syncing user {user['sub']} after {_MAX_SYNC_ATTEMPTS} conflicting writes")


def _sync_or_503(user, store, payments_client) -> UserRecord:
    try:
        return _sync_user(user, store, payments_client)
    except PersistenceError as exc:
        logger.error(_json_log({"event": "identity.sync.failed", "user_id": user["sub"], "error": str(exc)}))
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail="Failed to sync user") from exc


@router.get("/users/me", response_model=UserRecord)
async def get_current_user_record(
    user=Depends(get_current_user),
    store=Depends(get_user_store),
    payments_client=Depends(get_payments_client),
):
    return _sync_or_503(user, store, payments_client)


@router.post("/users/me/sync", response_model=UserRecord)
async def sync_current_user_record(
    user=Depends(get_current_user),
    store=Depends(get_user_store),
    payments_client=Depends(get_payments_client),
):
    return _sync_or_503(user, store, payments_client)


@router.get("/dashboard", response_model=UserRecord)
async def get_dashboard(
    user=Depends(require_active_billing),
    store=Depends(get_user_store),
):
    record = store.get_user(user["sub"])
    if record is None:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail="User document not found")
    return record
