import hmac
import json
import logging
import os
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status as http_status
from pydantic import ValidationError

from opsboard.access import current_access_decision
from opsboard.audit_store import get_billing_audit_store
from opsboard.auth import get_bearer_token
from opsboard.billing_service import (
    BillingUpdater,
    UserNotFoundError,
    get_billing_updater,
    paid_checkout_updates,
    plan_from_metadata,
)
from opsboard.payments import (
    MissingSecretError,
    MissingSignatureError,
    PaymentProviderError,
    SignatureMismatchError,
    get_payments_client,
    object_id,
    session_metadata_user_id,
    session_verification,
    verify_event,
    webhook_secret,
    webhook_tolerance_seconds,
)
from opsboard.schemas import (
    AccessDecision,
    BillingSnapshot,
    BillingUpdateResponse,
    BillingUpdateResult,
    InternalBillingUpdateRequest,
    ManualReconcileRequest,
    SessionVerification,
    StripeWebhookResponse,
)
from opsboard.user_store import PersistenceError, get_user_store
from opsboard.webhook_dispatcher import dispatch_event

logger = logging.getLogger("opsboard.billing.api")

router = APIRouter(tags=["billing"])


def _json_log(fields):
    return json.dumps(fields, separators=(",", ":"), default=str)


def _optional_text(value):
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _request_id(request: Request):
    request_id = getattr(getattr(request, "state", object()), "request_id", None)
    if request_id:
        return str(request_id)
    return request.headers.get("x-correlation-id") or request.headers.get("x-request-id")


def _require_internal_api_secret() -> str:
    secret = _optional_text(os.environ.get("INTERNAL_API_SECRET"))
    if not secret:
        raise HTTPException(
            status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Internal billing API is not configured",
        )
    return secret


def _authorize_internal_request(request: Request):
    expected = _require_internal_api_secret()
    provided = get_bearer_token(request) or ""
    if not provided or not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=http_status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def _apply_update(updater: BillingUpdater, user_id: str, updates: dict, source: str, request: Request) -> BillingUpdateResult:
    try:
        return updater.update_billing(user_id, updates, source=source, request_id=_request_id(request))
    except ValueError as exc:
        raise HTTPException(status_code=http_status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except UserNotFoundError as exc:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail="User document not found") from exc
    except PersistenceError as exc:
        logger.error(_json_log({"event": "billing.update.persistence_error", "user_id": user_id, "error": str(exc)}))
        raise HTTPException(
            status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to update user billing",
        ) from exc


def _update_response(result: BillingUpdateResult) -> BillingUpdateResponse:
    return BillingUpdateResponse(
        success=True,
        billing_status=result.status.value if result.status else None,
        payment_status=result.payment_status.value if result.payment_status else None,
        confirmed=result.confirmed,
    )


@router.post("/webhooks/stripe", response_model=StripeWebhookResponse)
async def stripe_webhook(
    request: Request,
    updater: BillingUpdater = Depends(get_billing_updater),
    payments_client=Depends(get_payments_client),
    user_store=Depends(get_user_store),
    audit_store=Depends(get_billing_audit_store),
):
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    try:
        event = verify_event(
            raw_body=payload,
            signature_header=signature,
            shared_secret=webhook_secret(),
            tolerance=webhook_tolerance_seconds(),
        )
    except MissingSecretError as exc:
        logger.error(_json_log({"event": "billing.webhook.misconfigured", "error": str(exc)}))
        raise HTTPException(
            status_code=http_status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret not configured",
        ) from exc
    except (MissingSignatureError, SignatureMismatchError) as exc:
        logger.warning(
            _json_log(
                {
                    "event": "billing.webhook.rejected",
                    "reason": type(exc).__name__,
                    "has_signature": bool(signature),
                    "body_length": len(payload),
                }
            )
        )
        raise HTTPException(status_code=http_status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    outcome = dispatch_event(
        event,
        updater=updater,
        payments_client=payments_client,
        user_store=user_store,
        audit_store=audit_store,
        request_id=_request_id(request),
    )
    logger.info(
        _json_log(
            {
                "event": "billing.webhook.handled",
                "event_id": event.event_id,
                "event_type": event.type,
                "action": outcome.action,
                "user_id": outcome.user_id,
                "reason": outcome.reason,
            }
        )
    )
    return StripeWebhookResponse(
        received=True,
        event_type=event.type,
        action=outcome.action,
        user_id=outcome.user_id,
    )


@router.get("/billing/verify-session", response_model=SessionVerification)
async def verify_checkout_session(
    session_id: Optional[str] = Query(default=None),
    payments_client=Depends(get_payments_client),
):
    session_id = _optional_text(session_id)
    if not session_id:
        raise HTTPException(status_code=http_status.HTTP_400_BAD_REQUEST, detail="Session ID is required")
    try:
        session = payments_client.retrieve_checkout_session(session_id)
    except PaymentProviderError as exc:
        raise HTTPException(status_code=http_status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return session_verification(session)


@router.post("/billing/update-after-payment", response_model=BillingUpdateResponse)
async def update_billing_after_payment(
    payload: ManualReconcileRequest,
    request: Request,
    updater: BillingUpdater = Depends(get_billing_updater),
    payments_client=Depends(get_payments_client),
):
    session_id = _optional_text(payload.session_id)
    user_id = _optional_text(payload.user_id)
    if not session_id or not user_id:
        raise HTTPException(
            status_code=http_status.HTTP_400_BAD_REQUEST,
            detail="Session ID and User ID are required",
        )

    try:
        session = payments_client.retrieve_checkout_session(session_id)
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=http_status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to verify payment session: {exc}",
        ) from exc

    verification = session_verification(session)
    if not verification.paid:
        raise HTTPException(
            status_code=http_status.HTTP_400_BAD_REQUEST,
            detail=f"Payment not completed: {verification.status}",
        )

    metadata = session.get("metadata") or {}
    session_user_id = session_metadata_user_id(metadata)
    if session_user_id and session_user_id != user_id:
        logger.warning(
            _json_log(
                {
                    "event": "billing.reconcile.user_mismatch",
                    "session_id": session_id,
                    "user_id": user_id,
                    "session_user_id": session_user_id,
                }
            )
        )
        raise HTTPException(status_code=http_status.HTTP_403_FORBIDDEN, detail="User ID mismatch")

    customer_id = verification.customer
    if not customer_id:
        logger.warning(_json_log({"event": "billing.reconcile.no_customer", "session_id": session_id}))

    updates = paid_checkout_updates(
        plan=plan_from_metadata(metadata),
        session_id=object_id(session.get("id")) or session_id,
        customer_id=customer_id,
    )
    result = _apply_update(updater, user_id, updates, source="manual-reconcile", request=request)
    return _update_response(result)


@router.post("/internal/billing/update", response_model=BillingUpdateResponse)
async def internal_update_billing(
    request: Request,
    updater: BillingUpdater = Depends(get_billing_updater),
):
    _authorize_internal_request(request)
    raw_payload = await request.body()
    try:
        payload = InternalBillingUpdateRequest.model_validate_json(raw_payload or b"{}")
    except ValidationError as exc:
        raise HTTPException(
            status_code=http_status.HTTP_400_BAD_REQUEST,
            detail=exc.errors(include_url=False, include_context=False, include_input=False),
        ) from exc

    user_id = _optional_text(payload.user_id)
    if not user_id or not payload.updates:
        raise HTTPException(
            status_code=http_status.HTTP_400_BAD_REQUEST,
            detail="userId and updates are required",
        )
    result = _apply_update(updater, user_id, payload.updates, source="internal-api", request=request)
    return _update_response(result)


@router.get("/internal/billing/users/{user_id}", response_model=BillingSnapshot)
async def get_user_billing_snapshot(
    user_id: str,
    request: Request,
    user_store=Depends(get_user_store),
):
    _authorize_internal_request(request)
    try:
        record = user_store.get_user(user_id)
    except PersistenceError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if record is None:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail="User document not found")
    return BillingSnapshot.model_validate(record.model_dump())


@router.get("/billing/access", response_model=AccessDecision)
async def get_billing_access(decision: AccessDecision = Depends(current_access_decision)):
    return decision
