import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from opsboard.audit_store import BillingAuditStore, record_event
from opsboard.billing_service import BillingUpdater, paid_checkout_updates, plan_from_metadata
from opsboard.payments import (
    EventKind,
    PaymentProviderError,
    PaymentsClient,
    VerifiedEvent,
    object_id,
    session_lookup_limit,
    session_metadata_user_id,
)
from opsboard.schemas import BillingStatus, PaymentStatus
from opsboard.user_store import UserStore

logger = logging.getLogger("opsboard.webhooks")

ACTION_UPDATED = "updated"
ACTION_SKIPPED = "skipped"
ACTION_IGNORED = "ignored"
ACTION_FAILED = "failed"

WEBHOOK_SOURCE = "stripe-webhook"


def _json_log(fields):
    return json.dumps(fields, separators=(",", ":"), default=str)


@dataclass
class DispatchOutcome:
    event_type: str
    kind: EventKind
    action: str
    user_id: Optional[str] = None
    reason: Optional[str] = None


class _Dispatcher:
    def __init__(
        self,
        event: VerifiedEvent,
        updater: BillingUpdater,
        payments_client: PaymentsClient,
        user_store: Optional[UserStore],
        audit_store: Optional[BillingAuditStore],
        request_id: Optional[str],
    ):
        self.event = event
        self.updater = updater
        self.payments_client = payments_client
        self.user_store = user_store
        self.audit_store = audit_store
        self.request_id = request_id

    def outcome(self, action: str, user_id: Optional[str] = None, reason: Optional[str] = None) -> DispatchOutcome:
        return DispatchOutcome(
            event_type=self.event.type,
            kind=self.event.kind,
            action=action,
            user_id=user_id,
            reason=reason,
        )

    def skip(self, reason: str, user_id: Optional[str] = None, **details) -> DispatchOutcome:
        logger.warning(
            _json_log(
                {
                    "event": "billing.webhook.skipped",
                    "event_id": self.event.event_id,
                    "event_type": self.event.type,
                    "user_id": user_id,
                    "reason": reason,
                    **details,
                }
            )
        )
        if user_id is None:
            # Kept for manual reconciliation rather than guessed at.
            record_event(
                self.audit_store,
                user_id=None,
                action="billing.webhook.unattributed",
                source=WEBHOOK_SOURCE,
                request_id=self.request_id,
                details={
                    "event_id": self.event.event_id,
                    "event_type": self.event.type,
                    "reason": reason,
                    **details,
                },
            )
        return self.outcome(ACTION_SKIPPED, user_id=user_id, reason=reason)

    def apply(self, user_id: str, updates: Dict[str, Any]) -> DispatchOutcome:
        try:
            result = self.updater.update_billing(
                user_id,
                updates,
                source=WEBHOOK_SOURCE,
                request_id=self.request_id,
            )
        except Exception as exc:
            # Acknowledged anyway; the client-side reconciliation is the self-healing path.
            logger.error(
                _json_log(
                    {
                        "event": "billing.webhook.update_failed",
                        "event_id": self.event.event_id,
                        "event_type": self.event.type,
                        "user_id": user_id,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    }
                )
            )
            return self.outcome(ACTION_FAILED, user_id=user_id, reason=type(exc).__name__)
        return self.outcome(ACTION_UPDATED, user_id=result.user_id)

    def checkout_completed(self) -> DispatchOutcome:
        session = self.event.data_object
        metadata = session.get("metadata") or {}
        user_id = session_metadata_user_id(metadata)
        if not user_id:
            return self.skip("missing_user_id", session_id=session.get("id"))

        payment_status = session.get("payment_status")
        if payment_status != "paid":
            return self.skip("not_paid", user_id=user_id, payment_status=payment_status)

        updates = paid_checkout_updates(
            plan=plan_from_metadata(metadata),
            session_id=object_id(session.get("id")),
            customer_id=object_id(session.get("customer")),
        )
        return self.apply(user_id, updates)

    def _user_for_customer(self, customer_id: Optional[str]) -> Optional[str]:
        if not customer_id or self.user_store is None:
            return None
        try:
            user = self.user_store.find_user_by_provider_customer_id(customer_id)
        except Exception:
            logger.exception("Customer lookup failed for %s", customer_id)
            return None
        return user.user_id if user else None

    def _session_for_payment(self, payment_intent_id: str) -> Optional[Dict[str, Any]]:
        try:
            sessions = self.payments_client.list_recent_checkout_sessions(limit=session_lookup_limit())
        except PaymentProviderError as exc:
            logger.warning(
                _json_log({"event": "billing.webhook.session_scan_failed", "error": str(exc)})
            )
            return None
        for session in sessions:
            if object_id(session.get("payment_intent")) == payment_intent_id:
                return session
        return None

    def _attribute_payment(self, obj: Dict[str, Any]) -> Tuple[Optional[str], str]:
        metadata = obj.get("metadata") or {}
        user_id = session_metadata_user_id(metadata)
        plan = plan_from_metadata(metadata)
        if user_id:
            return user_id, plan

        user_id = self._user_for_customer(object_id(obj.get("customer")))
        if user_id:
            return user_id, plan

        # Charges point at their payment intent; checkout sessions reference the intent too.
        if self.event.kind == EventKind.CHARGE_SUCCEEDED:
            payment_intent_id = object_id(obj.get("payment_intent"))
        else:
            payment_intent_id = object_id(obj.get("id"))
        session = self._session_for_payment(payment_intent_id) if payment_intent_id else None
        if session:
            session_metadata = session.get("metadata") or {}
            return session_metadata_user_id(session_metadata), plan_from_metadata(session_metadata, fallback=plan)
        return None, plan

    def payment_succeeded(self) -> DispatchOutcome:
        obj = self.event.data_object
        user_id, plan = self._attribute_payment(obj)
        if not user_id:
            return self.skip(
                "user_not_attributable",
                object_id=obj.get("id"),
                customer=object_id(obj.get("customer")),
            )

        customer_id = object_id(obj.get("customer"))
        updates: Dict[str, Any] = {
            "billing.status": BillingStatus.ACTIVE.value,
            "billing.plan": plan,
            "paymentStatus": PaymentStatus.PAID.value,
            "subscriptionTier": plan,
        }
        if customer_id:
            updates["billing.providerCustomerId"] = customer_id
            updates["providerCustomerId"] = customer_id
        return self.apply(user_id, updates)

    def payment_failed(self) -> DispatchOutcome:
        obj = self.event.data_object
        user_id = session_metadata_user_id(obj.get("metadata"))
        if not user_id:
            return self.skip("missing_user_id", object_id=obj.get("id"))
        return self.apply(
            user_id,
            {"billing.status": BillingStatus.FAILED.value, "paymentStatus": PaymentStatus.FAILED.value},
        )

    def subscription_deleted(self) -> DispatchOutcome:
        subscription = self.event.data_object
        user_id = session_metadata_user_id(subscription.get("metadata"))
        if not user_id:
            # No customer -> user mapping is consulted for cancellations.
            return self.skip(
                "missing_user_id",
                subscription_id=subscription.get("id"),
                customer=object_id(subscription.get("customer")),
            )
        return self.apply(
            user_id,
            {
                "billing.status": BillingStatus.CANCELLED.value,
                "billing.plan": None,
                "paymentStatus": PaymentStatus.CANCELLED.value,
            },
        )

    def unknown(self) -> DispatchOutcome:
        logger.info(
            _json_log(
                {"event": "billing.webhook.unhandled", "event_id": self.event.event_id, "event_type": self.event.type}
            )
        )
        return self.outcome(ACTION_IGNORED, reason="unhandled_event_type")


_HANDLERS: Dict[EventKind, Callable[[_Dispatcher], DispatchOutcome]] = {
    EventKind.CHECKOUT_COMPLETED: _Dispatcher.checkout_completed,
    EventKind.CHARGE_SUCCEEDED: _Dispatcher.payment_succeeded,
    EventKind.PAYMENT_SUCCEEDED: _Dispatcher.payment_succeeded,
    EventKind.PAYMENT_FAILED: _Dispatcher.payment_failed,
    EventKind.SUBSCRIPTION_DELETED: _Dispatcher.subscription_deleted,
}


def dispatch_event(
    event: VerifiedEvent,
    updater: BillingUpdater,
    payments_client: PaymentsClient,
    user_store: Optional[UserStore] = None,
    audit_store: Optional[BillingAuditStore] = None,
    request_id: Optional[str] = None,
) -> DispatchOutcome:
    """Route a verified provider event to its handler. Never raises for handler failures."""
    dispatcher = _Dispatcher(event, updater, payments_client, user_store, audit_store, request_id)
    handler = _HANDLERS.get(event.kind, _Dispatcher.unknown)
    try:
        return handler(dispatcher)
    except Exception as exc:
        logger.exception("Webhook handler crashed for event %s (%s)", event.event_id, event.type)
        return dispatcher.outcome(ACTION_FAILED, reason=type(exc).__name__)
