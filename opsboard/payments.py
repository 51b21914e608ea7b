import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import stripe

from opsboard.schemas import SessionVerification

logger = logging.getLogger("opsboard.payments")

DEFAULT_WEBHOOK_TOLERANCE_SECONDS = 300
DEFAULT_SESSION_LOOKUP_LIMIT = 10


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _optional_text(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class VerificationError(Exception):
    pass


class MissingSignatureError(VerificationError):
    pass


class MissingSecretError(VerificationError):
    """The signing secret is not configured. An operator error, not a request error."""


class SignatureMismatchError(VerificationError):
    pass


class PaymentProviderError(Exception):
    pass


class EventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    CHARGE_SUCCEEDED = "charge_succeeded"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    UNKNOWN = "unknown"


STRIPE_EVENT_KINDS = {
    "checkout.session.completed": EventKind.CHECKOUT_COMPLETED,
    "charge.succeeded": EventKind.CHARGE_SUCCEEDED,
    "payment_intent.succeeded": EventKind.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": EventKind.PAYMENT_FAILED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
}


@dataclass
class VerifiedEvent:
    event_id: Optional[str]
    type: str
    kind: EventKind
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def data_object(self) -> Dict[str, Any]:
        obj = (self.payload.get("data", {}) or {}).get("object", {}) or {}
        return obj if isinstance(obj, dict) else {}


def event_from_payload(payload: Dict[str, Any]) -> VerifiedEvent:
    event_type = str(payload.get("type") or "")
    return VerifiedEvent(
        event_id=_optional_text(payload.get("id")),
        type=event_type,
        kind=STRIPE_EVENT_KINDS.get(event_type, EventKind.UNKNOWN),
        payload=payload,
    )


def verify_event(
    raw_body: bytes,
    signature_header: Optional[str],
    shared_secret: Optional[str],
    tolerance: int = DEFAULT_WEBHOOK_TOLERANCE_SECONDS,
) -> VerifiedEvent:
    """Authenticate a provider notification and return it as a typed event.

    Pure: nothing is mutated, so callers must run this before any state change.
    """
    signature = _optional_text(signature_header)
    if not signature:
        raise MissingSignatureError("Missing Stripe-Signature header")
    secret = _optional_text(shared_secret)
    if not secret:
        raise MissingSecretError("Stripe webhook secret is not configured")

    try:
        body = raw_body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise SignatureMismatchError("Webhook payload is not valid UTF-8") from exc

    try:
        stripe.WebhookSignature.verify_header(body, signature, secret, tolerance=tolerance)
    except stripe.SignatureVerificationError as exc:
        raise SignatureMismatchError(f"Webhook signature verification failed: {exc}") from exc

    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        raise SignatureMismatchError("Webhook payload is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise SignatureMismatchError("Webhook payload must be a JSON object")
    return event_from_payload(payload)


def webhook_secret() -> Optional[str]:
    return _optional_text(os.environ.get("STRIPE_WEBHOOK_SECRET"))


def webhook_tolerance_seconds() -> int:
    return max(0, _as_int(os.environ.get("STRIPE_WEBHOOK_TOLERANCE_SECONDS"), DEFAULT_WEBHOOK_TOLERANCE_SECONDS))


def session_lookup_limit() -> int:
    parsed = _as_int(os.environ.get("STRIPE_SESSION_LOOKUP_LIMIT"), DEFAULT_SESSION_LOOKUP_LIMIT)
    return min(max(parsed, 1), 100)


def _as_dict(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(value)


def object_id(value: Any) -> Optional[str]:
    """Stripe fields like ``customer`` are either an id or an expanded object."""
    if isinstance(value, dict):
        return _optional_text(value.get("id"))
    return _optional_text(value)


def session_metadata_user_id(metadata: Optional[Dict[str, Any]]) -> Optional[str]:
    metadata = metadata or {}
    return _optional_text(metadata.get("userId")) or _optional_text(metadata.get("firebaseUserId"))


def session_verification(session: Dict[str, Any]) -> SessionVerification:
    payment_status = _optional_text(session.get("payment_status"))
    return SessionVerification(
        paid=payment_status == "paid",
        status=payment_status,
        customer=object_id(session.get("customer")),
    )


class PaymentsClient(ABC):
    @abstractmethod
    def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def list_recent_checkout_sessions(self, limit: int) -> List[Dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def create_customer(self, user_id: str, email: Optional[str], name: Optional[str]) -> Dict[str, Any]:
        raise NotImplementedError


class DisabledPaymentsClient(PaymentsClient):
    def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        del session_id
        raise PaymentProviderError("Stripe is not configured")

    def list_recent_checkout_sessions(self, limit: int) -> List[Dict[str, Any]]:
        del limit
        raise PaymentProviderError("Stripe is not configured")

    def create_customer(self, user_id: str, email: Optional[str], name: Optional[str]) -> Dict[str, Any]:
        del user_id, email, name
        raise PaymentProviderError("Stripe is not configured")


class StripeSdkClient(PaymentsClient):
    def __init__(self, api_key: str):
        self._api_key = api_key.strip()
        stripe.api_key = self._api_key

    def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        try:
            session = stripe.checkout.Session.retrieve(session_id)
        except stripe.StripeError as exc:
            raise PaymentProviderError(f"Failed to retrieve checkout session {session_id}: {exc}") from exc
        return _as_dict(session)

    def list_recent_checkout_sessions(self, limit: int) -> List[Dict[str, Any]]:
        try:
            page = stripe.checkout.Session.list(limit=limit)
        except stripe.StripeError as exc:
            raise PaymentProviderError(f"Failed to list checkout sessions: {exc}") from exc
        return [_as_dict(item) for item in (page.data or [])]

    def create_customer(self, user_id: str, email: Optional[str], name: Optional[str]) -> Dict[str, Any]:
        params: Dict[str, Any] = {"metadata": {"userId": user_id}}
        if email:
            params["email"] = email
            params["name"] = name or email
        elif name:
            params["name"] = name
        try:
            customer = stripe.Customer.create(**params)
        except stripe.StripeError as exc:
            raise PaymentProviderError(f"Failed to create Stripe customer for {user_id}: {exc}") from exc
        return _as_dict(customer)


def get_payments_client() -> PaymentsClient:
    api_key = _optional_text(os.environ.get("STRIPE_SECRET_KEY"))
    if api_key:
        return StripeSdkClient(api_key=api_key)
    return DisabledPaymentsClient()
