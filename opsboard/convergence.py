"""Client-side convergence after a checkout redirect.

After the payments provider redirects back, the provider's webhook may not
have landed yet. :class:`ConvergenceClient` re-checks the checkout session,
pushes the same billing update the webhook would apply when needed, and polls
with a bounded budget until the stored state agrees or the budget runs out.
"""

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx

from opsboard.schemas import SessionVerification

logger = logging.getLogger("opsboard.convergence")

DEFAULT_POLL_INTERVAL_SECONDS = 2.0
DEFAULT_MAX_POLL_ATTEMPTS = 15
PASSING_STATUSES = {"active", "paid"}

TIMED_OUT_MESSAGE = (
    "Payment verification is taking longer than expected. Your payment may still be "
    "processing. Please refresh the page in a moment."
)


def _json_log(fields):
    return json.dumps(fields, separators=(",", ":"), default=str)


class ConvergenceState(str, Enum):
    VERIFYING = "verifying"
    UPDATING = "updating"
    POLLING = "polling"
    CONVERGED = "converged"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class ReconciliationGateway(ABC):
    @abstractmethod
    def verify_session(self, session_id: str) -> SessionVerification:
        raise NotImplementedError

    @abstractmethod
    def update_after_payment(self, session_id: str, user_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def billing_status(self, user_id: str) -> Optional[str]:
        raise NotImplementedError


class HttpReconciliationGateway(ReconciliationGateway):
    """Talks to the reconciliation endpoints of the billing API.

    ``http_client`` is an ``httpx.Client`` whose base URL points at the API and
    whose default headers carry the signed-in user's bearer token.
    """

    def __init__(self, http_client: httpx.Client):
        self._http = http_client

    def verify_session(self, session_id: str) -> SessionVerification:
        response = self._http.get("/billing/verify-session", params={"session_id": session_id})
        response.raise_for_status()
        return SessionVerification.model_validate(response.json())

    def update_after_payment(self, session_id: str, user_id: str) -> Dict[str, Any]:
        response = self._http.post(
            "/billing/update-after-payment",
            json={"sessionId": session_id, "userId": user_id},
        )
        response.raise_for_status()
        return response.json()

    def billing_status(self, user_id: str) -> Optional[str]:
        del user_id  # the access endpoint reads the caller's own record
        response = self._http.get("/billing/access")
        response.raise_for_status()
        return response.json().get("status")


@dataclass
class ConvergenceResult:
    state: ConvergenceState
    attempts: int = 0
    transitions: List[ConvergenceState] = field(default_factory=list)
    message: Optional[str] = None
    update_result: Optional[Dict[str, Any]] = None


class ConvergenceClient:
    def __init__(
        self,
        gateway: ReconciliationGateway,
        interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_attempts: int = DEFAULT_MAX_POLL_ATTEMPTS,
        wait: Optional[Callable[[float], Any]] = None,
    ):
        """``wait(timeout)`` blocks between polls; pass ``threading.Event.wait`` of an
        event set by a document change listener to wake up as soon as the stored
        record changes instead of sleeping the full interval."""
        self._gateway = gateway
        self._interval = max(0.0, interval)
        self._max_attempts = max(0, max_attempts)
        self._wait = wait or time.sleep

    def _verify(self, session_id: str) -> bool:
        try:
            return self._gateway.verify_session(session_id).paid
        except Exception as exc:
            logger.warning(
                _json_log({"event": "convergence.verify_failed", "session_id": session_id, "error": str(exc)})
            )
            return False

    def _stored_status(self, user_id: str) -> Optional[str]:
        try:
            return self._gateway.billing_status(user_id)
        except Exception as exc:
            logger.warning(_json_log({"event": "convergence.status_failed", "user_id": user_id, "error": str(exc)}))
            return None

    def _update(self, session_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self._gateway.update_after_payment(session_id, user_id)
        except Exception as exc:
            # Optimistic: the webhook may still land and the gate re-checks on navigation.
            logger.warning(
                _json_log(
                    {
                        "event": "convergence.update_failed",
                        "session_id": session_id,
                        "user_id": user_id,
                        "error": str(exc),
                    }
                )
            )
            return None

    def run(
        self,
        session_id: str,
        user_id: str,
        cached_status: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ConvergenceResult:
        result = ConvergenceResult(state=ConvergenceState.VERIFYING)
        result.transitions.append(ConvergenceState.VERIFYING)

        def move(state: ConvergenceState):
            result.state = state
            result.transitions.append(state)

        def converge_with_update():
            move(ConvergenceState.UPDATING)
            result.update_result = self._update(session_id, user_id)
            move(ConvergenceState.CONVERGED)

        if cancel is not None and cancel.is_set():
            move(ConvergenceState.CANCELLED)
            return result

        paid = self._verify(session_id)
        already_active = (cached_status or "").lower() in PASSING_STATUSES
        if paid and not already_active:
            converge_with_update()
            return result
        if paid or already_active:
            move(ConvergenceState.CONVERGED)
            return result

        move(ConvergenceState.POLLING)
        while result.attempts < self._max_attempts:
            self._wait(self._interval)
            if cancel is not None and cancel.is_set():
                move(ConvergenceState.CANCELLED)
                return result
            result.attempts += 1

            if self._verify(session_id):
                converge_with_update()
                break
            if (self._stored_status(user_id) or "").lower() in PASSING_STATUSES:
                move(ConvergenceState.CONVERGED)
                break
        else:
            move(ConvergenceState.TIMED_OUT)
            result.message = TIMED_OUT_MESSAGE

        logger.info(
            _json_log(
                {
                    "event": "convergence.finished",
                    "session_id": session_id,
                    "user_id": user_id,
                    "state": result.state,
                    "attempts": result.attempts,
                }
            )
        )
        return result
