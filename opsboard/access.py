import json
import logging
import os
from typing import Dict, Optional

from fastapi import Depends, HTTPException, status as http_status

from opsboard.auth import ROLE_ADMIN, ROLE_COO, get_current_user, normalized_role_set
from opsboard.schemas import AccessDecision, BillingStatus, PaymentStatus, UserRecord
from opsboard.user_store import UserStore, get_user_store

logger = logging.getLogger("opsboard.access")

PAYMENT_PAGE = "/payment"
PASSING_STATUSES = {BillingStatus.ACTIVE.value, PaymentStatus.PAID.value}


def _exempt_roles() -> set[str]:
    raw = os.environ.get("BILLING_GATE_EXEMPT_ROLES")
    if raw is None:
        return normalized_role_set([ROLE_ADMIN, ROLE_COO])
    return normalized_role_set(raw.split(","))


def effective_billing_status(user: Optional[UserRecord]) -> Optional[str]:
    """The sub-record status when present, else the legacy root-level payment status."""
    if user is None:
        return None
    if user.billing is not None and user.billing.status is not None:
        return user.billing.status.value
    if user.payment_status is not None:
        return user.payment_status.value
    return None


def is_exempt(user: Optional[UserRecord], groups=None) -> bool:
    exempt_roles = _exempt_roles()
    roles = set(normalized_role_set(list(groups or [])))
    if user is not None:
        roles |= normalized_role_set(user.roles)
        if user.is_team_member or user.owner_id:
            return True
    return bool(roles & exempt_roles)


def evaluate_access(user: Optional[UserRecord], groups=None) -> AccessDecision:
    if is_exempt(user, groups):
        return AccessDecision(allowed=True, status=effective_billing_status(user), exempt=True)

    status = effective_billing_status(user)
    if status in PASSING_STATUSES:
        return AccessDecision(allowed=True, status=status)
    return AccessDecision(allowed=False, status=status, redirect_to=PAYMENT_PAGE)


def current_access_decision(
    user: Dict = Depends(get_current_user),
    user_store: UserStore = Depends(get_user_store),
) -> AccessDecision:
    # Re-read on every request; billing state is never cached across navigations.
    record = user_store.get_user(user["sub"])
    decision = evaluate_access(record, user.get("groups") or [])
    if not decision.allowed:
        logger.info(
            json.dumps(
                {"event": "billing.gate.blocked", "user_id": user["sub"], "status": decision.status},
                separators=(",", ":"),
            )
        )
    return decision


async def require_active_billing(
    user: Dict = Depends(get_current_user),
    decision: AccessDecision = Depends(current_access_decision),
) -> Dict:
    if not decision.allowed:
        raise HTTPException(
            status_code=http_status.HTTP_402_PAYMENT_REQUIRED,
            detail={"message": "Active billing required", "redirect_to": decision.redirect_to, "status": decision.status},
        )
    return user
