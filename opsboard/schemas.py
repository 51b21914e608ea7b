from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class BillingStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    FAILED = "failed"


class BillingPlan(str, Enum):
    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


class BillingRecord(BaseModel):
    status: BillingStatus = BillingStatus.INACTIVE
    plan: Optional[BillingPlan] = None
    payment_date: Optional[datetime] = None
    provider_customer_id: Optional[str] = None
    provider_session_id: Optional[str] = None


class UserRecord(BaseModel):
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    is_team_member: bool = False
    owner_id: Optional[str] = None
    billing: Optional[BillingRecord] = None
    # Legacy root-level mirrors of the billing sub-record.
    payment_status: Optional[PaymentStatus] = None
    subscription_tier: Optional[BillingPlan] = None
    payment_date: Optional[datetime] = None
    provider_customer_id: Optional[str] = None
    version: int = Field(default=0, ge=0)
    created_at: datetime
    updated_at: datetime


class BillingUpdateResult(BaseModel):
    user_id: str
    status: Optional[BillingStatus] = None
    prior_status: Optional[BillingStatus] = None
    payment_status: Optional[PaymentStatus] = None
    confirmed: bool = True
    updated_at: datetime


class BillingAuditRecord(BaseModel):
    user_id: str
    event_id: str
    action: str = Field(..., min_length=1, max_length=120)
    source: str = Field(..., min_length=1, max_length=80)
    request_id: Optional[str] = Field(default=None, max_length=128)
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class SessionVerification(BaseModel):
    paid: bool
    status: Optional[str] = None
    customer: Optional[str] = None


class ManualReconcileRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: Optional[str] = Field(default=None, alias="sessionId", max_length=255)
    user_id: Optional[str] = Field(default=None, alias="userId", max_length=128)


class InternalBillingUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[str] = Field(default=None, alias="userId", max_length=128)
    updates: Optional[Dict[str, Any]] = None


class BillingUpdateResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    billing_status: Optional[str] = Field(default=None, alias="billingStatus")
    payment_status: Optional[str] = Field(default=None, alias="paymentStatus")
    confirmed: bool = True


class BillingSnapshot(BaseModel):
    user_id: str
    billing: Optional[BillingRecord] = None
    payment_status: Optional[PaymentStatus] = None
    subscription_tier: Optional[BillingPlan] = None
    payment_date: Optional[datetime] = None
    provider_customer_id: Optional[str] = None
    version: int
    created_at: datetime
    updated_at: datetime


class AccessDecision(BaseModel):
    allowed: bool
    status: Optional[str] = None
    redirect_to: Optional[str] = None
    exempt: bool = False


class StripeWebhookResponse(BaseModel):
    received: bool
    event_type: Optional[str] = None
    action: Optional[str] = None
    user_id: Optional[str] = None
