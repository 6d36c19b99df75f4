from pydantic import BaseModel, EmailStr, Field, ConfigDict, model_validator
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class SubscriberRole(str, Enum):
    """Roles as stored by the user-account store."""
    ADMINISTRATOR = "Administrador"
    FOCUS_UNIT = "Foco da Unidade"
    SALES_EXECUTIVE = "Executivo de Vendas"

class SubscriptionStatus(str, Enum):
    """Mirrors the gateway preapproval status vocabulary."""
    NONE = "none"
    PENDING = "pending"
    AUTHORIZED = "authorized"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PAUSED = "paused"

class PaymentMethodType(str, Enum):
    CREDIT_CARD = "credit_card"
    PIX = "pix"

class PaymentMethodStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    REJECTED = "rejected"

class BillingPhase(str, Enum):
    TRIAL = "trial"
    SUBSCRIPTION = "subscription"
    EXPIRED = "expired"

class WebhookEventState(str, Enum):
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"

class AuditAction(str, Enum):
    # Trial
    TRIAL_INITIALIZED = "TRIAL_INITIALIZED"

    # Subscription lifecycle
    SUBSCRIPTION_CREATED = "SUBSCRIPTION_CREATED"
    SUBSCRIPTION_RENEWED = "SUBSCRIPTION_RENEWED"
    SUBSCRIPTION_TERMINATED = "SUBSCRIPTION_TERMINATED"
    SUBSCRIPTION_PENDING = "SUBSCRIPTION_PENDING"
    SUBSCRIPTION_PAUSED = "SUBSCRIPTION_PAUSED"

    # Gateway
    GATEWAY_PLAN_CREATED = "GATEWAY_PLAN_CREATED"
    WEBHOOK_FAILED = "WEBHOOK_FAILED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

# ============================================================================
# BILLING MODELS
# ============================================================================

class PlanDefinition(BaseModel):
    """Fixed monthly plan for a billable role."""
    model_config = ConfigDict(frozen=True)

    code: str
    role: SubscriberRole
    name: str
    monthly_amount: Decimal
    trial_period_days: int
    currency: str = "BRL"
    frequency: int = 1
    frequency_type: str = "months"


class SubscriptionRecord(BaseModel):
    """Per-subscriber billing state (collection: subscription_records)."""
    model_config = ConfigDict(extra="ignore")

    subscriber_id: str
    trial_ends_at: Optional[datetime] = None
    subscription_ends_at: Optional[datetime] = None
    is_active: bool = False
    last_payment_at: Optional[datetime] = None
    next_payment_at: Optional[datetime] = None
    amount: Decimal = Decimal("0")
    subscription_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    status: SubscriptionStatus = SubscriptionStatus.NONE
    role: Optional[SubscriberRole] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class SubscriberProfile(BaseModel):
    """Read-only view of the external user-account record."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    subscriber_id: str = Field(alias="uid")
    email: str
    role: SubscriberRole
    created_at: datetime = Field(alias="createdAt")


class PaymentMethod(BaseModel):
    id: str
    name: str
    type: PaymentMethodType
    status: PaymentMethodStatus = PaymentMethodStatus.ACTIVE


class GatewaySubscription(BaseModel):
    """Preapproval as returned by the gateway. Status is kept as the raw string."""
    model_config = ConfigDict(extra="ignore")

    subscription_id: str
    status: str
    payer_email: Optional[str] = None
    plan_id: Optional[str] = None
    next_payment_date: Optional[str] = None
    last_modified: Optional[str] = None


class PaymentMethodDescriptor(BaseModel):
    type: PaymentMethodType
    token: Optional[str] = None

    @model_validator(mode="after")
    def _card_requires_token(self):
        if self.type == PaymentMethodType.CREDIT_CARD and not (self.token or "").strip():
            raise ValueError("Card token is required for credit_card payments")
        return self


class SubscribeRequest(BaseModel):
    """Body of POST /api/payment/subscription."""
    subscriber_id: str = Field(min_length=1)
    email: EmailStr
    role: SubscriberRole
    payment_method: PaymentMethodDescriptor


class SubscribeResult(BaseModel):
    subscription: GatewaySubscription
    payment_method: PaymentMethod
    record: SubscriptionRecord


class NotificationData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _coerce_id(cls, values):
        # Gateway sends numeric ids for some resources
        if isinstance(values, dict) and values.get("id") is not None:
            values = {**values, "id": str(values["id"])}
        return values


class WebhookNotification(BaseModel):
    """Body of POST /api/payment/webhook."""
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    type: Optional[str] = None
    action: Optional[str] = None
    data: NotificationData = Field(default_factory=NotificationData)

    @model_validator(mode="before")
    @classmethod
    def _coerce_event_id(cls, values):
        if isinstance(values, dict) and values.get("id") is not None:
            values = {**values, "id": str(values["id"])}
        return values


class WebhookOutcome(BaseModel):
    acknowledged: bool = True
    applied: bool = False
    reason: Optional[str] = None
    subscription_id: Optional[str] = None
    subscriber_id: Optional[str] = None
    status: Optional[str] = None


class BillingStatus(BaseModel):
    """Billing summary shown to the subscriber."""
    subscriber_id: str
    is_active: bool
    phase: BillingPhase
    plan_label: str
    days_left: int
    expires_at: Optional[datetime] = None
    amount: Decimal
    status: SubscriptionStatus
    trial_ends_at: Optional[datetime] = None
    subscription_ends_at: Optional[datetime] = None
    last_payment_at: Optional[datetime] = None
    next_payment_at: Optional[datetime] = None


class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    subscriber_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=_utcnow)
