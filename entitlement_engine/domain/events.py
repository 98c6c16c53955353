from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, Literal, Union, Annotated

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator, ConfigDict

from entitlement_engine.domain.errors import EventValidationError
from entitlement_engine.domain.timeutil import aware


class SubscriptionEventType(str, Enum):
    CREATED = "subscription.created"
    UPDATED = "subscription.updated"
    CANCELED = "subscription.canceled"
    PAUSED = "subscription.paused"
    RESUMED = "subscription.resumed"
    EXPIRED = "subscription.expired"


class PaymentEventType(str, Enum):
    SUCCESSFUL = "payment.successful"
    FAILED = "payment.failed"
    ACTION_REQUIRED = "payment.action_required"


class EntitlementEventType(str, Enum):
    CREATED = "entitlement.created"
    UPDATED = "entitlement.updated"
    REVOKED = "entitlement.revoked"


# -------------------------
# Envelope
# -------------------------
class EventMeta(BaseModel):
    eventId: str = Field(..., min_length=1)
    occurredAt: str
    source: str = "internal"
    correlationId: Optional[str] = None


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @field_validator("*", mode="after")
    @classmethod
    def _utc(cls, v):
        return aware(v) if isinstance(v, datetime) else v


# -------------------------
# Subscriptions
# -------------------------
class SubscriptionPayload(_Payload):
    subscriptionId: str
    userId: str = Field(..., min_length=1)
    productId: str = Field(..., min_length=1)
    priceId: Optional[str] = None
    status: str
    currentPeriodStart: datetime
    currentPeriodEnd: datetime
    cancelAtPeriodEnd: bool = False
    previousProductId: Optional[str] = None
    # add-ons are resolved from the product catalog; checkout metadata such as
    # addonProductIds is ignored along with other unknown fields


class SubscriptionCreated(BaseModel):
    type: Literal["subscription.created"]
    payload: SubscriptionPayload
    meta: EventMeta
    version: int = 1


class SubscriptionUpdated(BaseModel):
    type: Literal["subscription.updated"]
    payload: SubscriptionPayload
    meta: EventMeta
    version: int = 1


class SubscriptionCanceled(BaseModel):
    type: Literal["subscription.canceled"]
    payload: SubscriptionPayload
    meta: EventMeta
    version: int = 1


class SubscriptionPaused(BaseModel):
    type: Literal["subscription.paused"]
    payload: SubscriptionPayload
    meta: EventMeta
    version: int = 1


class SubscriptionResumed(BaseModel):
    type: Literal["subscription.resumed"]
    payload: SubscriptionPayload
    meta: EventMeta
    version: int = 1


class SubscriptionExpired(BaseModel):
    type: Literal["subscription.expired"]
    payload: SubscriptionPayload
    meta: EventMeta
    version: int = 1


# -------------------------
# Payments
# -------------------------
class PaymentPayload(_Payload):
    paymentIntentId: str = Field(..., min_length=1)
    userId: str = Field(..., min_length=1)
    amount: float = 0
    currency: str = "usd"
    priceId: Optional[str] = None
    productId: Optional[str] = None
    subscriptionId: Optional[str] = None
    invoiceId: Optional[str] = None
    provider: str = "stripe"
    failureCode: Optional[str] = None
    failureReason: Optional[str] = None
    portalUrl: Optional[str] = None
    expiresAt: Optional[datetime] = None


class PaymentSuccessful(BaseModel):
    type: Literal["payment.successful"]
    payload: PaymentPayload
    meta: EventMeta
    version: int = 1


class PaymentFailed(BaseModel):
    type: Literal["payment.failed"]
    payload: PaymentPayload
    meta: EventMeta
    version: int = 1


class PaymentActionRequired(BaseModel):
    type: Literal["payment.action_required"]
    payload: PaymentPayload
    meta: EventMeta
    version: int = 1


BillingEvent = Annotated[
    Union[
        SubscriptionCreated,
        SubscriptionUpdated,
        SubscriptionCanceled,
        SubscriptionPaused,
        SubscriptionResumed,
        SubscriptionExpired,
        PaymentSuccessful,
        PaymentFailed,
        PaymentActionRequired,
    ],
    Field(discriminator="type"),
]

_billing_event_adapter: TypeAdapter = TypeAdapter(BillingEvent)


def parse_billing_event(data: Dict[str, Any]) -> BillingEvent:
    try:
        return _billing_event_adapter.validate_python(data)
    except ValidationError as e:
        raise EventValidationError(f"Invalid billing event: {e.errors()[0].get('msg')}") from e


# -------------------------
# Usage
# -------------------------
class UsageEvent(BaseModel):
    userId: str = Field(..., min_length=1)
    entitlementKey: str = Field(..., min_length=1)
    amount: int = 1
    idempotencyKey: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("amount", mode="before")
    @classmethod
    def _default_amount(cls, v):
        if not isinstance(v, (int, float)) or isinstance(v, bool) or v < 0:
            return 1
        return v


def parse_usage_event(data: Dict[str, Any]) -> UsageEvent:
    try:
        return UsageEvent.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ())) or "(root)"
        raise EventValidationError(f"Invalid usage event at {loc}: {first.get('msg')}") from e


# -------------------------
# Produced
# -------------------------
class UsageLimitView(BaseModel):
    limit: int
    used: int


class EntitlementEventPayload(BaseModel):
    userId: str
    entitlementKey: str
    role: Optional[str] = None
    status: Literal["active", "inactive"]
    expiresAt: Optional[str] = None
    usageLimit: Optional[UsageLimitView] = None
    productId: Optional[str] = None
    subscriptionId: Optional[str] = None
    reason: str
