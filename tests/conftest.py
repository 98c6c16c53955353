"""
Shared fixtures: a controllable clock, in-memory stores, a small product catalog
and builders for inbound billing/usage envelopes.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import pytest

# Set test environment before settings are read
os.environ.setdefault("ENV", "development")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("EVENT_PUBLISHER_BACKEND", "memory")
os.environ.setdefault("JWT_SECRET", "test-secret-for-the-entitlement-engine-suite")

from entitlement_engine.core.deps import build_services
from entitlement_engine.domain.product import ProductDefinition, ProductType, UsageLimit, UsagePeriod
from entitlement_engine.publishing.publisher import EntitlementEventPublisher, MemoryTransport
from entitlement_engine.stores.memory import (
    InMemoryEntitlementStore,
    InMemoryDunningStore,
    InMemoryProductCatalog,
    InMemoryProcessedEventStore,
    InMemoryTrialStore,
)

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
PERIOD_END = NOW + timedelta(days=30)


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


# =============================================================================
# Catalog
# =============================================================================

def pro_product() -> ProductDefinition:
    return ProductDefinition(
        product_id="prod_pro",
        name="Pro Plan",
        type=ProductType.SUBSCRIPTION,
        entitlements=["access_dashboard", "ai_tokens"],
        usage_limits=[UsageLimit(metric="ai_tokens", limit=100, period=UsagePeriod.BILLING_CYCLE)],
        addons=["prod_tokens_pack"],
    )


def tokens_pack() -> ProductDefinition:
    return ProductDefinition(
        product_id="prod_tokens_pack",
        name="Token Pack",
        type=ProductType.ADDON,
        entitlements=["ai_tokens"],
        usage_limits=[UsageLimit(metric="ai_tokens", limit=50, period=UsagePeriod.BILLING_CYCLE)],
    )


def basic_product() -> ProductDefinition:
    return ProductDefinition(
        product_id="prod_basic",
        name="Basic Plan",
        type=ProductType.SUBSCRIPTION,
        entitlements=["access_dashboard", "quiz_attempts"],
        usage_limits=[UsageLimit(metric="quiz_attempts", limit=10, period=UsagePeriod.MONTH)],
    )


def course_pack() -> ProductDefinition:
    return ProductDefinition(
        product_id="prod_course_pack",
        name="Course Pack",
        type=ProductType.ONE_OFF,
        entitlements=["create_course"],
    )


# =============================================================================
# Envelopes
# =============================================================================

def subscription_event(
    event_type: str,
    *,
    user_id: str = "user-1",
    product_id: str = "prod_pro",
    start: datetime = NOW,
    end: datetime = PERIOD_END,
    event_id: str = "evt-sub",
    **extra: Any,
) -> Dict[str, Any]:
    payload = {
        "subscriptionId": "sub_1",
        "userId": user_id,
        "productId": product_id,
        "priceId": "price_1",
        "status": "active",
        "currentPeriodStart": start.isoformat(),
        "currentPeriodEnd": end.isoformat(),
    }
    payload.update(extra)
    return {
        "type": event_type,
        "payload": payload,
        "meta": {"eventId": event_id, "occurredAt": NOW.isoformat(), "source": "stripe"},
        "version": 1,
    }


def payment_event(
    event_type: str,
    *,
    user_id: str = "user-1",
    intent: str = "pi_1",
    product_id: Optional[str] = None,
    event_id: str = "evt-pay",
    **extra: Any,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "paymentIntentId": intent,
        "userId": user_id,
        "amount": 1999,
        "currency": "usd",
        "priceId": "price_1",
        "provider": "stripe",
    }
    if product_id:
        payload["productId"] = product_id
    payload.update(extra)
    return {
        "type": event_type,
        "payload": payload,
        "meta": {"eventId": event_id, "occurredAt": NOW.isoformat(), "source": "stripe"},
        "version": 1,
    }


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock() -> Clock:
    return Clock(NOW)


@pytest.fixture
def transport() -> MemoryTransport:
    return MemoryTransport()


@pytest.fixture
def catalog() -> InMemoryProductCatalog:
    return InMemoryProductCatalog([pro_product(), tokens_pack(), basic_product(), course_pack()])


@pytest.fixture
def services(clock, transport, catalog):
    return build_services(
        entitlements=InMemoryEntitlementStore(),
        dunning_store=InMemoryDunningStore(),
        products=catalog,
        processed=InMemoryProcessedEventStore(clock=clock),
        trials=InMemoryTrialStore(),
        publisher=EntitlementEventPublisher(transport, clock=clock),
        clock=clock,
    )


@pytest.fixture
def sub_event():
    return subscription_event


@pytest.fixture
def pay_event():
    return payment_event
