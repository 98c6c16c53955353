"""
Queue-style batch processing: per-message failures and per-user ordering.
"""

import json
from contextlib import asynccontextmanager

import pytest

from entitlement_engine.core.deps import build_services
from entitlement_engine.domain.events import parse_billing_event
from entitlement_engine.domain.keys import EntitlementStatus
from entitlement_engine.handlers.queue import process_billing_batch, process_usage_batch
from entitlement_engine.publishing.publisher import EntitlementEventPublisher
from entitlement_engine.schemas.api_models import QueueRecord
from entitlement_engine.stores.memory import (
    InMemoryEntitlementStore,
    InMemoryDunningStore,
    InMemoryProcessedEventStore,
    InMemoryTrialStore,
)


@pytest.fixture
def scope(services):
    @asynccontextmanager
    async def _scope():
        yield services

    return _scope


def record(message_id: str, body) -> QueueRecord:
    return QueueRecord(messageId=message_id, body=body if isinstance(body, str) else json.dumps(body))


class TestBillingBatch:
    async def test_only_bad_messages_fail(self, services, scope, sub_event):
        failed = await process_billing_batch(
            [
                record("m-bad-json", "{"),
                record("m-ok", sub_event("subscription.created")),
                record("m-unknown-product", sub_event("subscription.created", user_id="user-2", product_id="nope")),
                record("m-bad-schema", {"type": "subscription.created", "payload": {}}),
            ],
            scope,
        )

        assert sorted(failed) == ["m-bad-json", "m-bad-schema", "m-unknown-product"]
        dashboard = await services.entitlements.find_by_user_and_key("user-1", "access_dashboard")
        assert dashboard.status == EntitlementStatus.ACTIVE

    async def test_same_user_messages_apply_in_order(self, services, scope, sub_event):
        failed = await process_billing_batch(
            [
                record("m1", sub_event("subscription.created")),
                record("m2", sub_event("subscription.expired")),
                record("m3", sub_event("subscription.created", user_id="user-2")),
            ],
            scope,
        )

        assert failed == []
        first = await services.entitlements.find_by_user_and_key("user-1", "access_dashboard")
        second = await services.entitlements.find_by_user_and_key("user-2", "access_dashboard")
        assert first.status == EntitlementStatus.REVOKED
        assert second.status == EntitlementStatus.ACTIVE

    async def test_duplicate_payment_is_not_a_failure(self, scope, pay_event, transport):
        body = pay_event("payment.successful", product_id="prod_course_pack")
        failed = await process_billing_batch([record("m1", body), record("m2", body)], scope)
        assert failed == []
        assert len(transport.of_type("entitlement.created")) == 1


class TestUsageBatch:
    async def test_over_limit_message_fails_alone(self, services, scope, sub_event):
        await process_billing_batch([record("s1", sub_event("subscription.created", product_id="prod_basic"))], scope)

        failed = await process_usage_batch(
            [
                record("u1", {"userId": "user-1", "entitlementKey": "quiz_attempts", "amount": 6}),
                record("u2", {"userId": "user-1", "entitlementKey": "quiz_attempts", "amount": 6}),
                record("u3", {"userId": "user-1", "entitlementKey": "quiz_attempts", "amount": 4}),
                record("u4", {"userId": "user-9", "entitlementKey": "quiz_attempts"}),
            ],
            scope,
        )

        assert failed == ["u2", "u4"]
        stored = await services.entitlements.find_by_user_and_key("user-1", "quiz_attempts")
        assert stored.usage.used == 10


# =============================================================================
# Events leave only after a successful commit
# =============================================================================

class FailingSession:
    """Stands in for an AsyncSession whose commit is rejected by the database."""

    def __init__(self):
        self.rollbacks = 0

    async def commit(self):
        raise RuntimeError("commit rejected")

    async def rollback(self):
        self.rollbacks += 1


class CommittingSession:
    def __init__(self, transport):
        self.transport = transport
        self.sent_at_commit = None

    async def commit(self):
        self.sent_at_commit = len(self.transport.sent)

    async def rollback(self):
        pass


def deferred_services(clock, transport, catalog, session):
    return build_services(
        entitlements=InMemoryEntitlementStore(),
        dunning_store=InMemoryDunningStore(),
        products=catalog,
        processed=InMemoryProcessedEventStore(clock=clock),
        trials=InMemoryTrialStore(),
        publisher=EntitlementEventPublisher(transport, clock=clock).for_unit_of_work(),
        clock=clock,
        session=session,
    )


class TestPublishAfterCommit:
    async def test_failed_commit_sends_nothing(self, clock, transport, catalog, sub_event):
        session = FailingSession()
        services = deferred_services(clock, transport, catalog, session)

        @asynccontextmanager
        async def scope():
            yield services

        failed = await process_billing_batch([record("m1", sub_event("subscription.created"))], scope)

        assert failed == ["m1"]
        assert transport.sent == []
        assert services.publisher.pending == []
        assert session.rollbacks == 1

    async def test_events_follow_the_commit(self, clock, transport, catalog, sub_event):
        session = CommittingSession(transport)
        services = deferred_services(clock, transport, catalog, session)

        @asynccontextmanager
        async def scope():
            yield services

        failed = await process_billing_batch([record("m1", sub_event("subscription.created"))], scope)

        assert failed == []
        assert session.sent_at_commit == 0
        assert {e["payload"]["entitlementKey"] for e in transport.of_type("entitlement.created")} == {
            "access_dashboard",
            "ai_tokens",
        }

    async def test_rollback_discards_buffered_events(self, clock, transport, catalog, sub_event):
        services = deferred_services(clock, transport, catalog, None)
        await services.reconciler.handle(parse_billing_event(sub_event("subscription.created")))
        assert len(services.publisher.pending) == 2

        await services.rollback()

        assert services.publisher.pending == []
        await services.commit()
        assert transport.sent == []
