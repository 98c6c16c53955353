"""
SQLAlchemy repositories against an in-memory SQLite database, plus one full
billing flow running on them.
"""

from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from entitlement_engine.core.deps import build_services
from entitlement_engine.domain.dunning import DunningRecord, DunningState
from entitlement_engine.domain.entitlement import Entitlement
from entitlement_engine.domain.events import parse_billing_event
from entitlement_engine.domain.keys import EntitlementRole, EntitlementStatus
from entitlement_engine.domain.trial import TrialRecord, TrialStatus
from entitlement_engine.domain.usage import UsageCounter
from entitlement_engine.engine.strategies.reset import MonthlyReset
from entitlement_engine.persistence import models  # noqa: F401
from entitlement_engine.persistence.base import Base
from entitlement_engine.persistence.repo import DunningRepo, EntitlementRepo, ProcessedEventRepo, ProductRepo, TrialRepo
from entitlement_engine.publishing.publisher import EntitlementEventPublisher


@pytest.fixture
async def db():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    Session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    async with Session() as session:
        yield session
    await engine.dispose()


class TestEntitlementRepo:
    async def test_round_trip_with_usage(self, db, clock):
        repo = EntitlementRepo(db)
        entitlement = Entitlement.grant(
            user_id="user-1", key="quiz_attempts", role=EntitlementRole.LEARNER, now=clock.now,
            expires_at=clock.now + timedelta(days=30),
        )
        entitlement.attach_usage(
            UsageCounter(limit=10, used=3, reset_at=clock.now + timedelta(days=5), reset_strategy=MonthlyReset(),
                         addon_limits={"pack": 5})
        )
        await repo.save(entitlement)
        await db.commit()

        loaded = await repo.find_by_user_and_key("user-1", "quiz_attempts")
        assert loaded == entitlement
        assert loaded.usage.effective_limit() == 15

    async def test_update_overwrites(self, db, clock):
        repo = EntitlementRepo(db)
        entitlement = Entitlement.grant(user_id="user-1", key="access_dashboard", role=EntitlementRole.LEARNER, now=clock.now)
        await repo.save(entitlement)
        entitlement.revoke()
        await repo.update(entitlement)
        await db.commit()

        rows = await repo.find_by_user("user-1")
        assert [e.status for e in rows] == [EntitlementStatus.REVOKED]

    async def test_missing(self, db):
        assert await EntitlementRepo(db).find_by_user_and_key("user-1", "ai_tokens") is None


class TestDunningRepo:
    async def test_round_trip_and_open_listing(self, db, clock):
        repo = DunningRepo(db)
        for user_id, state in (("a", DunningState.GRACE_PERIOD), ("b", DunningState.SUSPENDED), ("c", DunningState.OK)):
            record = DunningRecord.open(user_id=user_id, now=clock.now, portal_url=f"https://portal/{user_id}")
            record.state = state
            await repo.save(record)
        await db.commit()

        loaded = await repo.find_by_user_id("a")
        assert loaded.state == DunningState.GRACE_PERIOD
        assert loaded.detected_at == clock.now
        assert loaded.portal_url == "https://portal/a"
        assert await repo.list_open_user_ids() == ["a"]

        await repo.delete("a")
        assert await repo.find_by_user_id("a") is None


class TestProcessedEventRepo:
    async def test_ttl_and_purge(self, db, clock):
        repo = ProcessedEventRepo(db, ttl_days=90, clock=clock)
        await repo.mark_processed("PAYMENT#pi_1")
        assert await repo.is_processed("PAYMENT#pi_1") is True
        assert await repo.is_processed("PAYMENT#pi_2") is False

        clock.advance(days=90)
        assert await repo.is_processed("PAYMENT#pi_1") is False
        assert await repo.purge_expired() == 1


class TestTrialRepo:
    async def test_round_trip_and_expiry(self, db, clock):
        repo = TrialRepo(db)
        trial = TrialRecord(
            user_id="user-1", product_id="prod_basic", started_at=clock.now, expires_at=clock.now + timedelta(hours=3),
        )
        await repo.save(trial)
        await db.commit()

        loaded = await repo.find_by_user_and_product("user-1", "prod_basic")
        assert loaded == trial
        assert loaded.trial_id == "user-1-prod_basic"

        loaded.mark_expired()
        await repo.update(loaded)
        await db.commit()
        assert (await repo.find_by_user_and_product("user-1", "prod_basic")).status == TrialStatus.EXPIRED
        assert await repo.find_by_user_and_product("user-1", "prod_pro") is None


class TestBillingFlowOnSql:
    async def test_created_then_suspended(self, db, clock, transport, catalog, sub_event, pay_event):
        products = ProductRepo(db)
        for product_id in ("prod_pro", "prod_tokens_pack"):
            await products.upsert(await catalog.find_by_id(product_id))
        await db.commit()

        services = build_services(
            entitlements=EntitlementRepo(db),
            dunning_store=DunningRepo(db),
            products=products,
            processed=ProcessedEventRepo(db, clock=clock),
            trials=TrialRepo(db),
            publisher=EntitlementEventPublisher(transport, clock=clock),
            clock=clock,
            session=db,
        )

        await services.billing.handle(parse_billing_event(sub_event("subscription.created")))
        await services.billing.handle(parse_billing_event(pay_event("payment.failed")))
        await services.commit()

        tokens = await services.entitlements.find_by_user_and_key("user-1", "ai_tokens")
        assert tokens.usage.effective_limit() == 150

        for days in (1, 3, 4):
            clock.advance(days=days)
            await services.dunning.process_state_transitions("user-1")
            await services.commit()

        assert (await services.dunning_store.find_by_user_id("user-1")).state == DunningState.SUSPENDED
        held = await services.entitlements.find_by_user("user-1")
        assert {e.status for e in held} == {EntitlementStatus.REVOKED}
