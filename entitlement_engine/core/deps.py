# entitlement_engine/core/deps.py
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional, Callable

from fastapi import Depends
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from entitlement_engine.core.settings import settings, Settings
from entitlement_engine.domain.keys import EntitlementRole
from entitlement_engine.domain.timeutil import utcnow
from entitlement_engine.engine.billing import BillingEventService
from entitlement_engine.engine.dunning_processor import DunningEventProcessor, GetBillingIssue
from entitlement_engine.engine.reconciler import BillingEventReconciler
from entitlement_engine.engine.trials import StartTrial, CheckTrialStatus
from entitlement_engine.engine.usage import UsageEventProcessor, EntitlementQueries
from entitlement_engine.persistence.repo import EntitlementRepo, DunningRepo, ProductRepo, ProcessedEventRepo, TrialRepo
from entitlement_engine.publishing.publisher import EntitlementEventPublisher, HttpTransport, MemoryTransport
from entitlement_engine.stores.memory import (
    InMemoryEntitlementStore,
    InMemoryDunningStore,
    InMemoryProductCatalog,
    InMemoryProcessedEventStore,
    InMemoryTrialStore,
)
from entitlement_engine.stores.types import EntitlementStore, DunningStore, ProductCatalog, ProcessedEventStore, TrialStore


def _pool_kwargs(url: str) -> dict:
    # sqlite (local/dev) runs without a sized pool
    if url.startswith("sqlite"):
        return {}
    return {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_timeout": settings.DB_POOL_TIMEOUT,
    }


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DB_ECHO,
    pool_pre_ping=True,
    **_pool_kwargs(settings.DATABASE_URL),
)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with SessionLocal() as session:
        yield session


@dataclass
class Services:
    entitlements: EntitlementStore
    dunning_store: DunningStore
    products: ProductCatalog
    processed: ProcessedEventStore
    trials: TrialStore
    publisher: EntitlementEventPublisher
    reconciler: BillingEventReconciler
    dunning: DunningEventProcessor
    billing: BillingEventService
    usage: UsageEventProcessor
    queries: EntitlementQueries
    billing_issue: GetBillingIssue
    start_trial: StartTrial
    trial_status: CheckTrialStatus
    session: Optional[AsyncSession] = None

    async def commit(self) -> None:
        """Persist first; buffered entitlement events go out only once that succeeded."""
        if self.session is not None:
            await self.session.commit()
        await self.publisher.flush()

    async def rollback(self) -> None:
        if self.session is not None:
            await self.session.rollback()
        self.publisher.discard()


def build_services(
    *,
    entitlements: EntitlementStore,
    dunning_store: DunningStore,
    products: ProductCatalog,
    processed: ProcessedEventStore,
    trials: TrialStore,
    publisher: EntitlementEventPublisher,
    cfg: Settings = settings,
    clock: Callable[[], datetime] = utcnow,
    session: Optional[AsyncSession] = None,
) -> Services:
    """Every component gets its collaborators and knobs here; nothing below reads the environment."""
    default_role = EntitlementRole(cfg.DEFAULT_ENTITLEMENT_ROLE)
    reconciler = BillingEventReconciler(
        entitlements=entitlements,
        products=products,
        dunning=dunning_store,
        publisher=publisher,
        default_role=default_role,
        renewal_tolerance=timedelta(seconds=cfg.RENEWAL_TOLERANCE_SECONDS),
        clock=clock,
    )
    dunning = DunningEventProcessor(
        dunning_store,
        publisher,
        on_suspended=reconciler.handle_revocation,
        clock=clock,
    )
    return Services(
        entitlements=entitlements,
        dunning_store=dunning_store,
        products=products,
        processed=processed,
        trials=trials,
        publisher=publisher,
        reconciler=reconciler,
        dunning=dunning,
        billing=BillingEventService(reconciler=reconciler, dunning=dunning, processed=processed),
        usage=UsageEventProcessor(entitlements, processed=processed, clock=clock),
        queries=EntitlementQueries(entitlements, clock=clock),
        billing_issue=GetBillingIssue(dunning),
        start_trial=StartTrial(
            trials=trials,
            products=products,
            entitlements=entitlements,
            publisher=publisher,
            default_duration=timedelta(hours=cfg.TRIAL_DURATION_HOURS),
            default_role=default_role,
            clock=clock,
        ),
        trial_status=CheckTrialStatus(trials, clock=clock),
        session=session,
    )


@lru_cache(maxsize=1)
def _publisher_singleton() -> EntitlementEventPublisher:
    if settings.EVENT_PUBLISHER_BACKEND == "http":
        transport = HttpTransport(settings.EVENT_PUBLISHER_URL, timeout=settings.EVENT_PUBLISHER_TIMEOUT)
    else:
        transport = MemoryTransport()
    return EntitlementEventPublisher(transport)


@dataclass(frozen=True)
class _MemoryStores:
    entitlements: InMemoryEntitlementStore
    dunning_store: InMemoryDunningStore
    products: InMemoryProductCatalog
    processed: InMemoryProcessedEventStore
    trials: InMemoryTrialStore


@lru_cache(maxsize=1)
def _memory_stores() -> _MemoryStores:
    # process-local stores for STORE_BACKEND=memory (local runs only)
    return _MemoryStores(
        entitlements=InMemoryEntitlementStore(),
        dunning_store=InMemoryDunningStore(),
        products=(
            InMemoryProductCatalog.from_file(settings.PRODUCT_CATALOG_FILE)
            if settings.PRODUCT_CATALOG_FILE
            else InMemoryProductCatalog()
        ),
        processed=InMemoryProcessedEventStore(ttl_days=settings.PROCESSED_EVENT_TTL_DAYS),
        trials=InMemoryTrialStore(),
    )


def _memory_services() -> Services:
    # stores are shared; the publisher buffer belongs to this unit of work
    stores = _memory_stores()
    return build_services(
        entitlements=stores.entitlements,
        dunning_store=stores.dunning_store,
        products=stores.products,
        processed=stores.processed,
        trials=stores.trials,
        publisher=_publisher_singleton().for_unit_of_work(),
    )


def _sql_services(session: AsyncSession) -> Services:
    return build_services(
        entitlements=EntitlementRepo(session),
        dunning_store=DunningRepo(session),
        products=ProductRepo(session),
        processed=ProcessedEventRepo(session, ttl_days=settings.PROCESSED_EVENT_TTL_DAYS),
        trials=TrialRepo(session),
        publisher=_publisher_singleton().for_unit_of_work(),
        session=session,
    )


async def get_services(db: AsyncSession = Depends(get_db)) -> Services:
    if settings.STORE_BACKEND == "memory":
        return _memory_services()
    return _sql_services(db)


@asynccontextmanager
async def services_scope() -> AsyncIterator[Services]:
    """One unit of work per queue message, each with its own session."""
    if settings.STORE_BACKEND == "memory":
        yield _memory_services()
        return
    async with SessionLocal() as session:
        yield _sql_services(session)


def get_services_scope():
    return services_scope
