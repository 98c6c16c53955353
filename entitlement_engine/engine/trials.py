from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, List, Callable

import structlog

from entitlement_engine.domain.entitlement import Entitlement
from entitlement_engine.domain.errors import DomainError, NotFoundError, TrialAlreadyUsed
from entitlement_engine.domain.keys import EntitlementRole
from entitlement_engine.domain.timeutil import utcnow, iso
from entitlement_engine.domain.trial import TrialRecord, TrialStatus
from entitlement_engine.engine.limits import SyncProductLimits
from entitlement_engine.engine.reconciler import to_event_payload
from entitlement_engine.publishing.publisher import EntitlementEventPublisher
from entitlement_engine.stores.types import EntitlementStore, ProductCatalog, TrialStore

log = structlog.get_logger(__name__)

TRIAL_STARTED = "trial.started"


@dataclass(frozen=True)
class TrialStarted:
    trial_id: str
    expires_at: datetime
    entitlement_keys: List[str]


@dataclass(frozen=True)
class TrialStatusView:
    has_trialed: bool
    trial: Optional[TrialRecord] = None
    is_active: bool = False


class StartTrial:
    """
    Grants a product's entitlements for a limited time, once per (user, product).

    Existing grants are re-activated but never shortened. Usage limits are synced the same
    way a subscription sync does it.
    """

    def __init__(
        self,
        *,
        trials: TrialStore,
        products: ProductCatalog,
        entitlements: EntitlementStore,
        publisher: EntitlementEventPublisher,
        default_duration: timedelta = timedelta(hours=3),
        default_role: EntitlementRole = EntitlementRole.LEARNER,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.trials = trials
        self.products = products
        self.entitlements = entitlements
        self.publisher = publisher
        self.default_duration = default_duration
        self.default_role = default_role
        self.clock = clock
        self.limits = SyncProductLimits(entitlements)

    async def execute(
        self,
        user_id: str,
        product_id: str,
        *,
        duration: Optional[timedelta] = None,
        role: Optional[EntitlementRole] = None,
    ) -> TrialStarted:
        if await self.trials.find_by_user_and_product(user_id, product_id) is not None:
            raise TrialAlreadyUsed(user_id=user_id, product_id=product_id)

        product = await self.products.find_by_id(product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found")
        if not product.is_active:
            raise DomainError(f"Product {product_id} is not active and cannot be trialed")

        duration = duration or self.default_duration
        if duration <= timedelta(0):
            raise DomainError("Trial duration must be positive")

        now = self.clock()
        trial = TrialRecord(
            user_id=user_id,
            product_id=product_id,
            started_at=now,
            expires_at=now + duration,
        )
        await self.trials.save(trial)

        role = role or self.default_role
        for key in product.entitlements:
            existing = await self.entitlements.find_by_user_and_key(user_id, key)
            if existing is None:
                await self.entitlements.save(
                    Entitlement.grant(user_id=user_id, key=key, role=role, now=now, expires_at=trial.expires_at)
                )
            else:
                existing.activate_until_at_least(trial.expires_at, now=now)
                await self.entitlements.update(existing)

        await self.limits.execute(user_id=user_id, product=product, now=now)

        meta = self.publisher.internal_meta(prefix="trial", user_id=user_id)
        held = {e.key.value: e for e in await self.entitlements.find_by_user(user_id)}
        for key in dict.fromkeys(product.entitlements):
            entitlement = held.get(key)
            if entitlement is not None:
                await self.publisher.publish_created(
                    to_event_payload(entitlement, reason=TRIAL_STARTED, product_id=product_id),
                    meta,
                )

        log.info(
            "trial.started",
            user_id=user_id,
            product_id=product_id,
            expires_at=iso(trial.expires_at),
            entitlement_keys=product.entitlements,
        )
        return TrialStarted(
            trial_id=trial.trial_id,
            expires_at=trial.expires_at,
            entitlement_keys=list(product.entitlements),
        )


class CheckTrialStatus:
    """A lapsed trial is marked expired the first time it is looked at."""

    def __init__(self, trials: TrialStore, *, clock: Callable[[], datetime] = utcnow):
        self.trials = trials
        self.clock = clock

    async def execute(self, user_id: str, product_id: str) -> TrialStatusView:
        trial = await self.trials.find_by_user_and_product(user_id, product_id)
        if trial is None:
            return TrialStatusView(has_trialed=False)
        now = self.clock()
        if trial.status == TrialStatus.ACTIVE and trial.is_expired(now):
            trial.mark_expired()
            await self.trials.update(trial)
            log.info("trial.expired", user_id=user_id, product_id=product_id)
        return TrialStatusView(has_trialed=True, trial=trial, is_active=trial.is_active(now))
