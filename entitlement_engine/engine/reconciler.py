from __future__ import annotations
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Callable, Awaitable

import structlog

from entitlement_engine.domain.dunning import DunningState
from entitlement_engine.domain.entitlement import Entitlement
from entitlement_engine.domain.errors import NotFoundError, EventValidationError
from entitlement_engine.domain.events import (
    BillingEvent,
    EntitlementEventPayload,
    EventMeta,
    UsageLimitView,
    SubscriptionCreated,
    SubscriptionUpdated,
    SubscriptionCanceled,
    SubscriptionExpired,
    SubscriptionPaused,
    SubscriptionResumed,
    PaymentSuccessful,
    PaymentFailed,
    PaymentActionRequired,
)
from entitlement_engine.domain.keys import EntitlementRole, EntitlementStatus
from entitlement_engine.domain.product import ProductDefinition
from entitlement_engine.domain.timeutil import utcnow, iso
from entitlement_engine.engine.dunning import DunningStateMachine
from entitlement_engine.engine.limits import SyncProductLimits
from entitlement_engine.publishing.publisher import EntitlementEventPublisher
from entitlement_engine.stores.types import EntitlementStore, DunningStore, ProductCatalog

log = structlog.get_logger(__name__)

WILDCARD_KEY = "*"
NON_PAYMENT = "non_payment"


def is_renewal(
    previous_expires_at: Optional[datetime],
    new_period_start: datetime,
    tolerance: timedelta = timedelta(seconds=1),
) -> bool:
    """
    A subscription update starts a new billing period when its period start is at or after the
    stored expiry, allowing `tolerance` of clock skew between the two.
    """
    if previous_expires_at is None:
        return False
    return new_period_start - previous_expires_at >= -tolerance


class BillingEventReconciler:
    """
    Applies billing lifecycle events to a user's entitlement set.

    Re-applying an event converges to the same state: grants are create-or-update, add-on limits
    are keyed by add-on product, and revocation is a status change. Payment failures belong to
    the dunning processor and are skipped here.
    """

    def __init__(
        self,
        *,
        entitlements: EntitlementStore,
        products: ProductCatalog,
        dunning: DunningStore,
        publisher: EntitlementEventPublisher,
        default_role: EntitlementRole = EntitlementRole.LEARNER,
        renewal_tolerance: timedelta = timedelta(seconds=1),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.entitlements = entitlements
        self.products = products
        self.dunning = dunning
        self.publisher = publisher
        self.default_role = default_role
        self.renewal_tolerance = renewal_tolerance
        self.clock = clock
        self.limits = SyncProductLimits(entitlements)

    async def handle(self, event: BillingEvent) -> None:
        match event:
            case PaymentFailed() | PaymentActionRequired():
                log.info("billing.skipped", event_type=event.type, reason="handled_by_dunning")
            case SubscriptionCreated():
                await self._on_created(event)
            case SubscriptionUpdated():
                await self._on_updated(event)
            case SubscriptionCanceled():
                await self._on_canceled(event)
            case SubscriptionExpired():
                await self._on_expired(event)
            case SubscriptionPaused():
                # access is kept while paused; counters simply stop being reset by renewals
                log.info("billing.paused", user_id=event.payload.userId, product_id=event.payload.productId)
            case SubscriptionResumed():
                await self._on_resumed(event)
            case PaymentSuccessful():
                await self._on_payment_successful(event)
            case _:
                raise EventValidationError(f"Unsupported billing event type '{getattr(event, 'type', None)}'")

    # ---------------- handlers ----------------

    async def _on_created(self, event: SubscriptionCreated) -> None:
        p = event.payload
        now = self.clock()
        product = await self._require_product(p.productId)

        keys = await self._grant_product(p.userId, product, expires_at=p.currentPeriodEnd, renewal=False, now=now)
        keys += await self._grant_addons(p.userId, product, expires_at=p.currentPeriodEnd, renewal=False, now=now)

        await self._publish(
            p.userId, keys, self.publisher.publish_created,
            reason=event.type, meta=event.meta, product_id=p.productId, subscription_id=p.subscriptionId,
        )

    async def _on_updated(self, event: SubscriptionUpdated) -> None:
        p = event.payload
        now = self.clock()
        product = await self._require_product(p.productId)

        # compared against the stored expiry, so it must run before the grant overwrites it
        renewal = await self._detect_renewal(p.userId, product, p.currentPeriodStart)

        dropped: List[str] = []
        if p.previousProductId and p.previousProductId != p.productId:
            log.info(
                "billing.product_switched",
                user_id=p.userId,
                from_product=p.previousProductId,
                to_product=p.productId,
            )
            previous = await self._require_product(p.previousProductId)
            # a deliberate plan change drops the old grants regardless of dunning state
            dropped = await self._revoke_product(p.userId, previous, at=None)

        keys = await self._grant_product(p.userId, product, expires_at=p.currentPeriodEnd, renewal=renewal, now=now)
        keys += await self._grant_addons(p.userId, product, expires_at=p.currentPeriodEnd, renewal=renewal, now=now)

        await self._publish(
            p.userId, keys, self.publisher.publish_updated,
            reason=event.type, meta=event.meta, product_id=p.productId, subscription_id=p.subscriptionId,
        )
        still_dropped = [k for k in dropped if k not in keys]
        if still_dropped:
            await self._publish(
                p.userId, still_dropped, self.publisher.publish_revoked,
                reason=event.type, meta=event.meta,
                product_id=p.previousProductId, subscription_id=p.subscriptionId,
            )

    async def _on_canceled(self, event: SubscriptionCanceled) -> None:
        p = event.payload
        now = self.clock()
        if not await self._revocation_permitted(p.userId, now):
            return
        product = await self._require_product(p.productId)
        at = p.currentPeriodEnd if p.cancelAtPeriodEnd else None
        keys = await self._revoke_product(p.userId, product, at=at)
        await self._publish(
            p.userId, keys, self.publisher.publish_revoked,
            reason=event.type, meta=event.meta, product_id=p.productId, subscription_id=p.subscriptionId,
        )

    async def _on_expired(self, event: SubscriptionExpired) -> None:
        p = event.payload
        now = self.clock()
        if not await self._revocation_permitted(p.userId, now):
            return
        product = await self._require_product(p.productId)
        keys = await self._revoke_product(p.userId, product, at=None)
        await self._publish(
            p.userId, keys, self.publisher.publish_revoked,
            reason=event.type, meta=event.meta, product_id=p.productId, subscription_id=p.subscriptionId,
        )

    async def _on_resumed(self, event: SubscriptionResumed) -> None:
        p = event.payload
        now = self.clock()
        product = await self._require_product(p.productId)
        keys = await self._grant_product(p.userId, product, expires_at=p.currentPeriodEnd, renewal=False, now=now)
        await self._publish(
            p.userId, keys, self.publisher.publish_updated,
            reason=event.type, meta=event.meta, product_id=p.productId, subscription_id=p.subscriptionId,
        )

    async def _on_payment_successful(self, event: PaymentSuccessful) -> None:
        p = event.payload
        if not p.productId:
            log.info("billing.payment_without_product", user_id=p.userId, payment_intent_id=p.paymentIntentId)
            return
        now = self.clock()
        product = await self._require_product(p.productId)
        # one-off purchase: no expiry of its own, never a renewal
        keys = await self._grant_product(p.userId, product, expires_at=None, renewal=False, now=now)
        await self._publish(
            p.userId, keys, self.publisher.publish_created,
            reason=event.type, meta=event.meta, product_id=p.productId, subscription_id=p.subscriptionId,
        )

    async def revoke_for_non_payment(self, user_id: str, *, meta: Optional[EventMeta] = None) -> int:
        """
        Handles the wildcard revocation raised when dunning reaches SUSPENDED. The stored dunning
        record is re-read first, so a revocation that arrives after the user paid is ignored.
        """
        now = self.clock()
        record = await self.dunning.find_by_user_id(user_id)
        if record is None or DunningStateMachine.next_state(record, now) != DunningState.SUSPENDED:
            log.info(
                "billing.non_payment_revocation_ignored",
                user_id=user_id,
                dunning_state=record.state.value if record else None,
            )
            return 0

        revoked = 0
        for entitlement in await self.entitlements.find_by_user(user_id):
            if entitlement.status != EntitlementStatus.ACTIVE:
                continue
            entitlement.revoke()
            await self.entitlements.update(entitlement)
            revoked += 1
        log.info(
            "billing.non_payment_revoked",
            user_id=user_id,
            revoked=revoked,
            event_id=meta.eventId if meta else None,
        )
        return revoked

    async def handle_revocation(self, payload: EntitlementEventPayload, meta: Optional[EventMeta] = None) -> int:
        if payload.entitlementKey != WILDCARD_KEY or payload.reason != NON_PAYMENT:
            log.info("billing.revocation_ignored", user_id=payload.userId, entitlement_key=payload.entitlementKey)
            return 0
        return await self.revoke_for_non_payment(payload.userId, meta=meta)

    # ---------------- helpers ----------------

    async def _require_product(self, product_id: str) -> ProductDefinition:
        product = await self.products.find_by_id(product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found")
        return product

    async def _detect_renewal(self, user_id: str, product: ProductDefinition, new_period_start: datetime) -> bool:
        for key in product.entitlements:
            entitlement = await self.entitlements.find_by_user_and_key(user_id, key)
            if entitlement is None or entitlement.expires_at is None:
                continue
            if is_renewal(entitlement.expires_at, new_period_start, self.renewal_tolerance):
                log.info(
                    "billing.renewal_detected",
                    user_id=user_id,
                    new_period_start=iso(new_period_start),
                    previous_expires_at=iso(entitlement.expires_at),
                )
                return True
        return False

    async def _grant_product(
        self,
        user_id: str,
        product: ProductDefinition,
        *,
        expires_at: Optional[datetime],
        renewal: bool,
        now: datetime,
        is_addon: bool = False,
    ) -> List[str]:
        granted: List[str] = []
        for key in product.entitlements:
            existing = await self.entitlements.find_by_user_and_key(user_id, key)
            if existing is None:
                await self.entitlements.save(
                    Entitlement.grant(
                        user_id=user_id,
                        key=key,
                        role=self.default_role,
                        now=now,
                        expires_at=expires_at,
                    )
                )
                log.info("billing.entitlement_granted", user_id=user_id, entitlement_key=key, product_id=product.product_id)
            else:
                existing.activate(expires_at)
                self._roll_usage(existing, renewal=renewal, period_end=expires_at, now=now)
                await self.entitlements.update(existing)
            granted.append(key)

        await self.limits.execute(user_id=user_id, product=product, now=now, is_addon=is_addon)
        return granted

    async def _grant_addons(
        self,
        user_id: str,
        product: ProductDefinition,
        *,
        expires_at: Optional[datetime],
        renewal: bool,
        now: datetime,
    ) -> List[str]:
        granted: List[str] = []
        for addon_id in product.addon_product_ids():
            addon = await self.products.find_by_id(addon_id)
            if addon is None:
                log.warning("billing.addon_missing", user_id=user_id, product_id=product.product_id, addon_id=addon_id)
                continue
            granted += await self._grant_product(
                user_id, addon, expires_at=expires_at, renewal=renewal, now=now, is_addon=True,
            )
        return granted

    @staticmethod
    def _roll_usage(entitlement: Entitlement, *, renewal: bool, period_end: Optional[datetime], now: datetime) -> None:
        counter = entitlement.usage
        if counter is None:
            return
        strategy = counter.reset_strategy
        if renewal and strategy is not None and strategy.is_billing_cycle:
            counter.reset(now)
            if period_end is not None:
                counter.schedule_reset(period_end)
            log.info(
                "billing.cycle_reset",
                user_id=entitlement.user_id,
                entitlement_key=entitlement.key.value,
                next_reset_at=iso(counter.reset_at),
            )
        elif entitlement.reset_usage_if_due(now):
            log.info("billing.periodic_reset", user_id=entitlement.user_id, entitlement_key=entitlement.key.value)

    async def _revocation_permitted(self, user_id: str, now: datetime) -> bool:
        record = await self.dunning.find_by_user_id(user_id)
        if DunningStateMachine.permits_revocation(record, now):
            return True
        log.info(
            "billing.revocation_deferred",
            user_id=user_id,
            dunning_state=DunningStateMachine.next_state(record, now).value,
            days_since_detection=record.days_since_detection(now),
        )
        return False

    async def _revoke_product(
        self,
        user_id: str,
        product: ProductDefinition,
        *,
        at: Optional[datetime],
    ) -> List[str]:
        """
        `at` schedules expiry at period end and keeps the grant active until then;
        None revokes immediately. Add-on products are handled the same way.
        """
        affected = await self._revoke_keys(user_id, product.entitlements, at=at)
        for addon_id in product.addon_product_ids():
            addon = await self.products.find_by_id(addon_id)
            if addon is None:
                log.warning("billing.addon_missing", user_id=user_id, product_id=product.product_id, addon_id=addon_id)
                continue
            affected += await self._revoke_keys(user_id, addon.entitlements, at=at)
            if at is None:
                await self._drop_addon_limits(user_id, addon)
        log.info(
            "billing.revoked" if at is None else "billing.expiry_scheduled",
            user_id=user_id,
            product_id=product.product_id,
            entitlement_keys=affected,
        )
        return affected

    async def _revoke_keys(self, user_id: str, keys: List[str], *, at: Optional[datetime]) -> List[str]:
        affected: List[str] = []
        for key in keys:
            entitlement = await self.entitlements.find_by_user_and_key(user_id, key)
            if entitlement is None:
                continue
            if at is None:
                entitlement.revoke()
            else:
                entitlement.schedule_expiry(at)
            await self.entitlements.update(entitlement)
            affected.append(key)
        return affected

    async def _drop_addon_limits(self, user_id: str, addon: ProductDefinition) -> None:
        for usage_limit in addon.usage_limits:
            entitlement = await self.entitlements.find_by_user_and_key(user_id, usage_limit.metric)
            if entitlement is None or entitlement.usage is None:
                continue
            entitlement.usage.drop_addon(addon.product_id)
            await self.entitlements.update(entitlement)

    async def _publish(
        self,
        user_id: str,
        keys: List[str],
        send: Callable[[EntitlementEventPayload, EventMeta], Awaitable[bool]],
        *,
        reason: str,
        meta: EventMeta,
        product_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> None:
        if not keys:
            return
        current: Dict[str, Entitlement] = {e.key.value: e for e in await self.entitlements.find_by_user(user_id)}
        for key in dict.fromkeys(keys):
            entitlement = current.get(key)
            if entitlement is None:
                continue
            await send(to_event_payload(entitlement, reason=reason, product_id=product_id, subscription_id=subscription_id), meta)


def to_event_payload(
    entitlement: Entitlement,
    *,
    reason: str,
    product_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
) -> EntitlementEventPayload:
    usage = entitlement.usage
    return EntitlementEventPayload(
        userId=entitlement.user_id,
        entitlementKey=entitlement.key.value,
        role=entitlement.role.value,
        status="active" if entitlement.status == EntitlementStatus.ACTIVE else "inactive",
        expiresAt=iso(entitlement.expires_at),
        usageLimit=UsageLimitView(limit=usage.effective_limit(), used=usage.used) if usage else None,
        productId=product_id,
        subscriptionId=subscription_id,
        reason=reason,
    )
