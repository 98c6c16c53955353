from __future__ import annotations
from datetime import datetime
from typing import List

import structlog

from entitlement_engine.domain.entitlement import Entitlement
from entitlement_engine.domain.product import ProductDefinition
from entitlement_engine.domain.usage import UsageCounter
from entitlement_engine.engine.strategies.base import ResetType
from entitlement_engine.engine.strategies.registry import strategy_for_usage_period, next_reset_at
from entitlement_engine.stores.types import EntitlementStore

log = structlog.get_logger(__name__)


class SyncProductLimits:
    """
    Writes a product's usage limits onto the user's existing entitlements.

    Base products overwrite the counter's limit; add-ons register their contribution under their
    own product id, so effective limits compose (base 100 + add-on 50 -> 150) and re-syncing
    either side leaves the other untouched. Entitlements the user does not hold are skipped;
    granting is the caller's job.
    """

    def __init__(self, entitlements: EntitlementStore):
        self.entitlements = entitlements

    async def execute(
        self,
        *,
        user_id: str,
        product: ProductDefinition,
        now: datetime,
        is_addon: bool = False,
    ) -> List[Entitlement]:
        held = {e.key.value: e for e in await self.entitlements.find_by_user(user_id)}
        touched: List[Entitlement] = []

        for usage_limit in product.usage_limits:
            entitlement = held.get(usage_limit.metric)
            if entitlement is None:
                continue

            just_reset = entitlement.reset_usage_if_due(now)
            if just_reset:
                log.info("limits.reset_before_sync", user_id=user_id, entitlement_key=usage_limit.metric)

            strategy = strategy_for_usage_period(usage_limit.period)
            counter = entitlement.usage

            if counter is None:
                reset_at = None
                if strategy is not None and strategy.type == ResetType.PERIODIC:
                    reset_at = next_reset_at(strategy, now)
                counter = UsageCounter(limit=0, reset_at=reset_at, reset_strategy=strategy)
                if is_addon:
                    counter.add_to_limit(usage_limit.limit, source=product.product_id)
                else:
                    counter.overwrite_limit(usage_limit.limit)
                entitlement.attach_usage(counter)
            else:
                if is_addon:
                    counter.add_to_limit(usage_limit.limit, source=product.product_id)
                else:
                    counter.overwrite_limit(usage_limit.limit)
                counter.adopt_strategy(strategy)

                current = counter.reset_strategy
                if current is not None and current.type == ResetType.PERIODIC:
                    # billing_cycle boundaries are set from the subscription period end
                    if not just_reset and not current.is_billing_cycle:
                        counter.schedule_reset(next_reset_at(current, now))
                else:
                    counter.schedule_reset(None)

            log.info(
                "limits.synced",
                user_id=user_id,
                product_id=product.product_id,
                entitlement_key=usage_limit.metric,
                addon=is_addon,
                effective_limit=counter.effective_limit(),
            )
            await self.entitlements.update(entitlement)
            touched.append(entitlement)

        return touched
