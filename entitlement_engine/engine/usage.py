from __future__ import annotations
from datetime import datetime
from typing import Optional, Dict, Any, Callable

import structlog

from entitlement_engine.domain.entitlement import Entitlement
from entitlement_engine.domain.errors import NotFoundError, DomainError
from entitlement_engine.domain.events import UsageEvent
from entitlement_engine.domain.timeutil import utcnow
from entitlement_engine.stores.types import EntitlementStore, ProcessedEventStore

log = structlog.get_logger(__name__)


def usage_dedupe_key(idempotency_key: str) -> str:
    return f"USAGE#{idempotency_key}"


class UsageEventProcessor:
    """
    Applies one consumption event to one entitlement's usage counter.

    Order per event: load, check active, lazy reset (persisted), consume, persist.
    UsageExceeded propagates to the caller untouched.
    """

    def __init__(
        self,
        entitlements: EntitlementStore,
        *,
        processed: Optional[ProcessedEventStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.entitlements = entitlements
        self.processed = processed
        self.clock = clock

    async def execute(self, user_id: str, entitlement_key: str, amount: int = 1) -> Entitlement:
        now = self.clock()
        entitlement = await self.entitlements.find_by_user_and_key(user_id, entitlement_key)
        if entitlement is None:
            raise NotFoundError(f"Entitlement {entitlement_key} not found for user {user_id}")
        key = entitlement.key
        if not entitlement.is_active(now):
            raise NotFoundError(f"Entitlement {key.value} is inactive for user {user_id}")
        if entitlement.usage is None:
            raise DomainError(f"Entitlement {key.value} does not track usage")

        if entitlement.reset_usage_if_due(now):
            log.info("usage.reset", user_id=user_id, entitlement_key=key.value)
            await self.entitlements.update(entitlement)

        entitlement.usage.consume(amount)
        await self.entitlements.update(entitlement)
        log.info(
            "usage.consumed",
            user_id=user_id,
            entitlement_key=key.value,
            amount=amount,
            used=entitlement.usage.used,
            limit=entitlement.usage.effective_limit(),
        )
        return entitlement

    async def handle(self, event: UsageEvent) -> Optional[Entitlement]:
        """
        Queue entry point. Events carrying an idempotencyKey are applied at most once
        per retention window; duplicates return None.
        """
        dedupe = usage_dedupe_key(event.idempotencyKey) if event.idempotencyKey else None
        if dedupe and self.processed is not None and await self.processed.is_processed(dedupe):
            log.info("usage.duplicate", user_id=event.userId, idempotency_key=event.idempotencyKey)
            return None

        entitlement = await self.execute(event.userId, event.entitlementKey, event.amount)

        if dedupe and self.processed is not None:
            await self.processed.mark_processed(dedupe)
        return entitlement


class EntitlementQueries:
    """
    Read paths. Both apply a due reset (and persist it) before reporting usage.
    Values are {"limit", "used"} for metered entitlements and True otherwise.
    """

    def __init__(self, entitlements: EntitlementStore, *, clock: Callable[[], datetime] = utcnow):
        self.entitlements = entitlements
        self.clock = clock

    async def get_user_entitlements(self, user_id: str) -> Dict[str, Any]:
        now = self.clock()
        out: Dict[str, Any] = {}
        for entitlement in await self.entitlements.find_by_user(user_id):
            if not entitlement.is_active(now):
                continue
            if entitlement.reset_usage_if_due(now):
                await self.entitlements.update(entitlement)
            out[entitlement.key.value] = entitlement.usage_view()
        return out

    async def get_user_entitlement_by_key(self, user_id: str, entitlement_key: str) -> Dict[str, Any]:
        now = self.clock()
        entitlement = await self.entitlements.find_by_user_and_key(user_id, entitlement_key)
        if entitlement is None or not entitlement.is_active(now):
            raise NotFoundError(f"Entitlement {entitlement_key} not found for user {user_id}")
        if entitlement.reset_usage_if_due(now):
            await self.entitlements.update(entitlement)
        return {entitlement.key.value: entitlement.usage_view()}
