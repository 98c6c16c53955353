from __future__ import annotations
from typing import Optional

import structlog

from entitlement_engine.domain.events import BillingEvent, PaymentSuccessful
from entitlement_engine.engine.dunning_processor import DunningEventProcessor
from entitlement_engine.engine.reconciler import BillingEventReconciler
from entitlement_engine.stores.types import ProcessedEventStore

log = structlog.get_logger(__name__)


def payment_dedupe_key(payment_intent_id: str) -> str:
    return f"PAYMENT#{payment_intent_id}"


class BillingEventService:
    """
    Fans one billing event out to the dunning processor, then the reconciler.

    Successful payments are deduplicated by payment intent; the key is written only after both
    consumers succeeded, so a failed attempt is re-applied on redelivery. Payment failures are
    not deduplicated: a repeated failure on the same intent is a new billing problem and restarts
    the dunning timeline. Subscription events converge when re-applied.
    """

    def __init__(
        self,
        *,
        reconciler: BillingEventReconciler,
        dunning: DunningEventProcessor,
        processed: Optional[ProcessedEventStore] = None,
    ):
        self.reconciler = reconciler
        self.dunning = dunning
        self.processed = processed

    async def handle(self, event: BillingEvent) -> bool:
        """Returns False when the event was a duplicate and nothing was applied."""
        dedupe = None
        if isinstance(event, PaymentSuccessful):
            dedupe = payment_dedupe_key(event.payload.paymentIntentId)

        if dedupe and self.processed is not None and await self.processed.is_processed(dedupe):
            log.info("billing.duplicate", event_type=event.type, dedupe_key=dedupe)
            return False

        await self.dunning.handle(event)
        await self.reconciler.handle(event)

        if dedupe and self.processed is not None:
            await self.processed.mark_processed(dedupe)
        return True
