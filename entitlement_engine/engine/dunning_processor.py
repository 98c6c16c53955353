from __future__ import annotations
from datetime import datetime
from typing import Optional, Callable, Awaitable, Any

import structlog

from entitlement_engine.domain.dunning import DunningRecord, DunningState
from entitlement_engine.domain.events import (
    BillingEvent,
    EntitlementEventPayload,
    EventMeta,
    PaymentFailed,
    PaymentActionRequired,
    PaymentSuccessful,
    SubscriptionUpdated,
)
from entitlement_engine.domain.timeutil import utcnow
from entitlement_engine.engine.dunning import DunningStateMachine, DunningTransition, BillingIssue
from entitlement_engine.engine.reconciler import WILDCARD_KEY, NON_PAYMENT
from entitlement_engine.publishing.publisher import EntitlementEventPublisher
from entitlement_engine.stores.types import DunningStore

log = structlog.get_logger(__name__)

SuspensionHandler = Callable[[EntitlementEventPayload, EventMeta], Awaitable[Any]]


class DunningEventProcessor:
    """
    Keeps each user's DunningRecord in step with payment events and elapsed time.

    On reaching SUSPENDED it emits a wildcard entitlement.revoked (reason non_payment) and,
    when wired in-process, hands the same event to `on_suspended` before the new state is saved.
    A failure there leaves the record unsaved so the next tick retries the suspension.
    """

    def __init__(
        self,
        dunning: DunningStore,
        publisher: EntitlementEventPublisher,
        *,
        on_suspended: Optional[SuspensionHandler] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.dunning = dunning
        self.publisher = publisher
        self.on_suspended = on_suspended
        self.clock = clock

    async def handle(self, event: BillingEvent) -> None:
        match event:
            case PaymentFailed() | PaymentActionRequired():
                await self._open_issue(event)
            case PaymentSuccessful():
                await self._resolve(event.payload.userId, cause=event.type)
            case SubscriptionUpdated() if event.payload.status == "active":
                await self._resolve(event.payload.userId, cause=event.type)
            case _:
                log.debug("dunning.ignored", event_type=event.type)

    async def _open_issue(self, event: PaymentFailed | PaymentActionRequired) -> None:
        p = event.payload
        now = self.clock()
        existing = await self.dunning.find_by_user_id(p.userId)
        record = DunningStateMachine.record_new_issue(
            existing,
            user_id=p.userId,
            now=now,
            portal_url=p.portalUrl,
            expires_at=p.expiresAt,
            payment_intent_id=p.paymentIntentId,
            invoice_id=p.invoiceId,
            subscription_id=p.subscriptionId,
            failure_code=p.failureCode,
            failure_reason=p.failureReason,
        )
        await self.dunning.save(record)
        log.info(
            "dunning.issue_recorded",
            user_id=p.userId,
            event_type=event.type,
            reopened=existing is not None,
            payment_intent_id=p.paymentIntentId,
        )

    async def _resolve(self, user_id: str, *, cause: str) -> None:
        record = await self.dunning.find_by_user_id(user_id)
        if record is None or record.state == DunningState.OK:
            return
        previous = record.state
        DunningStateMachine.resolve(record, self.clock())
        await self.dunning.save(record)
        log.info("dunning.resolved", user_id=user_id, from_state=previous.value, cause=cause)

    async def process_state_transitions(self, user_id: str) -> Optional[DunningTransition]:
        """Scheduled tick for one user."""
        record = await self.dunning.find_by_user_id(user_id)
        if record is None or record.state == DunningState.OK:
            return None
        return await self.advance(record)

    async def advance(self, record: DunningRecord) -> Optional[DunningTransition]:
        transition = DunningStateMachine.apply_transition(record, self.clock())
        if transition is None:
            return None
        if transition.suspends:
            await self._suspend(record.user_id)
        await self.dunning.save(record)
        log.info(
            "dunning.transitioned",
            user_id=record.user_id,
            from_state=transition.from_state.value,
            to_state=transition.to_state.value,
        )
        return transition

    async def _suspend(self, user_id: str) -> None:
        payload = EntitlementEventPayload(
            userId=user_id,
            entitlementKey=WILDCARD_KEY,
            status="inactive",
            reason=NON_PAYMENT,
        )
        meta = self.publisher.internal_meta(prefix="dunning", user_id=user_id)
        await self.publisher.publish_revoked(payload, meta)
        if self.on_suspended is not None:
            await self.on_suspended(payload, meta)


class GetBillingIssue:
    """
    Billing-health query. A transition that has come due since the last tick is applied
    (and persisted) before answering, so the reported state is never stale.
    """

    def __init__(self, processor: DunningEventProcessor):
        self.processor = processor

    async def execute(self, user_id: str) -> BillingIssue:
        record = await self.processor.dunning.find_by_user_id(user_id)
        if record is not None and record.state != DunningState.OK:
            await self.processor.advance(record)
        return DunningStateMachine.billing_issue(record, self.processor.clock())
