from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, List, Tuple

from entitlement_engine.domain.dunning import DunningRecord, DunningState

# state -> (days since detection required to leave it, state it moves to)
TIMELINE: Dict[DunningState, Tuple[int, DunningState]] = {
    DunningState.ACTION_REQUIRED: (1, DunningState.GRACE_PERIOD),
    DunningState.GRACE_PERIOD: (4, DunningState.RESTRICTED),
    DunningState.RESTRICTED: (8, DunningState.SUSPENDED),
}

RESTRICTED_AT_DAY = TIMELINE[DunningState.GRACE_PERIOD][0]
SUSPENDED_AT_DAY = TIMELINE[DunningState.RESTRICTED][0]

# States during which access is preserved despite an open billing issue
GRACE_STATES = frozenset(
    {DunningState.ACTION_REQUIRED, DunningState.GRACE_PERIOD, DunningState.RESTRICTED}
)


@dataclass(frozen=True)
class DunningTransition:
    user_id: str
    from_state: DunningState
    to_state: DunningState

    @property
    def suspends(self) -> bool:
        return self.to_state == DunningState.SUSPENDED


@dataclass(frozen=True)
class BillingIssue:
    has_issue: bool
    state: DunningState
    message: str
    days_since_detection: int
    actions: List[str] = field(default_factory=list)
    portal_url: Optional[str] = None
    expires_at: Optional[datetime] = None


NO_ISSUE_MESSAGE = "No billing issues"


class DunningStateMachine:
    """
    Pure elapsed-time transitions over a DunningRecord.

    Side effects of reaching SUSPENDED (revoking entitlements, publishing) belong to the caller.
    """

    @staticmethod
    def next_state(record: DunningRecord, now: datetime) -> DunningState:
        step = TIMELINE.get(record.state)
        if step is None:
            # OK and SUSPENDED never advance on their own
            return record.state
        threshold, target = step
        return target if record.days_since_detection(now) >= threshold else record.state

    @classmethod
    def should_transition(cls, record: DunningRecord, now: datetime) -> bool:
        return cls.next_state(record, now) != record.state

    @classmethod
    def apply_transition(cls, record: DunningRecord, now: datetime) -> Optional[DunningTransition]:
        target = cls.next_state(record, now)
        if target == record.state:
            return None
        transition = DunningTransition(user_id=record.user_id, from_state=record.state, to_state=target)
        record.advance_to(target, now=now)
        return transition

    @staticmethod
    def record_new_issue(
        record: Optional[DunningRecord],
        *,
        user_id: str,
        now: datetime,
        portal_url: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        payment_intent_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        failure_code: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> DunningRecord:
        details = dict(
            portal_url=portal_url,
            expires_at=expires_at,
            payment_intent_id=payment_intent_id,
            invoice_id=invoice_id,
            subscription_id=subscription_id,
            failure_code=failure_code,
            failure_reason=failure_reason,
        )
        if record is None:
            return DunningRecord.open(user_id=user_id, now=now, **details)
        record.reopen_issue(now=now, **details)
        return record

    @staticmethod
    def resolve(record: DunningRecord, now: datetime) -> None:
        record.resolve(now=now)

    @classmethod
    def permits_revocation(cls, record: Optional[DunningRecord], now: datetime) -> bool:
        """
        Revocation for cancellation/expiry is held back while the user is inside the grace
        window. A due-but-unpersisted transition counts as already applied.
        """
        if record is None:
            return True
        return cls.next_state(record, now) not in GRACE_STATES

    # ---------- messaging ----------

    @staticmethod
    def message_for(state: DunningState, days_since: int) -> Tuple[str, List[str]]:
        if state == DunningState.ACTION_REQUIRED:
            return (
                "Payment action required. Please update your payment method to continue.",
                [
                    "Update your payment method using the portal link",
                    "Contact support if you need assistance",
                ],
            )
        if state == DunningState.GRACE_PERIOD:
            days_remaining = RESTRICTED_AT_DAY - days_since
            return (
                f"Payment issue detected. Please resolve within {days_remaining} day(s) "
                "to avoid service restrictions.",
                [
                    "Update your payment method using the portal link",
                    "Your account will be restricted if not resolved soon",
                ],
            )
        if state == DunningState.RESTRICTED:
            days_until_suspension = SUSPENDED_AT_DAY - days_since
            return (
                "Your account has been restricted due to payment issues. "
                f"Please resolve within {days_until_suspension} day(s) to avoid suspension.",
                [
                    "Update your payment method immediately using the portal link",
                    "Premium features are currently disabled",
                    "Your account will be suspended if not resolved",
                ],
            )
        if state == DunningState.SUSPENDED:
            return (
                "Your account has been suspended due to unresolved payment issues. "
                "Please update your payment method to restore access.",
                [
                    "Update your payment method using the portal link",
                    "Contact support to restore your account",
                    "Your account is recoverable - access will be restored once payment is resolved",
                ],
            )
        return NO_ISSUE_MESSAGE, []

    @classmethod
    def billing_issue(cls, record: Optional[DunningRecord], now: datetime) -> BillingIssue:
        if record is None or record.state == DunningState.OK:
            return BillingIssue(
                has_issue=False,
                state=DunningState.OK,
                message=NO_ISSUE_MESSAGE,
                days_since_detection=0,
            )
        days_since = record.days_since_detection(now)
        message, actions = cls.message_for(record.state, days_since)
        return BillingIssue(
            has_issue=True,
            state=record.state,
            message=message,
            days_since_detection=days_since,
            actions=actions,
            portal_url=record.portal_url,
            expires_at=record.expires_at,
        )
