from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Dict, Any

from entitlement_engine.domain.timeutil import parse_iso, iso

ONE_DAY = timedelta(days=1)


class DunningState(str, Enum):
    """
    Timeline, in days since the issue was detected:
      ACTION_REQUIRED (0)  full access
      GRACE_PERIOD    (1-3) full access, reminders
      RESTRICTED      (4-7) premium features disabled
      SUSPENDED       (8+)  access revoked, recoverable
      OK              no billing issue
    """
    OK = "ok"
    ACTION_REQUIRED = "action_required"
    GRACE_PERIOD = "grace_period"
    RESTRICTED = "restricted"
    SUSPENDED = "suspended"


@dataclass
class DunningRecord:
    user_id: str
    state: DunningState
    detected_at: datetime
    last_updated_at: datetime
    portal_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    payment_intent_id: Optional[str] = None
    invoice_id: Optional[str] = None
    subscription_id: Optional[str] = None
    failure_code: Optional[str] = None
    failure_reason: Optional[str] = None

    @classmethod
    def open(cls, *, user_id: str, now: datetime, **details: Any) -> "DunningRecord":
        record = cls(
            user_id=user_id,
            state=DunningState.ACTION_REQUIRED,
            detected_at=now,
            last_updated_at=now,
        )
        record._overlay(details)
        return record

    def days_since_detection(self, now: datetime) -> int:
        return (now - self.detected_at) // ONE_DAY

    def reopen_issue(self, *, now: datetime, **details: Any) -> None:
        """
        A new billing problem restarts the whole timeline, whatever the current state.
        """
        self.state = DunningState.ACTION_REQUIRED
        self.detected_at = now
        self.last_updated_at = now
        self._overlay(details)

    def advance_to(self, state: DunningState, *, now: datetime) -> None:
        self.state = state
        self.last_updated_at = now

    def resolve(self, *, now: datetime) -> None:
        self.state = DunningState.OK
        self.last_updated_at = now
        self.portal_url = None
        self.expires_at = None
        self.failure_code = None
        self.failure_reason = None

    def _overlay(self, details: Dict[str, Any]) -> None:
        for name in (
            "portal_url",
            "expires_at",
            "payment_intent_id",
            "invoice_id",
            "subscription_id",
            "failure_code",
            "failure_reason",
        ):
            value = details.get(name)
            if value is not None:
                setattr(self, name, value)

    # ---------- mapping ----------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "state": self.state.value,
            "portalUrl": self.portal_url,
            "expiresAt": iso(self.expires_at),
            "detectedAt": iso(self.detected_at),
            "lastUpdatedAt": iso(self.last_updated_at),
            "paymentIntentId": self.payment_intent_id,
            "invoiceId": self.invoice_id,
            "subscriptionId": self.subscription_id,
            "failureCode": self.failure_code,
            "failureReason": self.failure_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DunningRecord":
        return cls(
            user_id=data["userId"],
            state=DunningState(data["state"]),
            detected_at=parse_iso(data["detectedAt"]),
            last_updated_at=parse_iso(data["lastUpdatedAt"]),
            portal_url=data.get("portalUrl"),
            expires_at=parse_iso(data.get("expiresAt")),
            payment_intent_id=data.get("paymentIntentId"),
            invoice_id=data.get("invoiceId"),
            subscription_id=data.get("subscriptionId"),
            failure_code=data.get("failureCode"),
            failure_reason=data.get("failureReason"),
        )
