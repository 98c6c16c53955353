from __future__ import annotations

from typing import Optional, Dict, List, Union
from pydantic import BaseModel, Field

from entitlement_engine.engine.dunning import BillingIssue
from entitlement_engine.engine.trials import TrialStatusView
from entitlement_engine.domain.timeutil import iso


# -------------------------
# Entitlements
# -------------------------
class UsageView(BaseModel):
    limit: int
    used: int


class EntitlementsResponse(BaseModel):
    userId: str
    # metered -> {limit, used}; plain grant -> true
    entitlements: Dict[str, Union[UsageView, bool]]


# -------------------------
# Billing issue
# -------------------------
class BillingIssueResponse(BaseModel):
    hasIssue: bool
    state: str
    message: str
    portalUrl: Optional[str] = None
    expiresAt: Optional[str] = None   # ISO8601 or None
    daysSinceDetection: int
    actions: List[str] = []

    @classmethod
    def from_issue(cls, issue: BillingIssue) -> "BillingIssueResponse":
        return cls(
            hasIssue=issue.has_issue,
            state=issue.state.value,
            message=issue.message,
            portalUrl=issue.portal_url,
            expiresAt=iso(issue.expires_at),
            daysSinceDetection=issue.days_since_detection,
            actions=list(issue.actions),
        )


# -------------------------
# Queue-style batches
# -------------------------
class QueueRecord(BaseModel):
    messageId: str = Field(..., min_length=1)
    body: str


class QueueBatchRequest(BaseModel):
    Records: List[QueueRecord] = []


class BatchItemFailure(BaseModel):
    itemIdentifier: str


class BatchResponse(BaseModel):
    batchItemFailures: List[BatchItemFailure] = []


# -------------------------
# Dunning tick
# -------------------------
class DunningTickRequest(BaseModel):
    userIds: Optional[List[str]] = None   # None -> every open dunning record, read page by page
    limit: int = Field(500, ge=1, le=5000)   # page size for the open-record scan


class DunningTransitionItem(BaseModel):
    userId: str
    fromState: str
    toState: str


class DunningTickResponse(BaseModel):
    checked: int
    transitions: List[DunningTransitionItem] = []
    failures: List[str] = []
    purgedProcessedEvents: int = 0


# -------------------------
# Trials
# -------------------------
class StartTrialRequest(BaseModel):
    productId: str = Field(..., min_length=1)
    trialDurationHours: Optional[float] = Field(None, gt=0, le=24 * 30)


class StartTrialResponse(BaseModel):
    trialId: str
    expiresAt: str
    entitlements: List[str] = []


class TrialView(BaseModel):
    startedAt: str
    expiresAt: str
    status: str
    isActive: bool


class TrialStatusResponse(BaseModel):
    productId: str
    hasTrialed: bool
    trial: Optional[TrialView] = None

    @classmethod
    def from_view(cls, product_id: str, view: TrialStatusView) -> "TrialStatusResponse":
        if view.trial is None:
            return cls(productId=product_id, hasTrialed=False)
        return cls(
            productId=product_id,
            hasTrialed=True,
            trial=TrialView(
                startedAt=iso(view.trial.started_at),
                expiresAt=iso(view.trial.expires_at),
                status=view.trial.status.value,
                isActive=view.is_active,
            ),
        )
