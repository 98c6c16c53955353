from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class TrialStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


@dataclass
class TrialRecord:
    """
    One trial of one product by one user. The record is kept after the trial ends, which is
    what limits every user to a single trial per product.
    """
    user_id: str
    product_id: str
    started_at: datetime
    expires_at: datetime
    status: TrialStatus = TrialStatus.ACTIVE

    @property
    def trial_id(self) -> str:
        return f"{self.user_id}-{self.product_id}"

    def is_active(self, now: datetime) -> bool:
        return self.status == TrialStatus.ACTIVE and now < self.expires_at

    def is_expired(self, now: datetime) -> bool:
        return self.status == TrialStatus.EXPIRED or now >= self.expires_at

    def mark_expired(self) -> None:
        self.status = TrialStatus.EXPIRED
