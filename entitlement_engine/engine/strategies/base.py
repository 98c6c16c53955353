from __future__ import annotations
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional, Dict, Any
from datetime import datetime


class ResetType(str, Enum):
    MANUAL = "manual"
    PERIODIC = "periodic"
    ROLLING = "rolling"


class ResetPeriod(str, Enum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"
    BILLING_CYCLE = "billing_cycle"
    CUSTOM = "custom"


# ---------- Reset ----------

class ResetStrategy(ABC):
    type: ResetType
    period: Optional[ResetPeriod] = None

    @abstractmethod
    def is_due(self, *, reset_at: Optional[datetime], now: datetime) -> bool:
        """
        True if a usage counter holding `reset_at` must be zeroed at `now`.
        """
        raise NotImplementedError

    @abstractmethod
    def next_reset_at(self, now: datetime) -> Optional[datetime]:
        """
        Next boundary after a reset performed at `now`.
        None clears the counter's reset_at.
        """
        raise NotImplementedError

    @abstractmethod
    def to_dict(self) -> Dict[str, Any]:
        """
        Wire/storage shape:
          { "type": "periodic", "period": "month", "dayOfMonth": 1, "hour": 0, ... }
        """
        raise NotImplementedError

    @property
    def is_billing_cycle(self) -> bool:
        return self.period == ResetPeriod.BILLING_CYCLE
