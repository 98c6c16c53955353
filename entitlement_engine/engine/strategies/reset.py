from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

from dateutil.relativedelta import relativedelta

from entitlement_engine.domain.errors import DomainError
from entitlement_engine.engine.strategies.base import ResetStrategy, ResetType, ResetPeriod

# billing_cycle boundaries come from the subscription period end; this only marks "not yet synced"
BILLING_CYCLE_PLACEHOLDER = relativedelta(years=10)


def _at_hour(dt: datetime, hour: int) -> datetime:
    return dt.replace(hour=hour, minute=0, second=0, microsecond=0)


def _js_weekday(dt: datetime) -> int:
    # Sunday=0 .. Saturday=6
    return (dt.weekday() + 1) % 7


# ---------- Manual / Rolling ----------

@dataclass(frozen=True)
class ManualReset(ResetStrategy):
    """
    Never auto-resets. A stored reset_at acts as a one-shot deadline.
    """
    type = ResetType.MANUAL

    def is_due(self, *, reset_at: Optional[datetime], now: datetime) -> bool:
        return reset_at is not None and now >= reset_at

    def next_reset_at(self, now: datetime) -> Optional[datetime]:
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value}


@dataclass(frozen=True)
class RollingReset(ResetStrategy):
    """
    Sliding window resolved outside this service; never due here.
    """
    type = ResetType.ROLLING

    def is_due(self, *, reset_at: Optional[datetime], now: datetime) -> bool:
        return False

    def next_reset_at(self, now: datetime) -> Optional[datetime]:
        return _at_hour(now + timedelta(days=1), 0)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value}


# ---------- Periodic ----------

@dataclass(frozen=True)
class PeriodicReset(ResetStrategy):
    day_of_month: Optional[int] = None
    day_of_week: Optional[int] = None
    hour: Optional[int] = None
    timezone: Optional[str] = None
    custom_days: Optional[int] = None

    type = ResetType.PERIODIC

    def __post_init__(self):
        if self.day_of_month is not None and not 1 <= self.day_of_month <= 31:
            raise DomainError("dayOfMonth must be between 1 and 31")
        if self.day_of_week is not None and not 0 <= self.day_of_week <= 6:
            raise DomainError("dayOfWeek must be between 0 (Sunday) and 6")
        if self.hour is not None and not 0 <= self.hour <= 23:
            raise DomainError("hour must be between 0 and 23")

    def is_due(self, *, reset_at: Optional[datetime], now: datetime) -> bool:
        return reset_at is not None and now >= reset_at

    def next_reset_at(self, now: datetime) -> Optional[datetime]:
        # Unknown periods fall back to the next midnight
        return _at_hour(now + timedelta(days=1), 0)

    @property
    def _hour(self) -> int:
        return self.hour or 0

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.type.value}
        if self.period is not None:
            out["period"] = self.period.value
        for key, value in (
            ("dayOfMonth", self.day_of_month),
            ("dayOfWeek", self.day_of_week),
            ("hour", self.hour),
            ("timezone", self.timezone),
            ("customDays", self.custom_days),
        ):
            if value is not None:
                out[key] = value
        return out


@dataclass(frozen=True)
class HourlyReset(PeriodicReset):
    period = ResetPeriod.HOUR

    def next_reset_at(self, now: datetime) -> Optional[datetime]:
        return (now + timedelta(hours=1)).replace(minute=0, second=0, microsecond=0)


@dataclass(frozen=True)
class DailyReset(PeriodicReset):
    period = ResetPeriod.DAY

    def next_reset_at(self, now: datetime) -> Optional[datetime]:
        return _at_hour(now + timedelta(days=1), self._hour)


@dataclass(frozen=True)
class WeeklyReset(PeriodicReset):
    """
    Next occurrence of day_of_week (default Sunday). Same weekday means a full week ahead.
    """
    period = ResetPeriod.WEEK

    def next_reset_at(self, now: datetime) -> Optional[datetime]:
        target = self.day_of_week or 0
        days_ahead = (7 - _js_weekday(now) + target) % 7 or 7
        return _at_hour(now + timedelta(days=days_ahead), self._hour)


@dataclass(frozen=True)
class MonthlyReset(PeriodicReset):
    """
    Next calendar month on day_of_month (default 1).
    Days past the end of a short month clamp to its last day (31 -> Feb 28/29).
    """
    period = ResetPeriod.MONTH

    def next_reset_at(self, now: datetime) -> Optional[datetime]:
        return _at_hour(now + relativedelta(months=1, day=self.day_of_month or 1), self._hour)


@dataclass(frozen=True)
class QuarterlyReset(PeriodicReset):
    period = ResetPeriod.QUARTER

    def next_reset_at(self, now: datetime) -> Optional[datetime]:
        return _at_hour(now + relativedelta(months=3, day=1), self._hour)


@dataclass(frozen=True)
class YearlyReset(PeriodicReset):
    period = ResetPeriod.YEAR

    def next_reset_at(self, now: datetime) -> Optional[datetime]:
        return _at_hour(now.replace(year=now.year + 1, month=1, day=1), self._hour)


@dataclass(frozen=True)
class CustomReset(PeriodicReset):
    period = ResetPeriod.CUSTOM

    def __post_init__(self):
        super().__post_init__()
        if self.custom_days is None or self.custom_days < 1:
            raise DomainError("customDays must be a positive integer for custom resets")

    def next_reset_at(self, now: datetime) -> Optional[datetime]:
        return now + timedelta(days=self.custom_days)


@dataclass(frozen=True)
class BillingCycleReset(PeriodicReset):
    """
    Driven by the subscription's current period end. The calculator only yields a far-future
    placeholder so an unsynced counter never triggers.
    """
    period = ResetPeriod.BILLING_CYCLE

    def next_reset_at(self, now: datetime) -> Optional[datetime]:
        return now + BILLING_CYCLE_PLACEHOLDER
