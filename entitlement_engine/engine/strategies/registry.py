from __future__ import annotations
from datetime import datetime
from typing import Dict, Type, Optional, Any

from entitlement_engine.domain.errors import DomainError
from entitlement_engine.domain.product import UsagePeriod
from entitlement_engine.engine.strategies.base import ResetStrategy, ResetType, ResetPeriod
from entitlement_engine.engine.strategies.reset import (
    ManualReset,
    RollingReset,
    PeriodicReset,
    HourlyReset,
    DailyReset,
    WeeklyReset,
    MonthlyReset,
    QuarterlyReset,
    YearlyReset,
    CustomReset,
    BillingCycleReset,
)

PERIODIC: Dict[str, Type[PeriodicReset]] = {
    ResetPeriod.HOUR.value: HourlyReset,
    ResetPeriod.DAY.value: DailyReset,
    ResetPeriod.WEEK.value: WeeklyReset,
    ResetPeriod.MONTH.value: MonthlyReset,
    ResetPeriod.QUARTER.value: QuarterlyReset,
    ResetPeriod.YEAR.value: YearlyReset,
    ResetPeriod.CUSTOM.value: CustomReset,
    ResetPeriod.BILLING_CYCLE.value: BillingCycleReset,
}

# Product usage periods -> reset strategy applied to the synced usage counter.
# "lifetime" never resets.
USAGE_PERIODS: Dict[str, ResetStrategy] = {
    UsagePeriod.DAY.value: DailyReset(hour=0),
    UsagePeriod.WEEK.value: WeeklyReset(day_of_week=0, hour=0),
    UsagePeriod.MONTH.value: MonthlyReset(day_of_month=1, hour=0),
    UsagePeriod.YEAR.value: YearlyReset(hour=0),
    UsagePeriod.BILLING_CYCLE.value: BillingCycleReset(),
}


def build_reset_strategy(data: Optional[Dict[str, Any]]) -> Optional[ResetStrategy]:
    """
    Reads a stored strategy dict and returns the concrete variant.
    Periodic strategies with an unknown period keep the generic PeriodicReset
    (next midnight) so old rows still load.
    """
    if not data:
        return None
    kind = data.get("type")
    if kind == ResetType.MANUAL.value:
        return ManualReset()
    if kind == ResetType.ROLLING.value:
        return RollingReset()
    if kind != ResetType.PERIODIC.value:
        raise DomainError(f"Unknown reset strategy type '{kind}'")

    cls = PERIODIC.get(data.get("period")) or PeriodicReset
    return cls(
        day_of_month=data.get("dayOfMonth"),
        day_of_week=data.get("dayOfWeek"),
        hour=data.get("hour"),
        timezone=data.get("timezone"),
        custom_days=data.get("customDays"),
    )


def strategy_for_usage_period(period: UsagePeriod | str) -> Optional[ResetStrategy]:
    key = period.value if isinstance(period, UsagePeriod) else period
    return USAGE_PERIODS.get(key)


def next_reset_at(strategy: ResetStrategy, now: datetime) -> Optional[datetime]:
    return strategy.next_reset_at(now)
