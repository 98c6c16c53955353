"""
Reset strategy calculations: next boundary per period and the stored-shape registry.
"""

from datetime import datetime, timezone

import pytest

from entitlement_engine.domain.errors import DomainError
from entitlement_engine.engine.strategies.registry import (
    build_reset_strategy,
    strategy_for_usage_period,
)
from entitlement_engine.engine.strategies.reset import (
    BillingCycleReset,
    CustomReset,
    DailyReset,
    HourlyReset,
    ManualReset,
    MonthlyReset,
    PeriodicReset,
    QuarterlyReset,
    RollingReset,
    WeeklyReset,
    YearlyReset,
)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


MONDAY_NOON = utc(2025, 3, 10, 12, 0)


class TestNextResetAt:
    def test_daily_is_next_midnight(self):
        assert DailyReset(hour=0).next_reset_at(MONDAY_NOON) == utc(2025, 3, 11)

    def test_daily_respects_hour(self):
        assert DailyReset(hour=6).next_reset_at(MONDAY_NOON) == utc(2025, 3, 11, 6)

    def test_hourly_rounds_to_next_hour(self):
        assert HourlyReset().next_reset_at(utc(2025, 3, 10, 12, 34, 56)) == utc(2025, 3, 10, 13)

    def test_weekly_goes_to_next_sunday(self):
        assert WeeklyReset(day_of_week=0).next_reset_at(MONDAY_NOON) == utc(2025, 3, 16)

    def test_weekly_same_weekday_is_a_full_week_ahead(self):
        sunday = utc(2025, 3, 16, 9, 0)
        assert WeeklyReset(day_of_week=0).next_reset_at(sunday) == utc(2025, 3, 23)

    def test_monthly_defaults_to_first_of_next_month(self):
        assert MonthlyReset().next_reset_at(MONDAY_NOON) == utc(2025, 4, 1)

    def test_monthly_clamps_to_short_month(self):
        assert MonthlyReset(day_of_month=31).next_reset_at(utc(2025, 1, 31, 8)) == utc(2025, 2, 28)

    def test_monthly_clamps_to_leap_february(self):
        assert MonthlyReset(day_of_month=30).next_reset_at(utc(2024, 1, 30)) == utc(2024, 2, 29)

    def test_quarterly(self):
        assert QuarterlyReset().next_reset_at(MONDAY_NOON) == utc(2025, 6, 1)

    def test_yearly(self):
        assert YearlyReset(hour=0).next_reset_at(MONDAY_NOON) == utc(2026, 1, 1)

    def test_custom_days(self):
        assert CustomReset(custom_days=10).next_reset_at(MONDAY_NOON) == utc(2025, 3, 20, 12)

    def test_billing_cycle_uses_far_future_placeholder(self):
        assert BillingCycleReset().next_reset_at(MONDAY_NOON) == utc(2035, 3, 10, 12)

    def test_manual_never_schedules(self):
        assert ManualReset().next_reset_at(MONDAY_NOON) is None

    @pytest.mark.parametrize(
        "strategy",
        [
            HourlyReset(),
            DailyReset(hour=0),
            DailyReset(hour=23),
            WeeklyReset(day_of_week=1),
            WeeklyReset(day_of_week=6, hour=5),
            MonthlyReset(day_of_month=10),
            MonthlyReset(day_of_month=31, hour=23),
            QuarterlyReset(),
            YearlyReset(),
            CustomReset(custom_days=1),
        ],
    )
    @pytest.mark.parametrize(
        "now",
        [MONDAY_NOON, utc(2025, 1, 31, 23, 59), utc(2024, 2, 29), utc(2025, 12, 31, 23, 0)],
    )
    def test_periodic_boundary_is_strictly_after_now(self, strategy, now):
        assert strategy.next_reset_at(now) > now


class TestIsDue:
    def test_manual_without_deadline_never_due(self):
        assert ManualReset().is_due(reset_at=None, now=MONDAY_NOON) is False

    def test_manual_deadline_acts_once_reached(self):
        assert ManualReset().is_due(reset_at=MONDAY_NOON, now=MONDAY_NOON) is True

    def test_periodic_due_at_boundary(self):
        assert MonthlyReset().is_due(reset_at=utc(2025, 3, 1), now=MONDAY_NOON) is True
        assert MonthlyReset().is_due(reset_at=utc(2025, 4, 1), now=MONDAY_NOON) is False

    def test_rolling_is_never_due_here(self):
        assert RollingReset().is_due(reset_at=utc(2020, 1, 1), now=MONDAY_NOON) is False


class TestValidation:
    def test_rejects_bad_hour(self):
        with pytest.raises(DomainError):
            DailyReset(hour=24)

    def test_rejects_bad_day_of_week(self):
        with pytest.raises(DomainError):
            WeeklyReset(day_of_week=7)

    def test_custom_requires_days(self):
        with pytest.raises(DomainError):
            CustomReset()


class TestRegistry:
    def test_builds_concrete_variant_from_stored_shape(self):
        strategy = build_reset_strategy({"type": "periodic", "period": "month", "dayOfMonth": 15, "hour": 3})
        assert isinstance(strategy, MonthlyReset)
        assert strategy.next_reset_at(MONDAY_NOON) == utc(2025, 4, 15, 3)

    def test_stored_shape_survives_reload(self):
        strategy = WeeklyReset(day_of_week=2, hour=8)
        assert build_reset_strategy(strategy.to_dict()) == strategy

    def test_unknown_period_falls_back_to_generic_periodic(self):
        strategy = build_reset_strategy({"type": "periodic", "period": "fortnight"})
        assert type(strategy) is PeriodicReset
        assert strategy.next_reset_at(MONDAY_NOON) == utc(2025, 3, 11)

    def test_unknown_type_raises(self):
        with pytest.raises(DomainError):
            build_reset_strategy({"type": "sometimes"})

    def test_empty_means_no_strategy(self):
        assert build_reset_strategy(None) is None

    @pytest.mark.parametrize(
        "period,expected",
        [
            ("day", DailyReset),
            ("week", WeeklyReset),
            ("month", MonthlyReset),
            ("year", YearlyReset),
            ("billing_cycle", BillingCycleReset),
        ],
    )
    def test_usage_period_mapping(self, period, expected):
        assert isinstance(strategy_for_usage_period(period), expected)

    def test_lifetime_has_no_strategy(self):
        assert strategy_for_usage_period("lifetime") is None
