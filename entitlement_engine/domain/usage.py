from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any

from entitlement_engine.domain.errors import DomainError, UsageExceeded
from entitlement_engine.engine.strategies.base import ResetStrategy
from entitlement_engine.engine.strategies.reset import ManualReset
from entitlement_engine.engine.strategies.registry import build_reset_strategy, next_reset_at
from entitlement_engine.domain.timeutil import parse_iso, iso


@dataclass
class UsageCounter:
    """
    Consumption against a limit.

    `limit` is the base product's allowance; add-on products contribute through `addon_limits`
    (add-on product id -> amount) and effective_limit() is the sum. Keying contributions by
    product keeps a base re-sync from wiping add-ons and a redelivered add-on sync from doubling.

    `used` changes only through consume() and reset(). Resets are lazy: callers check
    should_reset() and call reset() themselves before reading or consuming, then persist.
    """
    limit: int
    used: int = 0
    reset_at: Optional[datetime] = None
    reset_strategy: Optional[ResetStrategy] = None
    addon_limits: Dict[str, int] = field(default_factory=dict)

    def __post_init__(self):
        if self.limit < 0:
            raise DomainError("Usage limit cannot be negative")
        if self.used < 0:
            raise DomainError("Usage cannot be negative")

    # ---------- consumption ----------

    def effective_limit(self) -> int:
        return self.limit + sum(self.addon_limits.values())

    def can_consume(self, amount: int = 1) -> bool:
        return self.used + amount <= self.effective_limit()

    def consume(self, amount: int = 1) -> None:
        if amount < 0:
            raise DomainError("Usage amount cannot be negative")
        if not self.can_consume(amount):
            raise UsageExceeded(limit=self.effective_limit(), used=self.used, amount=amount)
        self.used += amount

    # ---------- resets ----------

    def should_reset(self, now: datetime) -> bool:
        strategy = self.reset_strategy or ManualReset()
        return strategy.is_due(reset_at=self.reset_at, now=now)

    def reset(self, now: datetime) -> None:
        self.used = 0
        if self.reset_strategy is None:
            self.reset_at = None
        else:
            self.reset_at = next_reset_at(self.reset_strategy, now)

    def schedule_reset(self, at: Optional[datetime]) -> None:
        """Set the next boundary directly (billing-cycle period end)."""
        self.reset_at = at

    # ---------- limit sync ----------

    def overwrite_limit(self, limit: int) -> None:
        if limit < 0:
            raise DomainError("Usage limit cannot be negative")
        self.limit = limit

    def add_to_limit(self, amount: int, *, source: str) -> None:
        if amount < 0:
            raise DomainError("Add-on usage limit cannot be negative")
        self.addon_limits[source] = amount

    def drop_addon(self, source: str) -> None:
        self.addon_limits.pop(source, None)

    def adopt_strategy(self, strategy: Optional[ResetStrategy]) -> None:
        """
        A billing_cycle strategy is never replaced by another product's non-billing_cycle one.
        """
        if strategy is None:
            return
        if strategy.is_billing_cycle or self.reset_strategy is None or not self.reset_strategy.is_billing_cycle:
            self.reset_strategy = strategy

    # ---------- mapping ----------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "limit": self.limit,
            "used": self.used,
            "addonLimits": dict(self.addon_limits),
            "resetAt": iso(self.reset_at),
            "resetStrategy": self.reset_strategy.to_dict() if self.reset_strategy else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageCounter":
        return cls(
            limit=int(data.get("limit", 0)),
            used=int(data.get("used", 0)),
            reset_at=parse_iso(data.get("resetAt")),
            reset_strategy=build_reset_strategy(data.get("resetStrategy")),
            addon_limits={k: int(v) for k, v in (data.get("addonLimits") or {}).items()},
        )
