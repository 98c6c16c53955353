from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, List

from entitlement_engine.domain.errors import DomainError

class ProductType(str, Enum):
    SUBSCRIPTION = "subscription"
    ONE_OFF = "one_off"
    ADDON = "addon"

class UsagePeriod(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"
    BILLING_CYCLE = "billing_cycle"
    LIFETIME = "lifetime"

@dataclass(frozen=True)
class UsageLimit:
    metric: str          # entitlement key the limit applies to, e.g. "ai_tokens"
    limit: int
    period: UsagePeriod

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageLimit":
        try:
            return cls(
                metric=str(data["metric"]),
                limit=int(data["limit"]),
                period=UsagePeriod(data.get("period", UsagePeriod.LIFETIME.value)),
            )
        except (KeyError, ValueError) as e:
            raise DomainError(f"Invalid usage limit: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {"metric": self.metric, "limit": self.limit, "period": self.period.value}

@dataclass(frozen=True)
class AddonConfig:
    product_id: str
    required: bool = False
    min_quantity: int = 1
    max_quantity: Optional[int] = None
    dependencies: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AddonConfig":
        if not data.get("productId"):
            raise DomainError("Add-on configuration requires a productId")
        return cls(
            product_id=data["productId"],
            required=bool(data.get("required", False)),
            min_quantity=int(data.get("minQuantity", 1)),
            max_quantity=data.get("maxQuantity"),
            dependencies=list(data.get("dependencies") or []),
            conflicts=list(data.get("conflicts") or []),
            metadata=dict(data.get("metadata") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "productId": self.product_id,
            "required": self.required,
            "minQuantity": self.min_quantity,
            "dependencies": list(self.dependencies),
            "conflicts": list(self.conflicts),
        }
        if self.max_quantity is not None:
            out["maxQuantity"] = self.max_quantity
        if self.metadata:
            out["metadata"] = dict(self.metadata)
        return out

@dataclass
class ProductDefinition:
    """
    Read-only catalog view of a product as far as entitlements are concerned.

    The composition methods (add_usage_limit, add_addon_config, ...) enforce the catalog rules
    so that a definition loaded from the catalog is always internally consistent.
    """
    product_id: str
    name: str
    type: ProductType
    entitlements: List[str]
    usage_limits: List[UsageLimit] = field(default_factory=list)
    addons: List[str] = field(default_factory=list)              # legacy add-on product ids
    addon_configs: List[AddonConfig] = field(default_factory=list)
    is_active: bool = True

    def __post_init__(self):
        if not self.product_id:
            raise DomainError("Product must have an ID")
        if not self.name or len(self.name.strip()) < 3:
            raise DomainError("Product name must be at least 3 characters")
        if not self.entitlements:
            raise DomainError("Product must define at least one entitlement")
        if self.type == ProductType.ADDON and (self.addons or self.addon_configs):
            raise DomainError("Add-on products cannot have add-ons")

    # ---------- composition ----------

    def add_usage_limit(self, limit: UsageLimit) -> None:
        if any(l.metric == limit.metric and l.period == limit.period for l in self.usage_limits):
            raise DomainError(f"Usage limit for {limit.metric}/{limit.period.value} already exists")
        self.usage_limits.append(limit)

    def add_addon(self, product_id: str) -> None:
        self._require_subscription()
        if product_id not in self.addons:
            self.addons.append(product_id)

    def add_addon_config(self, config: AddonConfig) -> None:
        self._require_subscription()
        attached = [c.product_id for c in self.addon_configs]

        if any(conflict in attached for conflict in config.conflicts):
            raise DomainError(f"Add-on {config.product_id} conflicts with existing add-ons")
        if config.product_id in attached:
            raise DomainError(f"Add-on configuration for {config.product_id} already exists")
        missing = [dep for dep in config.dependencies if dep not in attached]
        if missing:
            raise DomainError(f"Add-on {config.product_id} requires dependencies: {', '.join(missing)}")

        self.addon_configs.append(config)
        if config.product_id not in self.addons:
            self.addons.append(config.product_id)

    def remove_addon_config(self, product_id: str) -> None:
        self.addon_configs = [c for c in self.addon_configs if c.product_id != product_id]
        self.addons = [a for a in self.addons if a != product_id]

    def _require_subscription(self) -> None:
        if self.type != ProductType.SUBSCRIPTION:
            raise DomainError("Only subscription products can have add-ons")

    # ---------- queries ----------

    def addon_product_ids(self) -> List[str]:
        """
        Configured add-ons first, then legacy ids not already covered. Each id appears once
        so additive limits are never applied twice for the same add-on.
        """
        out: List[str] = []
        for pid in [c.product_id for c in self.addon_configs] + list(self.addons):
            if pid not in out:
                out.append(pid)
        return out

    # ---------- mapping ----------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProductDefinition":
        try:
            ptype = ProductType(data.get("type", ProductType.SUBSCRIPTION.value))
        except ValueError as e:
            raise DomainError(f"Invalid product type: {e}") from e
        return cls(
            product_id=data.get("productId") or "",
            name=data.get("name") or "",
            type=ptype,
            entitlements=list(data.get("entitlements") or []),
            usage_limits=[UsageLimit.from_dict(u) for u in data.get("usageLimits") or []],
            addons=list(data.get("addons") or []),
            addon_configs=[AddonConfig.from_dict(a) for a in data.get("addonConfigs") or []],
            is_active=bool(data.get("isActive", True)),
        )

    @classmethod
    def compose(cls, data: Dict[str, Any]) -> "ProductDefinition":
        """
        Build a definition through the composition methods so every catalog rule is enforced,
        unlike from_dict which trusts what was stored.
        """
        product = cls.from_dict({**data, "usageLimits": [], "addonConfigs": [], "addons": []})
        for raw in data.get("usageLimits") or []:
            product.add_usage_limit(UsageLimit.from_dict(raw))
        for raw in data.get("addonConfigs") or []:
            product.add_addon_config(AddonConfig.from_dict(raw))
        for pid in data.get("addons") or []:
            product.add_addon(pid)
        return product

    def to_dict(self) -> Dict[str, Any]:
        return {
            "productId": self.product_id,
            "name": self.name,
            "type": self.type.value,
            "entitlements": list(self.entitlements),
            "usageLimits": [u.to_dict() for u in self.usage_limits],
            "addons": list(self.addons),
            "addonConfigs": [a.to_dict() for a in self.addon_configs],
            "isActive": self.is_active,
        }
