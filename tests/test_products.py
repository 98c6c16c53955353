"""
ProductDefinition composition rules.
"""

import json

import pytest

from entitlement_engine.domain.errors import DomainError, EventValidationError
from entitlement_engine.domain.keys import (
    ENTITLEMENT_REGISTRY,
    EntitlementKey,
    EntitlementRole,
    is_usage_based,
)
from entitlement_engine.domain.product import (
    AddonConfig,
    ProductDefinition,
    ProductType,
    UsageLimit,
    UsagePeriod,
)
from entitlement_engine.stores.memory import InMemoryProductCatalog


def subscription(**overrides) -> ProductDefinition:
    fields = dict(
        product_id="prod_pro",
        name="Pro Plan",
        type=ProductType.SUBSCRIPTION,
        entitlements=["access_dashboard"],
    )
    fields.update(overrides)
    return ProductDefinition(**fields)


class TestConstruction:
    def test_requires_id(self):
        with pytest.raises(DomainError):
            subscription(product_id="")

    def test_requires_readable_name(self):
        with pytest.raises(DomainError):
            subscription(name="Pr")

    def test_requires_entitlements(self):
        with pytest.raises(DomainError):
            subscription(entitlements=[])

    def test_addon_cannot_carry_addons(self):
        with pytest.raises(DomainError):
            subscription(type=ProductType.ADDON, addons=["prod_other"])


class TestComposition:
    def test_duplicate_usage_limit_rejected(self):
        product = subscription()
        product.add_usage_limit(UsageLimit("ai_tokens", 100, UsagePeriod.MONTH))
        product.add_usage_limit(UsageLimit("ai_tokens", 1000, UsagePeriod.YEAR))
        with pytest.raises(DomainError):
            product.add_usage_limit(UsageLimit("ai_tokens", 5, UsagePeriod.MONTH))

    def test_only_subscriptions_take_addons(self):
        product = subscription(type=ProductType.ONE_OFF)
        with pytest.raises(DomainError):
            product.add_addon_config(AddonConfig(product_id="pack"))
        with pytest.raises(DomainError):
            product.add_addon("pack")

    def test_duplicate_addon_config_rejected(self):
        product = subscription()
        product.add_addon_config(AddonConfig(product_id="pack"))
        with pytest.raises(DomainError):
            product.add_addon_config(AddonConfig(product_id="pack"))

    def test_conflicting_addon_rejected(self):
        product = subscription()
        product.add_addon_config(AddonConfig(product_id="pack_small"))
        with pytest.raises(DomainError):
            product.add_addon_config(AddonConfig(product_id="pack_large", conflicts=["pack_small"]))

    def test_dependencies_must_be_attached_first(self):
        product = subscription()
        with pytest.raises(DomainError):
            product.add_addon_config(AddonConfig(product_id="tutor", dependencies=["tokens"]))
        product.add_addon_config(AddonConfig(product_id="tokens"))
        product.add_addon_config(AddonConfig(product_id="tutor", dependencies=["tokens"]))
        assert product.addon_product_ids() == ["tokens", "tutor"]

    def test_remove_addon_config(self):
        product = subscription()
        product.add_addon_config(AddonConfig(product_id="pack"))
        product.remove_addon_config("pack")
        assert product.addon_configs == []
        assert product.addon_product_ids() == []

    def test_addon_ids_listed_once(self):
        product = subscription(addons=["legacy", "pack"])
        product.add_addon_config(AddonConfig(product_id="pack"))
        assert product.addon_product_ids() == ["pack", "legacy"]


class TestCompose:
    def test_compose_enforces_rules(self):
        with pytest.raises(DomainError):
            ProductDefinition.compose(
                {
                    "productId": "prod_pro",
                    "name": "Pro Plan",
                    "type": "subscription",
                    "entitlements": ["ai_tokens"],
                    "addonConfigs": [{"productId": "tutor", "dependencies": ["tokens"]}],
                }
            )

    def test_compose_builds_full_definition(self):
        product = ProductDefinition.compose(
            {
                "productId": "prod_pro",
                "name": "Pro Plan",
                "type": "subscription",
                "entitlements": ["ai_tokens"],
                "usageLimits": [{"metric": "ai_tokens", "limit": 100, "period": "billing_cycle"}],
                "addonConfigs": [{"productId": "tokens"}, {"productId": "tutor", "dependencies": ["tokens"]}],
            }
        )
        assert product.usage_limits == [UsageLimit("ai_tokens", 100, UsagePeriod.BILLING_CYCLE)]
        assert product.addon_product_ids() == ["tokens", "tutor"]
        assert ProductDefinition.from_dict(product.to_dict()) == product

    def test_unknown_type(self):
        with pytest.raises(DomainError):
            ProductDefinition.from_dict({"productId": "p", "name": "Plan", "type": "bundle", "entitlements": ["x"]})


class TestCatalogFile:
    async def test_seeds_memory_catalog(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text(
            json.dumps(
                [
                    {
                        "productId": "prod_team",
                        "name": "Team Plan",
                        "type": "subscription",
                        "entitlements": ["access_dashboard", "classroom_management"],
                        "usageLimits": [{"metric": "classroom_management", "limit": 5, "period": "lifetime"}],
                    }
                ]
            )
        )
        catalog = InMemoryProductCatalog.from_file(path)
        product = await catalog.find_by_id("prod_team")
        assert product.usage_limits == [UsageLimit("classroom_management", 5, UsagePeriod.LIFETIME)]

    def test_schema_violation_fails_loading(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps([{"productId": "p", "name": "Plan", "type": "bundle", "entitlements": ["x"]}]))
        with pytest.raises(EventValidationError):
            InMemoryProductCatalog.from_file(path)

    def test_must_be_a_list(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps({"productId": "p"}))
        with pytest.raises(DomainError):
            InMemoryProductCatalog.from_file(path)


class TestEntitlementRegistry:
    def test_every_key_is_described(self):
        assert set(ENTITLEMENT_REGISTRY) == set(EntitlementKey)
        for meta in ENTITLEMENT_REGISTRY.values():
            assert meta["description"]
            assert meta["roles"]

    def test_usage_based_flag(self):
        assert is_usage_based(EntitlementKey.AI_TOKENS)
        assert is_usage_based(EntitlementKey.QUIZ_ATTEMPTS)
        assert not is_usage_based(EntitlementKey.ACCESS_DASHBOARD)

    def test_roles(self):
        assert ENTITLEMENT_REGISTRY[EntitlementKey.CREATE_COURSE]["roles"] == [EntitlementRole.EDUCATOR]
        assert EntitlementRole.LEARNER in ENTITLEMENT_REGISTRY[EntitlementKey.TAKE_QUIZ]["roles"]
