# entitlement_engine/stores/memory.py
from __future__ import annotations
import copy
import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, List, Dict, Tuple, Callable

from entitlement_engine.domain.dunning import DunningRecord, DunningState
from entitlement_engine.domain.errors import DomainError
from entitlement_engine.domain.entitlement import Entitlement
from entitlement_engine.domain.product import ProductDefinition
from entitlement_engine.domain.timeutil import utcnow
from entitlement_engine.domain.trial import TrialRecord
from entitlement_engine.schemas.validator import validate_product


class InMemoryEntitlementStore:
    """
    In-memory, protocol-compliant store for tests/local runs.
    Mirrors the signatures in entitlement_engine.stores.types.EntitlementStore.

    Records are deep-copied on the way in and out so callers never share state with the store,
    the same as reading from and writing to a real table.
    """

    def __init__(self):
        # (user_id, key) -> Entitlement
        self.items: Dict[Tuple[str, str], Entitlement] = {}
        self.writes: int = 0

    async def find_by_user(self, user_id: str) -> List[Entitlement]:
        return [copy.deepcopy(e) for (uid, _), e in self.items.items() if uid == user_id]

    async def find_by_user_and_key(self, user_id: str, key: str) -> Optional[Entitlement]:
        key = getattr(key, "value", key)
        found = self.items.get((user_id, key))
        return copy.deepcopy(found) if found else None

    async def save(self, entitlement: Entitlement) -> None:
        self.items[(entitlement.user_id, entitlement.key.value)] = copy.deepcopy(entitlement)
        self.writes += 1

    async def update(self, entitlement: Entitlement) -> None:
        # put is idempotent for this model
        await self.save(entitlement)


class InMemoryDunningStore:
    def __init__(self):
        self.records: Dict[str, DunningRecord] = {}

    async def find_by_user_id(self, user_id: str) -> Optional[DunningRecord]:
        found = self.records.get(user_id)
        return copy.deepcopy(found) if found else None

    async def save(self, record: DunningRecord) -> None:
        self.records[record.user_id] = copy.deepcopy(record)

    async def delete(self, user_id: str) -> None:
        self.records.pop(user_id, None)

    async def list_open_user_ids(self, limit: int = 500, offset: int = 0) -> List[str]:
        open_ids = sorted(
            uid for uid, r in self.records.items()
            if r.state not in (DunningState.OK, DunningState.SUSPENDED)
        )
        return open_ids[offset:offset + limit]


class InMemoryProductCatalog:
    def __init__(self, products: Optional[List[ProductDefinition]] = None):
        self.products: Dict[str, ProductDefinition] = {p.product_id: p for p in products or []}

    @classmethod
    def from_file(cls, path: str | Path) -> "InMemoryProductCatalog":
        """
        Seed from a JSON list of product definitions. Each entry is schema-checked and built
        through the composition rules, so an inconsistent catalog fails at startup.
        """
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(raw, list):
            raise DomainError(f"Product catalog {path} must hold a JSON list")
        products = []
        for body in raw:
            validate_product(body)
            products.append(ProductDefinition.compose(body))
        return cls(products)

    def add(self, product: ProductDefinition) -> None:
        self.products[product.product_id] = product

    async def find_by_id(self, product_id: str) -> Optional[ProductDefinition]:
        found = self.products.get(product_id)
        return copy.deepcopy(found) if found else None


class InMemoryTrialStore:
    def __init__(self):
        # (user_id, product_id) -> TrialRecord
        self.items: Dict[Tuple[str, str], TrialRecord] = {}

    async def find_by_user_and_product(self, user_id: str, product_id: str) -> Optional[TrialRecord]:
        found = self.items.get((user_id, product_id))
        return copy.deepcopy(found) if found else None

    async def save(self, trial: TrialRecord) -> None:
        self.items[(trial.user_id, trial.product_id)] = copy.deepcopy(trial)

    async def update(self, trial: TrialRecord) -> None:
        await self.save(trial)


class InMemoryProcessedEventStore:
    def __init__(self, ttl_days: int = 90, clock: Callable[[], datetime] = utcnow):
        # key -> expires at
        self.keys: Dict[str, datetime] = {}
        self._ttl = timedelta(days=ttl_days)
        self._clock = clock

    async def is_processed(self, key: str) -> bool:
        expires = self.keys.get(key)
        return expires is not None and self._clock() < expires

    async def mark_processed(self, key: str) -> None:
        self.keys[key] = self._clock() + self._ttl

    async def purge_expired(self) -> int:
        now = self._clock()
        stale = [k for k, expires in self.keys.items() if expires <= now]
        for k in stale:
            del self.keys[k]
        return len(stale)
