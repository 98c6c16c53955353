# entitlement_engine/stores/types.py
from __future__ import annotations
from typing import Protocol, Optional, List, Dict, Any

from entitlement_engine.domain.dunning import DunningRecord
from entitlement_engine.domain.entitlement import Entitlement
from entitlement_engine.domain.product import ProductDefinition
from entitlement_engine.domain.trial import TrialRecord


class EntitlementStore(Protocol):
    # records are addressed by (user_id, key); update() overwrites the whole record
    async def find_by_user(self, user_id: str) -> List[Entitlement]: ...
    async def find_by_user_and_key(self, user_id: str, key: str) -> Optional[Entitlement]: ...
    async def save(self, entitlement: Entitlement) -> None: ...
    async def update(self, entitlement: Entitlement) -> None: ...


class DunningStore(Protocol):
    async def find_by_user_id(self, user_id: str) -> Optional[DunningRecord]: ...
    async def save(self, record: DunningRecord) -> None: ...
    async def delete(self, user_id: str) -> None: ...
    async def list_open_user_ids(self, limit: int = 500, offset: int = 0) -> List[str]: ...


class ProductCatalog(Protocol):
    async def find_by_id(self, product_id: str) -> Optional[ProductDefinition]: ...


class TrialStore(Protocol):
    # one record per (user_id, product_id), kept after the trial ends
    async def find_by_user_and_product(self, user_id: str, product_id: str) -> Optional[TrialRecord]: ...
    async def save(self, trial: TrialRecord) -> None: ...
    async def update(self, trial: TrialRecord) -> None: ...


class ProcessedEventStore(Protocol):
    # dedupe keys look like "PAYMENT#pi_123" or "USAGE#<idempotencyKey>"
    async def is_processed(self, key: str) -> bool: ...
    async def mark_processed(self, key: str) -> None: ...
    async def purge_expired(self) -> int: ...


class EventTransport(Protocol):
    async def send(self, event: Dict[str, Any]) -> None: ...
