from __future__ import annotations
from datetime import datetime, timedelta
from typing import Optional, List, Callable

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_engine.domain.dunning import DunningRecord, DunningState
from entitlement_engine.domain.entitlement import Entitlement, coerce_key
from entitlement_engine.domain.keys import EntitlementRole, EntitlementStatus
from entitlement_engine.domain.product import ProductDefinition
from entitlement_engine.domain.timeutil import aware, utcnow
from entitlement_engine.domain.trial import TrialRecord, TrialStatus
from entitlement_engine.domain.usage import UsageCounter
from entitlement_engine.persistence.models import (
    DunningRecordRow,
    EntitlementRow,
    ProcessedEventRow,
    ProductRow,
    TrialRow,
)

# Repositories flush; the unit of work (request or queue message) commits.


# -------------------- Entitlements --------------------

class EntitlementRepo:
    def __init__(self, db: AsyncSession):
        self.db = db

    @staticmethod
    def _to_domain(row: EntitlementRow) -> Entitlement:
        return Entitlement(
            user_id=row.user_id,
            key=coerce_key(row.entitlement_key),
            role=EntitlementRole(row.role),
            status=EntitlementStatus(row.status),
            granted_at=aware(row.granted_at),
            expires_at=aware(row.expires_at),
            usage=UsageCounter.from_dict(row.usage) if row.usage else None,
        )

    @staticmethod
    def _to_row(entitlement: Entitlement) -> EntitlementRow:
        return EntitlementRow(
            user_id=entitlement.user_id,
            entitlement_key=entitlement.key.value,
            role=entitlement.role.value,
            status=entitlement.status.value,
            granted_at=entitlement.granted_at,
            expires_at=entitlement.expires_at,
            usage=entitlement.usage.to_dict() if entitlement.usage else None,
        )

    async def find_by_user(self, user_id: str) -> List[Entitlement]:
        res = await self.db.execute(
            select(EntitlementRow)
            .where(EntitlementRow.user_id == user_id)
            .order_by(EntitlementRow.entitlement_key)
        )
        return [self._to_domain(r) for r in res.scalars().all()]

    async def find_by_user_and_key(self, user_id: str, key: str) -> Optional[Entitlement]:
        res = await self.db.execute(
            select(EntitlementRow).where(
                EntitlementRow.user_id == user_id,
                EntitlementRow.entitlement_key == getattr(key, "value", key),
            )
        )
        row = res.scalar_one_or_none()
        return self._to_domain(row) if row else None

    async def save(self, entitlement: Entitlement) -> None:
        await self.db.merge(self._to_row(entitlement))
        await self.db.flush()

    async def update(self, entitlement: Entitlement) -> None:
        # full overwrite of the (user_id, key) record
        await self.save(entitlement)


# -------------------- Dunning --------------------

class DunningRepo:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_user_id(self, user_id: str) -> Optional[DunningRecord]:
        res = await self.db.execute(select(DunningRecordRow).where(DunningRecordRow.user_id == user_id))
        row = res.scalar_one_or_none()
        if not row:
            return None
        return DunningRecord(
            user_id=row.user_id,
            state=DunningState(row.state),
            detected_at=aware(row.detected_at),
            last_updated_at=aware(row.last_updated_at),
            portal_url=row.portal_url,
            expires_at=aware(row.expires_at),
            payment_intent_id=row.payment_intent_id,
            invoice_id=row.invoice_id,
            subscription_id=row.subscription_id,
            failure_code=row.failure_code,
            failure_reason=row.failure_reason,
        )

    async def save(self, record: DunningRecord) -> None:
        await self.db.merge(
            DunningRecordRow(
                user_id=record.user_id,
                state=record.state.value,
                detected_at=record.detected_at,
                last_updated_at=record.last_updated_at,
                portal_url=record.portal_url,
                expires_at=record.expires_at,
                payment_intent_id=record.payment_intent_id,
                invoice_id=record.invoice_id,
                subscription_id=record.subscription_id,
                failure_code=record.failure_code,
                failure_reason=record.failure_reason,
            )
        )
        await self.db.flush()

    async def delete(self, user_id: str) -> None:
        await self.db.execute(delete(DunningRecordRow).where(DunningRecordRow.user_id == user_id))
        await self.db.flush()

    async def list_open_user_ids(self, limit: int = 500, offset: int = 0) -> List[str]:
        """Users the scheduled tick has to visit: every record not in OK or SUSPENDED."""
        res = await self.db.execute(
            select(DunningRecordRow.user_id)
            .where(DunningRecordRow.state.notin_([DunningState.OK.value, DunningState.SUSPENDED.value]))
            .order_by(DunningRecordRow.user_id)
            .offset(offset)
            .limit(limit)
        )
        return list(res.scalars().all())


# -------------------- Products --------------------

class ProductRepo:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_id(self, product_id: str) -> Optional[ProductDefinition]:
        res = await self.db.execute(select(ProductRow).where(ProductRow.product_id == product_id))
        row = res.scalar_one_or_none()
        if not row:
            return None
        return ProductDefinition.from_dict(
            {
                **(row.definition or {}),
                "productId": row.product_id,
                "name": row.name,
                "type": row.type,
                "isActive": row.is_active,
            }
        )

    async def upsert(self, product: ProductDefinition) -> None:
        data = product.to_dict()
        await self.db.merge(
            ProductRow(
                product_id=product.product_id,
                name=product.name,
                type=product.type.value,
                is_active=product.is_active,
                definition={
                    "entitlements": data["entitlements"],
                    "usageLimits": data["usageLimits"],
                    "addons": data["addons"],
                    "addonConfigs": data["addonConfigs"],
                },
            )
        )
        await self.db.flush()


# -------------------- Trials --------------------

class TrialRepo:
    def __init__(self, db: AsyncSession):
        self.db = db

    @staticmethod
    def _to_domain(row: TrialRow) -> TrialRecord:
        return TrialRecord(
            user_id=row.user_id,
            product_id=row.product_id,
            started_at=aware(row.started_at),
            expires_at=aware(row.expires_at),
            status=TrialStatus(row.status),
        )

    async def find_by_user_and_product(self, user_id: str, product_id: str) -> Optional[TrialRecord]:
        res = await self.db.execute(
            select(TrialRow).where(TrialRow.user_id == user_id, TrialRow.product_id == product_id)
        )
        row = res.scalar_one_or_none()
        return self._to_domain(row) if row else None

    async def save(self, trial: TrialRecord) -> None:
        await self.db.merge(
            TrialRow(
                user_id=trial.user_id,
                product_id=trial.product_id,
                started_at=trial.started_at,
                expires_at=trial.expires_at,
                status=trial.status.value,
            )
        )
        await self.db.flush()

    async def update(self, trial: TrialRecord) -> None:
        await self.save(trial)


# -------------------- Processed events --------------------

class ProcessedEventRepo:
    def __init__(self, db: AsyncSession, *, ttl_days: int = 90, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.ttl = timedelta(days=ttl_days)
        self.clock = clock

    async def is_processed(self, key: str) -> bool:
        res = await self.db.execute(select(ProcessedEventRow.expires_at).where(ProcessedEventRow.key == key))
        expires_at = res.scalar_one_or_none()
        return expires_at is not None and self.clock() < aware(expires_at)

    async def mark_processed(self, key: str) -> None:
        now = self.clock()
        await self.db.merge(ProcessedEventRow(key=key, processed_at=now, expires_at=now + self.ttl))
        await self.db.flush()

    async def purge_expired(self) -> int:
        res = await self.db.execute(delete(ProcessedEventRow).where(ProcessedEventRow.expires_at <= self.clock()))
        await self.db.flush()
        return res.rowcount or 0
