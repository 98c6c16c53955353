from __future__ import annotations

from sqlalchemy import (
    Column,
    Index,
    String,
    TIMESTAMP,
    JSON,
    Boolean,
)
from sqlalchemy.sql import func
from .base import Base


# -------------------------
# Entitlements
# -------------------------
class EntitlementRow(Base):
    __tablename__ = "entitlements"

    user_id = Column(String, primary_key=True)
    entitlement_key = Column(String, primary_key=True)

    role = Column(String, nullable=False, default="learner")
    status = Column(String, nullable=False, index=True)   # active | inactive | revoked

    granted_at = Column(TIMESTAMP(timezone=True), nullable=False)
    expires_at = Column(TIMESTAMP(timezone=True), nullable=True)

    # {limit, used, addonLimits, resetAt, resetStrategy} or NULL when not metered
    usage = Column(JSON, nullable=True)

    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


# -------------------------
# Dunning
# -------------------------
class DunningRecordRow(Base):
    __tablename__ = "dunning_records"

    user_id = Column(String, primary_key=True)
    state = Column(String, nullable=False, index=True)

    detected_at = Column(TIMESTAMP(timezone=True), nullable=False)
    last_updated_at = Column(TIMESTAMP(timezone=True), nullable=False)

    portal_url = Column(String, nullable=True)
    expires_at = Column(TIMESTAMP(timezone=True), nullable=True)

    payment_intent_id = Column(String, nullable=True)
    invoice_id = Column(String, nullable=True)
    subscription_id = Column(String, nullable=True)
    failure_code = Column(String, nullable=True)
    failure_reason = Column(String, nullable=True)


# -------------------------
# Product catalog (read-only here)
# -------------------------
class ProductRow(Base):
    __tablename__ = "products"

    product_id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    # {entitlements, usageLimits, addons, addonConfigs}
    definition = Column(JSON, nullable=False)


# -------------------------
# Trials
# -------------------------
class TrialRow(Base):
    __tablename__ = "trials"

    user_id = Column(String, primary_key=True)
    product_id = Column(String, primary_key=True)

    started_at = Column(TIMESTAMP(timezone=True), nullable=False)
    expires_at = Column(TIMESTAMP(timezone=True), nullable=False)
    status = Column(String, nullable=False, default="active")   # active | expired


# -------------------------
# Processed events (idempotency)
# -------------------------
class ProcessedEventRow(Base):
    __tablename__ = "processed_events"

    key = Column(String, primary_key=True)   # PAYMENT#<paymentIntentId> | USAGE#<idempotencyKey>
    processed_at = Column(TIMESTAMP(timezone=True), nullable=False)
    expires_at = Column(TIMESTAMP(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_processed_events_expires_at", "expires_at"),
    )
