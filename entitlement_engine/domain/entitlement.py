from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any

from entitlement_engine.domain.errors import DomainError
from entitlement_engine.domain.keys import EntitlementKey, EntitlementRole, EntitlementStatus
from entitlement_engine.domain.timeutil import parse_iso, iso
from entitlement_engine.domain.usage import UsageCounter


def coerce_key(key: EntitlementKey | str) -> EntitlementKey:
    try:
        return EntitlementKey(key)
    except ValueError:
        raise DomainError(f"Unknown entitlement key '{key}'")


@dataclass
class Entitlement:
    """
    A user's grant of one capability. Revocation is a status change, never a delete.
    """
    user_id: str
    key: EntitlementKey
    role: EntitlementRole
    status: EntitlementStatus
    granted_at: datetime
    expires_at: Optional[datetime] = None
    usage: Optional[UsageCounter] = None

    @classmethod
    def grant(
        cls,
        *,
        user_id: str,
        key: EntitlementKey | str,
        role: EntitlementRole,
        now: datetime,
        expires_at: Optional[datetime] = None,
        usage_limit: Optional[int] = None,
    ) -> "Entitlement":
        return cls(
            user_id=user_id,
            key=coerce_key(key),
            role=role,
            status=EntitlementStatus.ACTIVE,
            granted_at=now,
            expires_at=expires_at,
            usage=UsageCounter(limit=usage_limit) if usage_limit is not None else None,
        )

    def is_active(self, now: datetime) -> bool:
        if self.status != EntitlementStatus.ACTIVE:
            return False
        if self.expires_at is None:
            return True
        return now < self.expires_at

    # ---------- lifecycle ----------

    def activate(self, expires_at: Optional[datetime] = None) -> None:
        """Re-assert the grant. An absent expiry keeps the stored one."""
        self.status = EntitlementStatus.ACTIVE
        if expires_at is not None:
            self.extend_expiry(expires_at)

    def extend_expiry(self, expires_at: datetime) -> None:
        if expires_at is None:
            raise DomainError("extend_expiry requires a timestamp")
        self.expires_at = expires_at

    def activate_until_at_least(self, expires_at: datetime, *, now: datetime) -> None:
        """
        Time-boxed re-grant (trials). Never shortens access: a later stored expiry wins, and a
        grant that is active with no expiry stays open-ended.
        """
        open_ended = self.expires_at is None and self.is_active(now)
        self.status = EntitlementStatus.ACTIVE
        if open_ended:
            return
        if self.expires_at is None or expires_at > self.expires_at:
            self.expires_at = expires_at

    def schedule_expiry(self, expires_at: datetime) -> None:
        """Cancel at period end: status is untouched, access lapses at `expires_at`."""
        self.extend_expiry(expires_at)

    def revoke(self) -> None:
        self.status = EntitlementStatus.REVOKED
        self.expires_at = None

    def attach_usage(self, counter: UsageCounter) -> None:
        if self.usage is not None:
            raise DomainError(f"Entitlement '{self.key.value}' already tracks usage")
        self.usage = counter

    def reset_usage_if_due(self, now: datetime) -> bool:
        """
        Lazy reset. Returns True when the counter was zeroed and the entitlement must be persisted.
        """
        if self.usage is not None and self.usage.should_reset(now):
            self.usage.reset(now)
            return True
        return False

    # ---------- views ----------

    def usage_view(self) -> Dict[str, Any] | bool:
        if self.usage is None:
            return True
        return {"limit": self.usage.effective_limit(), "used": self.usage.used}

    # ---------- mapping ----------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "entitlementKey": self.key.value,
            "role": self.role.value,
            "status": self.status.value,
            "grantedAt": iso(self.granted_at),
            "expiresAt": iso(self.expires_at),
            "usage": self.usage.to_dict() if self.usage else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Entitlement":
        return cls(
            user_id=data["userId"],
            key=coerce_key(data["entitlementKey"]),
            role=EntitlementRole(data.get("role") or EntitlementRole.LEARNER.value),
            status=EntitlementStatus(data["status"]),
            granted_at=parse_iso(data["grantedAt"]),
            expires_at=parse_iso(data.get("expiresAt")),
            usage=UsageCounter.from_dict(data["usage"]) if data.get("usage") else None,
        )
