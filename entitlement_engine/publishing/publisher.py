# entitlement_engine/publishing/publisher.py
from __future__ import annotations
import uuid
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable

import httpx
import structlog

from entitlement_engine.domain.events import EntitlementEventType, EntitlementEventPayload, EventMeta
from entitlement_engine.domain.timeutil import utcnow, iso
from entitlement_engine.stores.types import EventTransport

log = structlog.get_logger(__name__)

EVENT_VERSION = 1


class MemoryTransport:
    """
    Keeps every sent envelope in order. `fail_with` makes send() raise, for exercising
    the swallow-on-publish-failure path.
    """

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.fail_with: Optional[Exception] = None

    async def send(self, event: Dict[str, Any]) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(event)

    def of_type(self, event_type: EntitlementEventType | str) -> List[Dict[str, Any]]:
        wanted = getattr(event_type, "value", event_type)
        return [e for e in self.sent if e["type"] == wanted]


class HttpTransport:
    """POSTs each envelope as JSON to a fan-out endpoint."""

    def __init__(self, url: str, *, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, event: Dict[str, Any]) -> None:
        resp = await self._client.post(
            self.url,
            json=event,
            headers={"X-Event-Type": event["type"]},
        )
        resp.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()


class EntitlementEventPublisher:
    """
    Producer of entitlement.{created,updated,revoked}.

    A deferred publisher (see `for_unit_of_work`) holds envelopes until `flush()`, which the
    unit of work calls only after its commit succeeded; `discard()` drops them on rollback.
    Transport errors are logged and swallowed; they never fail the event being processed.
    """

    def __init__(
        self,
        transport: EventTransport,
        *,
        clock: Callable[[], datetime] = utcnow,
        deferred: bool = False,
    ):
        self.transport = transport
        self._clock = clock
        self.deferred = deferred
        self._pending: List[Dict[str, Any]] = []

    def for_unit_of_work(self) -> "EntitlementEventPublisher":
        """A buffering publisher over the same transport, private to one unit of work."""
        return EntitlementEventPublisher(self.transport, clock=self._clock, deferred=True)

    @property
    def pending(self) -> List[Dict[str, Any]]:
        return list(self._pending)

    async def publish_created(self, payload: EntitlementEventPayload, meta: EventMeta) -> bool:
        return await self._publish(EntitlementEventType.CREATED, payload, meta)

    async def publish_updated(self, payload: EntitlementEventPayload, meta: EventMeta) -> bool:
        return await self._publish(EntitlementEventType.UPDATED, payload, meta)

    async def publish_revoked(self, payload: EntitlementEventPayload, meta: EventMeta) -> bool:
        return await self._publish(EntitlementEventType.REVOKED, payload, meta)

    def internal_meta(self, *, prefix: str, user_id: str, correlation_id: Optional[str] = None) -> EventMeta:
        """Metadata for events this service originates (e.g. suspension revocations)."""
        now = self._clock()
        return EventMeta(
            eventId=f"{prefix}-{user_id}-{int(now.timestamp() * 1000)}-{uuid.uuid4().hex[:8]}",
            occurredAt=iso(now),
            source="internal",
            correlationId=correlation_id,
        )

    async def flush(self) -> int:
        """Sends everything buffered, in order. Returns how many envelopes were delivered."""
        pending, self._pending = self._pending, []
        delivered = 0
        for envelope in pending:
            if await self._send(envelope):
                delivered += 1
        return delivered

    def discard(self) -> int:
        dropped = len(self._pending)
        if dropped:
            log.info("entitlement_event.discarded", count=dropped)
        self._pending = []
        return dropped

    async def _publish(
        self,
        event_type: EntitlementEventType,
        payload: EntitlementEventPayload,
        meta: EventMeta,
    ) -> bool:
        envelope = {
            "type": event_type.value,
            "payload": payload.model_dump(exclude_none=True),
            "meta": meta.model_dump(exclude_none=True),
            "version": EVENT_VERSION,
        }
        if self.deferred:
            self._pending.append(envelope)
            return True
        return await self._send(envelope)

    async def _send(self, envelope: Dict[str, Any]) -> bool:
        payload = envelope["payload"]
        try:
            await self.transport.send(envelope)
        except Exception as e:
            log.error(
                "entitlement_event.publish_failed",
                event_type=envelope["type"],
                user_id=payload.get("userId"),
                entitlement_key=payload.get("entitlementKey"),
                error=str(e),
            )
            return False
        log.info(
            "entitlement_event.published",
            event_type=envelope["type"],
            user_id=payload.get("userId"),
            entitlement_key=payload.get("entitlementKey"),
        )
        return True
