from __future__ import annotations
import asyncio
import json
from collections import OrderedDict
from contextlib import AbstractAsyncContextManager
from typing import Any, Awaitable, Callable, Dict, List, Sequence, Tuple

import structlog

from entitlement_engine.core.deps import Services
from entitlement_engine.core.logger import bind_event_context
from entitlement_engine.domain.errors import EventValidationError
from entitlement_engine.domain.events import BillingEvent, UsageEvent, parse_billing_event, parse_usage_event
from entitlement_engine.schemas.api_models import QueueRecord
from entitlement_engine.schemas.validator import validate_billing_envelope, validate_usage_event

log = structlog.get_logger(__name__)

ServicesScope = Callable[[], AbstractAsyncContextManager[Services]]


def _load_body(record: QueueRecord) -> Dict[str, Any]:
    try:
        body = json.loads(record.body)
    except ValueError as e:
        raise EventValidationError(f"Message {record.messageId} is not valid JSON: {e}") from e
    # fan-out envelopes wrap the event in a "Message" string
    if isinstance(body, dict) and isinstance(body.get("Message"), str) and "type" not in body:
        return _load_body(QueueRecord(messageId=record.messageId, body=body["Message"]))
    return body


def parse_billing_record(record: QueueRecord) -> BillingEvent:
    body = _load_body(record)
    validate_billing_envelope(body)
    return parse_billing_event(body)


def parse_usage_record(record: QueueRecord) -> UsageEvent:
    body = _load_body(record)
    validate_usage_event(body)
    return parse_usage_event(body)


async def _run_batch(
    records: Sequence[QueueRecord],
    *,
    parse: Callable[[QueueRecord], Any],
    user_of: Callable[[Any], str],
    apply: Callable[[Services, Any], Awaitable[Any]],
    scope: ServicesScope,
    kind: str,
) -> List[str]:
    """
    Returns the messageIds that failed. Malformed messages fail on their own; the rest are
    grouped per user so one user's messages apply in order while users run concurrently.
    """
    failed: List[str] = []
    per_user: "OrderedDict[str, List[Tuple[QueueRecord, Any]]]" = OrderedDict()

    for record in records:
        try:
            event = parse(record)
        except EventValidationError as e:
            log.warning(f"{kind}.malformed", message_id=record.messageId, error=str(e))
            failed.append(record.messageId)
            continue
        per_user.setdefault(user_of(event), []).append((record, event))

    async def run_user(items: List[Tuple[QueueRecord, Any]]) -> List[str]:
        user_failed: List[str] = []
        for record, event in items:
            meta = getattr(event, "meta", None)
            bind_event_context(
                message_id=record.messageId,
                event_id=meta.eventId if meta else None,
                correlation_id=meta.correlationId if meta else None,
            )
            async with scope() as services:
                try:
                    await apply(services, event)
                    await services.commit()
                except Exception:
                    await services.rollback()
                    log.exception(f"{kind}.failed", message_id=record.messageId)
                    user_failed.append(record.messageId)
                else:
                    log.info(f"{kind}.processed", message_id=record.messageId)
        return user_failed

    results = await asyncio.gather(*(run_user(items) for items in per_user.values()))
    for user_failed in results:
        failed.extend(user_failed)
    return failed


async def process_billing_batch(records: Sequence[QueueRecord], scope: ServicesScope) -> List[str]:
    async def apply(services: Services, event: BillingEvent) -> None:
        await services.billing.handle(event)

    return await _run_batch(
        records,
        parse=parse_billing_record,
        user_of=lambda e: e.payload.userId,
        apply=apply,
        scope=scope,
        kind="billing_event",
    )


async def process_usage_batch(records: Sequence[QueueRecord], scope: ServicesScope) -> List[str]:
    async def apply(services: Services, event: UsageEvent) -> None:
        await services.usage.handle(event)

    return await _run_batch(
        records,
        parse=parse_usage_record,
        user_of=lambda e: e.userId,
        apply=apply,
        scope=scope,
        kind="usage_event",
    )
