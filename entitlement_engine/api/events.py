from __future__ import annotations

from fastapi import APIRouter, Depends

from entitlement_engine.core.deps import get_services_scope
from entitlement_engine.core.security import require_service_caller
from entitlement_engine.handlers.queue import ServicesScope, process_billing_batch, process_usage_batch
from entitlement_engine.schemas.api_models import QueueBatchRequest, BatchResponse, BatchItemFailure

router = APIRouter(prefix="/events", tags=["Events"], dependencies=[Depends(require_service_caller)])


@router.post("/billing", response_model=BatchResponse)
async def ingest_billing_events(
    body: QueueBatchRequest,
    scope: ServicesScope = Depends(get_services_scope),
):
    """
    Delivery endpoint for billing lifecycle events. Only the listed failures are redelivered.
    """
    failed = await process_billing_batch(body.Records, scope)
    return BatchResponse(batchItemFailures=[BatchItemFailure(itemIdentifier=m) for m in failed])


@router.post("/usage", response_model=BatchResponse)
async def ingest_usage_events(
    body: QueueBatchRequest,
    scope: ServicesScope = Depends(get_services_scope),
):
    failed = await process_usage_batch(body.Records, scope)
    return BatchResponse(batchItemFailures=[BatchItemFailure(itemIdentifier=m) for m in failed])
