from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, status

from entitlement_engine.api.errors import http_error
from entitlement_engine.core.deps import Services, get_services
from entitlement_engine.core.security import current_user_id
from entitlement_engine.domain.errors import EngineError
from entitlement_engine.domain.timeutil import iso
from entitlement_engine.schemas.api_models import StartTrialRequest, StartTrialResponse, TrialStatusResponse

router = APIRouter(prefix="/trials", tags=["Trials"])


@router.post("", response_model=StartTrialResponse, status_code=status.HTTP_201_CREATED)
async def start_trial(
    body: StartTrialRequest,
    user_id: str = Depends(current_user_id),
    services: Services = Depends(get_services),
):
    """
    Start the caller's one trial of a product. A second attempt answers 409.
    """
    duration = timedelta(hours=body.trialDurationHours) if body.trialDurationHours else None
    try:
        started = await services.start_trial.execute(user_id, body.productId, duration=duration)
    except EngineError as e:
        await services.rollback()
        raise http_error(e)
    await services.commit()
    return StartTrialResponse(
        trialId=started.trial_id,
        expiresAt=iso(started.expires_at),
        entitlements=started.entitlement_keys,
    )


@router.get("/{product_id}", response_model=TrialStatusResponse)
async def get_trial_status(
    product_id: str,
    user_id: str = Depends(current_user_id),
    services: Services = Depends(get_services),
):
    view = await services.trial_status.execute(user_id, product_id)
    # a lapsed trial may just have been marked expired
    await services.commit()
    return TrialStatusResponse.from_view(product_id, view)
