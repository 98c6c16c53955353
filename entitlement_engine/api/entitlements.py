from __future__ import annotations

from fastapi import APIRouter, Depends

from entitlement_engine.api.errors import http_error
from entitlement_engine.core.deps import Services, get_services
from entitlement_engine.core.security import current_user_id
from entitlement_engine.domain.errors import EngineError
from entitlement_engine.schemas.api_models import EntitlementsResponse

router = APIRouter(prefix="/entitlements", tags=["Entitlements"])


@router.get("", response_model=EntitlementsResponse)
async def get_entitlements(
    user_id: str = Depends(current_user_id),
    services: Services = Depends(get_services),
):
    """
    Active entitlements of the caller. Metered ones report {limit, used} after any due reset.
    """
    try:
        view = await services.queries.get_user_entitlements(user_id)
    except EngineError as e:
        raise http_error(e)
    await services.commit()
    return EntitlementsResponse(userId=user_id, entitlements=view)


@router.get("/{entitlement_key}", response_model=EntitlementsResponse)
async def get_entitlement(
    entitlement_key: str,
    user_id: str = Depends(current_user_id),
    services: Services = Depends(get_services),
):
    try:
        view = await services.queries.get_user_entitlement_by_key(user_id, entitlement_key)
    except EngineError as e:
        raise http_error(e)
    await services.commit()
    return EntitlementsResponse(userId=user_id, entitlements=view)
