from __future__ import annotations

from fastapi import APIRouter, Depends

from entitlement_engine.api.errors import http_error
from entitlement_engine.core.deps import Services, get_services
from entitlement_engine.core.security import current_user_id
from entitlement_engine.domain.errors import EngineError
from entitlement_engine.schemas.api_models import BillingIssueResponse

router = APIRouter(prefix="/billing-issue", tags=["Dunning"])


@router.get("", response_model=BillingIssueResponse)
async def get_billing_issue(
    user_id: str = Depends(current_user_id),
    services: Services = Depends(get_services),
):
    """
    Billing health of the caller. A missing dunning record means no issue.
    """
    try:
        issue = await services.billing_issue.execute(user_id)
    except EngineError as e:
        raise http_error(e)
    # a due transition may have been applied while answering
    await services.commit()
    return BillingIssueResponse.from_issue(issue)
