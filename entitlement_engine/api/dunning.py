from __future__ import annotations

from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends

from entitlement_engine.core.deps import get_services_scope
from entitlement_engine.core.security import require_service_caller
from entitlement_engine.handlers.queue import ServicesScope
from entitlement_engine.schemas.api_models import DunningTickRequest, DunningTickResponse, DunningTransitionItem

router = APIRouter(prefix="/dunning", tags=["Dunning"], dependencies=[Depends(require_service_caller)])
log = structlog.get_logger(__name__)


async def _open_user_ids(scope: ServicesScope, *, page_size: int) -> List[str]:
    # collected before any record moves: a record reaching SUSPENDED leaves the open set
    # and would shift later pages
    user_ids: List[str] = []
    offset = 0
    while True:
        async with scope() as services:
            page = await services.dunning_store.list_open_user_ids(limit=page_size, offset=offset)
        user_ids.extend(page)
        if len(page) < page_size:
            return user_ids
        offset += len(page)


@router.post("/tick", response_model=DunningTickResponse)
async def dunning_tick(
    body: Optional[DunningTickRequest] = None,
    scope: ServicesScope = Depends(get_services_scope),
):
    """
    Scheduled sweep: advance every open dunning record whose threshold has passed,
    then drop expired processed-event markers. Each user commits on its own.
    """
    body = body or DunningTickRequest()
    if body.userIds is not None:
        user_ids: List[str] = list(body.userIds)
    else:
        user_ids = await _open_user_ids(scope, page_size=body.limit)

    transitions: List[DunningTransitionItem] = []
    failures: List[str] = []
    for user_id in user_ids:
        async with scope() as services:
            try:
                transition = await services.dunning.process_state_transitions(user_id)
                await services.commit()
            except Exception:
                await services.rollback()
                log.exception("dunning.tick_failed", user_id=user_id)
                failures.append(user_id)
                continue
        if transition is not None:
            transitions.append(
                DunningTransitionItem(
                    userId=user_id,
                    fromState=transition.from_state.value,
                    toState=transition.to_state.value,
                )
            )

    async with scope() as services:
        purged = await services.processed.purge_expired()
        await services.commit()

    log.info("dunning.tick", checked=len(user_ids), transitioned=len(transitions), failed=len(failures))
    return DunningTickResponse(
        checked=len(user_ids),
        transitions=transitions,
        failures=failures,
        purgedProcessedEvents=purged,
    )
