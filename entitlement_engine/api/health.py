from fastapi import APIRouter

from entitlement_engine.core.settings import settings

router = APIRouter(tags=["Health"])


@router.get("/health")
def health():
    return {"status": "ok", "service": settings.APP_NAME, "env": settings.ENV}
