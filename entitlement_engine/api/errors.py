from __future__ import annotations

from fastapi import HTTPException, status

from entitlement_engine.domain.errors import (
    EngineError,
    NotFoundError,
    UsageExceeded,
    DomainError,
    EventValidationError,
    TrialAlreadyUsed,
)


def http_error(e: EngineError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail={"type": "not_found", "message": str(e)})
    if isinstance(e, UsageExceeded):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"type": "usage_exceeded", "message": str(e), "limit": e.limit, "used": e.used},
        )
    if isinstance(e, TrialAlreadyUsed):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail={"type": "conflict", "message": str(e)})
    if isinstance(e, EventValidationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"type": "validation_error", "message": str(e)},
        )
    if isinstance(e, DomainError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"type": "domain_error", "message": str(e)},
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"type": "engine_error", "message": str(e)})
