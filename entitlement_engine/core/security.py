# entitlement_engine/core/security.py
from __future__ import annotations
import time
from typing import Optional, Dict, Any, List
import jwt
from fastapi import HTTPException, Request, status
from entitlement_engine.core.settings import settings


def verify_jwt_token(token: str) -> Dict[str, Any]:
    options = {"require": ["exp", "sub"], "verify_signature": True}
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE if settings.JWT_AUDIENCE else None,
            issuer=settings.JWT_ISSUER if settings.JWT_ISSUER else None,
            options=options,
        )
        return payload
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Invalid token: {e}")


def current_user_id(request: Request) -> str:
    """The authenticated subject; set by the auth middleware in main.py."""
    auth = getattr(request.state, "auth", None)
    if not auth or not auth.get("claims", {}).get("sub"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return str(auth["claims"]["sub"])


def token_scopes(claims: Dict[str, Any]) -> List[str]:
    # OAuth-style space-delimited string, or a JSON list
    raw = claims.get("scope") or claims.get("scp") or []
    if isinstance(raw, str):
        return raw.split()
    return [str(s) for s in raw]


def require_service_caller(request: Request) -> Dict[str, Any]:
    """
    Guard for event ingestion and the dunning tick. These act on arbitrary users, so a user
    token is not enough: the caller must hold SERVICE_SCOPE.
    """
    auth = getattr(request.state, "auth", None)
    claims = (auth or {}).get("claims") or {}
    if not claims.get("sub"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    if settings.SERVICE_SCOPE not in token_scopes(claims):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"type": "forbidden", "message": f"Scope '{settings.SERVICE_SCOPE}' required"},
        )
    return claims


def mint_dev_token(
    *,
    sub: Optional[str] = None,
    ttl_seconds: int = 3600,
    extra_claims: Optional[Dict[str, Any]] = None,
) -> str:
    """
    DEV ONLY: create a short-lived JWT for local testing.
    """
    now = int(time.time())
    payload: Dict[str, Any] = {
        "sub": sub or settings.DEV_JWT_SUBJECT,
        "iat": now,
        "exp": now + ttl_seconds,
    }
    if settings.JWT_ISSUER:
        payload["iss"] = settings.JWT_ISSUER
    if settings.JWT_AUDIENCE:
        payload["aud"] = settings.JWT_AUDIENCE
    if extra_claims:
        payload.update(extra_claims)
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
