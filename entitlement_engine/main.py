# entitlement_engine/main.py
from __future__ import annotations
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from entitlement_engine.core.deps import engine, _publisher_singleton
from entitlement_engine.core.logger import setup_logging
from entitlement_engine.core.security import verify_jwt_token, mint_dev_token
from entitlement_engine.core.settings import settings
from entitlement_engine.persistence.base import Base
from entitlement_engine.publishing.publisher import HttpTransport
from entitlement_engine.api import (
    entitlements,
    billing_issue,
    events,
    dunning,
    health,
    trials,
)

setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.STORE_BACKEND == "sql" and settings.DB_CREATE_TABLES:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    yield
    transport = _publisher_singleton().transport
    if isinstance(transport, HttpTransport):
        await transport.aclose()
    await engine.dispose()


app = FastAPI(title="Entitlement Engine", version="1.0.0", lifespan=lifespan)

# --- CORS ---
allow_origins = ["*"] if settings.CORS_ORIGINS == "*" else [o.strip() for o in settings.CORS_ORIGINS.split(",")]
allow_methods = ["*"] if settings.CORS_ALLOW_METHODS == "*" else [m.strip() for m in settings.CORS_ALLOW_METHODS.split(",")]
allow_headers = ["*"] if settings.CORS_ALLOW_HEADERS == "*" else [h.strip() for h in settings.CORS_ALLOW_HEADERS.split(",")]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=allow_methods,
    allow_headers=allow_headers,
)

# --- Routers ---
app.include_router(entitlements.router)
app.include_router(billing_issue.router)
app.include_router(events.router)
app.include_router(dunning.router)
app.include_router(trials.router)
app.include_router(health.router)

# Paths that bypass auth (health and docs)
AUTH_EXEMPT_PREFIXES = (
    "/health",
    "/docs",
    "/redoc",
    "/openapi.json",
    "/docs/oauth2-redirect",
    "/favicon.ico",
    "/auth/dev-token",
)


@app.middleware("http")
async def authenticate_request(request: Request, call_next):
    # CORS preflight
    if request.method == "OPTIONS":
        return await call_next(request)

    path = request.url.path
    if any(path.startswith(p) for p in AUTH_EXEMPT_PREFIXES):
        return await call_next(request)

    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return JSONResponse({"error": "Missing or invalid Authorization header"}, status_code=401)

    token = auth_header.split("Bearer ", 1)[1].strip()
    try:
        claims = verify_jwt_token(token)
        request.state.auth = {"claims": claims}
    except Exception as e:
        return JSONResponse({"error": f"Unauthorized: {e}"}, status_code=401)

    return await call_next(request)

# --- Dev-only token minting ---
if settings.DEV_MODE:
    from fastapi import APIRouter, Query
    dev_auth = APIRouter(prefix="/auth", tags=["Auth (dev)"])

    @dev_auth.get("/dev-token")
    def get_dev_token(
        sub: str = Query(default=None),
        ttl: int = Query(default=3600),
        scope: str = Query(default=None),
    ):
        """
        Mint a short-lived JWT for local testing. Pass scope=entitlements:service for a
        token that may post events and run the dunning tick.
        """
        token = mint_dev_token(sub=sub, ttl_seconds=ttl, extra_claims={"scope": scope} if scope else None)
        return {"token": token, "expiresIn": ttl}

    app.include_router(dev_auth)
