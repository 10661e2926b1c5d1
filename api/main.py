"""
api/main.py -- FastAPI application entry point for PenTrack auth.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- signed cookie for pre-login OIDC state, nonce
                              and intended-role hint (never the principal)

Lifespan builds the stores, the federated verifier (when configured) and the
access control gate, and hangs them on app.state. Routes and dependencies
read collaborators from app.state only, so tests swap the lifespan to inject
in-memory stores and a fake provider.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorResponse, HealthResponse
from api.routes.auth import router as auth_router
from api.routes.users import router as users_router
from auth.audit import AuditLog
from auth.errors import AuthError, UnknownPrincipalShape
from auth.gate import AccessControlGate
from auth.oidc import FederatedTokenVerifier, ProviderConfigCache
from auth.refresh import TokenRefreshManager
from auth.store import UserStore
from core.config import Settings, get_settings
from sessions.store import SessionStore

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("pentrack.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired session rows every hour.

    Expired rows are already invisible to load(); this only keeps the table
    small. CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(60 * 60)
        removed = app.state.session_store.purge_expired()
        if removed:
            logger.info("Purged %d expired sessions", removed)


def build_verifier(settings: Settings) -> FederatedTokenVerifier | None:
    """Return the federated verifier, or None when no provider is configured."""
    if not settings.oidc_enabled:
        return None
    cache = ProviderConfigCache(
        settings.oidc_issuer_url,
        ttl_seconds=settings.oidc_discovery_ttl_seconds,
        timeout=settings.oidc_http_timeout_seconds,
    )
    return FederatedTokenVerifier(
        cache,
        settings.oidc_client_id,
        settings.oidc_client_secret,
        scope=settings.oidc_scope,
        timeout=settings.oidc_http_timeout_seconds,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create application-level collaborators on startup, release them on shutdown.

    Startup order matters:
      1. Stores first -- everything else reads or writes through them.
      2. Verifier and refresh manager -- the gate depends on both.
      3. Purge task last -- references app.state.session_store.
    """
    logger.info("PenTrack auth starting up (environment=%s)", settings.environment)
    app.state.settings = settings
    app.state.user_store = UserStore(settings.database_url) if settings.database_url else UserStore()
    app.state.session_store = SessionStore(settings.session_db_url) if settings.session_db_url else SessionStore()
    app.state.audit = AuditLog(app.state.user_store.engine)

    app.state.verifier = build_verifier(settings)
    if app.state.verifier is None:
        logger.info("Federated login disabled (OIDC_ISSUER_URL / OIDC_CLIENT_ID not set)")
    else:
        logger.info("Federated login enabled (issuer=%s)", settings.oidc_issuer_url)

    app.state.gate = AccessControlGate(
        app.state.session_store,
        app.state.user_store,
        TokenRefreshManager(app.state.verifier),
        settings.session_ttl_seconds,
    )
    if not app.state.user_store.has_admin():
        logger.info("No admin account yet -- the first account created becomes admin")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.session_store.close()
    app.state.user_store.close()
    logger.info("PenTrack auth shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="PenTrack Auth API",
    description="Authentication, sessions and role-based access control for PenTrack.",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs" if settings.is_development else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI -> Session.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# Signed, not encrypted: holds only the OIDC state/nonce and the role hint
# between /api/login and /api/callback. Principals live in the session store.
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.secret_key,
    session_cookie="pentrack_login",
    max_age=600,
    same_site="lax",
    https_only=settings.secure_cookies,
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api", tags=["Auth"])
app.include_router(users_router, prefix="/api", tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Auth failures use the {"message", "code"} body the browser client expects.
# Everything else uses the same envelope with an optional detail string.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Terminate the request with the error's own status (401 or 403)."""
    response = JSONResponse(status_code=exc.status_code, content=exc.to_dict())
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(UnknownPrincipalShape)
async def unknown_principal_handler(request: Request, exc: UnknownPrincipalShape) -> JSONResponse:
    logger.exception("Refusing to persist unknown principal shape on %s", request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(code="internal_error", message="An unexpected error occurred.").model_dump(
            exclude_none=True
        ),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(code="rate_limited", message="Too many requests.", detail=str(exc)).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            code="validation_error",
            message="Request validation failed.",
            detail=str(exc.errors()),
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Route handlers raise HTTPException(detail={"code", "message"}); pass that through."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content=exc.detail, headers=exc.headers)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(code=f"http_{exc.status_code}", message=str(exc.detail)).model_dump(exclude_none=True),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors. The traceback goes to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(code="internal_error", message="An unexpected error occurred.").model_dump(
            exclude_none=True
        ),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit and no auth -- load balancers must always reach it.
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return liveness, version and database reachability."""
    components = {"app": "ok", "database": "ok"}
    try:
        with request.app.state.user_store.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        components["database"] = "error"
    status = "healthy" if components["database"] == "ok" else "degraded"
    return HealthResponse(status=status, version=__version__, components=components)
