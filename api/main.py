"""
api/main.py -- FastAPI application entry point for Warden.

A thin HTTP adapter over AuthorizationFacade. No business rules live here:
handlers parse the request, call the facade, and map results and typed
errors onto the JSON contract in api/models.py.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the component graph (store -> resolver -> cache -> session
manager -> facade) on startup and tears it down symmetrically on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from auth.audit import AuditDispatcher, AuditSink, LoggingAuditSink
from auth.errors import AuthError, DataIntegrityError, Timeout
from auth.facade import AuthorizationFacade
from auth.resolver import PermissionResolver
from auth.sessions import SessionManager
from auth.store import CredentialStore
from auth.tokens import utcnow
from cache.store import PermissionCache
from core.config import Settings, get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("warden.api")


# ---------------------------------------------------------------------------
# Component assembly
# ---------------------------------------------------------------------------


def build_facade(
    settings: Settings,
    store: CredentialStore | None = None,
    clock: Callable[[], datetime] = utcnow,
    audit_sink: AuditSink | None = None,
) -> AuthorizationFacade:
    """Wire store, resolver, cache, session manager, and audit into one facade.

    Shared by the app lifespan, the CLI, and the test fixtures so all three
    assemble the same graph.
    """
    store = store or CredentialStore(settings.database_url)
    audit_dispatcher = AuditDispatcher(audit_sink or LoggingAuditSink())
    resolver = PermissionResolver(store, clock=clock, max_depth=settings.hierarchy_max_depth)
    cache = PermissionCache(
        resolver,
        ttl=settings.permission_cache_ttl_seconds,
        max_entries=settings.permission_cache_max_entries,
        clock=clock,
    )
    sessions = SessionManager(store, settings, clock=clock, audit_dispatcher=audit_dispatcher)
    return AuthorizationFacade(store, resolver, cache, sessions, audit_dispatcher, settings, clock=clock)


# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI, interval: int) -> None:
    """Deactivate lapsed sessions and purge expired cache entries every `interval` seconds.

    Lazy expiry in validate_token() stays authoritative; this only keeps the
    sessions table and the cache tidy. The sweep runs in a worker thread so
    its database I/O never blocks the event loop. CancelledError from
    task.cancel() during shutdown propagates out of asyncio.sleep.
    """
    while True:
        await asyncio.sleep(interval)
        facade: AuthorizationFacade = app.state.facade
        try:
            await asyncio.to_thread(facade.sessions.sweep_expired)
        except SQLAlchemyError:
            logger.exception("Session sweep failed; retrying next interval")
        purged = facade.cache.purge_expired()
        if purged:
            logger.info("Purged %d expired permission cache entries", purged)


# ---------------------------------------------------------------------------
# Lifespan -- owns the facade and the session sweep task
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the facade on startup and release its store and audit pool on exit.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The sweep task is started last because it reads app.state.facade.
    """
    settings = get_settings()
    logger.info("Warden API starting up")
    app.state.facade = build_facade(settings)
    logger.info("Credential store ready (%s)", app.state.facade.store.engine.url.render_as_string(hide_password=True))
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app, settings.session_sweep_interval_seconds))

    yield

    app.state.sweep_task.cancel()
    app.state.facade.audit.shutdown()
    app.state.facade.store.close()
    logger.info("Warden API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Warden API",
    description="Authentication, role-based authorization, and session lifecycle.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=get_settings().allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler. Tokens and secrets are never logged -- only method, path, status,
# latency, and client address.
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

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every failure leaves as {"error": {"code", "message", "detail"?}}. The code
# is the stable, machine-readable part; clients should branch on it only.
# ---------------------------------------------------------------------------


def error_response(
    status_code: int,
    code: str,
    message: str,
    detail: str | None = None,
    no_store: bool = False,
) -> JSONResponse:
    """Build the shared error envelope. no_store marks responses about credentials [M5]."""
    response = JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )
    if no_store:
        response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Typed core failure -> its own status and code, with the class's client-safe message.

    DataIntegrityError and Timeout mean nothing could be decided; they are
    logged at ERROR so they alert.
    """
    if isinstance(exc, (DataIntegrityError, Timeout)):
        logger.error("%s on %s %s", exc.code, request.method, request.url.path)
    return error_response(exc.status_code, exc.code, exc.message, no_store=True)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning("Rate limit hit on %s from %s", request.url.path, request.client.host if request.client else "?")
    response = error_response(429, "rate_limited", "Too many requests.", detail=str(exc))
    response.headers["Retry-After"] = str(int(getattr(exc, "retry_after", 60)))
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(422, "validation_error", "Request validation failed.", detail=str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Routes raise HTTPException with a {"code", "message"} dict; pass it through as the error."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything unexpected: full traceback to the log, nothing internal to the client."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and credential store reachability."""
    try:
        database = "ok" if request.app.state.facade.store.ping() else "error"
    except SQLAlchemyError:
        logger.exception("Health check could not reach the credential store")
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )
