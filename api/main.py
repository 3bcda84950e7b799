"""
api/main.py -- FastAPI application entry point for Warden.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- one log line per response with latency
  2. audit_requests        -- builds an AuditEvent after the response and hands
                              it to the AuditRecorder (never waits for the DB)
  3. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  4. CORSMiddleware        -- adds CORS headers for allowed browser origins
  5. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (stores, services, audit workers, token sweep task)
and shutdown (cancel sweep, drain audit queue, close stores) symmetrically.

Per request the order is: token validation -> authorization -> business
operation -> audit. Only the first two can stop the operation.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.audit import router as audit_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.modules import router as modules_router
from api.routes.v1.permission_kinds import router as permission_kinds_router
from api.routes.v1.roles import router as roles_router
from api.routes.v1.users import router as users_router
from audit.capture import build_event
from audit.recorder import AuditRecorder
from audit.store import AuditStore
from auth.dependencies import get_current_principal
from auth.models import Principal
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import TokenAuthority
from core.config import Settings, get_settings
from core.errors import (
    Conflict,
    ExpiredToken,
    Forbidden,
    InvalidCredentials,
    InvalidGrant,
    NotFound,
    RevokedToken,
    Unauthenticated,
    Unavailable,
    WardenError,
)
from rbac.authorizer import Authorizer
from rbac.store import RBACStore

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("warden.api")

# Requests that are never audited: liveness probes and the docs pages.
_AUDIT_EXEMPT = ("/api/v1/health", "/docs", "/redoc", "/openapi.json")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def attach_services(
    app: FastAPI,
    settings: Settings,
    user_store: UserStore,
    rbac_store: RBACStore,
    audit_store: AuditStore,
) -> None:
    """Build the services on top of the given stores and publish them on app.state.

    The lifespan calls this with stores on settings.database_url; tests call it
    with in-memory stores. The audit recorder is created and started here.
    """
    authority = TokenAuthority(settings, user_store)
    app.state.settings = settings
    app.state.user_store = user_store
    app.state.rbac_store = rbac_store
    app.state.audit_store = audit_store
    app.state.token_authority = authority
    app.state.authorizer = Authorizer(settings, rbac_store)
    app.state.auth_service = AuthService(user_store, rbac_store, authority)
    app.state.audit_recorder = AuditRecorder(
        audit_store,
        max_queue=settings.audit_queue_size,
        workers=settings.audit_workers,
        max_attempts=settings.audit_max_attempts,
    )
    app.state.audit_recorder.start()


# ---------------------------------------------------------------------------
# Background token sweep
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI, interval: int) -> None:
    """Delete expired blacklist rows every interval seconds.

    One task, one sweep at a time: the next sleep starts only after the
    current sweep returns. The store call is blocking, so it runs in a worker
    thread. A failed sweep is logged and retried on the next tick.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(app.state.token_authority.sweep_expired)
        except Exception:
            logger.exception("Token blacklist sweep failed")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Stores first -- RBACStore seeds the permission catalog.
      2. Services and audit workers -- depend on the stores.
      3. Sweep task last -- references app.state.token_authority.
    """
    logger.info("Warden API starting up")
    settings = get_settings()
    attach_services(
        app,
        settings,
        UserStore(settings.database_url),
        RBACStore(settings.database_url, settings.superuser_role_name),
        AuditStore(settings.database_url),
    )
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app, settings.token_sweep_interval_seconds))
    logger.info("Warden API ready (superuser role %s)", settings.superuser_role_name)

    yield

    app.state.sweep_task.cancel()
    app.state.audit_recorder.shutdown()
    app.state.user_store.close()
    app.state.rbac_store.close()
    app.state.audit_store.close()
    logger.info("Warden API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="Warden API",
    description="Role-based access control, session tokens and an audit trail for administrative applications.",
    version=VERSION,
    lifespan=lifespan,
    # Disable built-in /docs and /redoc so we can add auth protection.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() inserts at the front of the stack, so the LAST registered
# middleware is the OUTERMOST. The @app.middleware("http") functions below
# are registered after these three and therefore wrap them.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Audit capture middleware
#
# Handlers and the auth gate leave breadcrumbs on request.state (principal,
# audit_module, permission_used, audit_before, audit_after). After the
# response is produced they are folded into one AuditEvent and queued. The
# response is never delayed by the database and never fails because of it.
# ---------------------------------------------------------------------------


def _audit(request: Request, status_code: int) -> None:
    state = request.state
    principal: Principal | None = getattr(state, "principal", None)
    recorder: AuditRecorder | None = getattr(request.app.state, "audit_recorder", None)
    if recorder is None:
        return
    try:
        audit_event = build_event(
            request.method,
            request.url.path,
            status_code,
            actor_user_id=principal.user_id if principal else None,
            actor_email=principal.email if principal else getattr(state, "audit_actor_email", None),
            actor_role=principal.role_name if principal else None,
            module=getattr(state, "audit_module", None),
            permission_used=getattr(state, "permission_used", None),
            before_state=getattr(state, "audit_before", None),
            after_state=getattr(state, "audit_after", None),
            ip=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
    except Exception:
        # A malformed audit payload must not turn a finished request into a 500.
        logger.exception("Could not build audit event for %s %s", request.method, request.url.path)
        return
    recorder.record(audit_event)


@app.middleware("http")
async def audit_requests(request: Request, call_next):
    if request.url.path.startswith(_AUDIT_EXEMPT) or request.method == "OPTIONS":
        return await call_next(request)
    try:
        response = await call_next(request)
    except Exception:
        _audit(request, 500)
        raise
    _audit(request, response.status_code)
    return response


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor / Chain of Responsibility. We capture wall-clock time
# before and after call_next so we can report latency on every response.
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
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(roles_router, prefix="/api/v1", tags=["Roles"])
app.include_router(modules_router, prefix="/api/v1", tags=["Modules"])
app.include_router(permission_kinds_router, prefix="/api/v1", tags=["Permission kinds"])
app.include_router(audit_router, prefix="/api/v1", tags=["Audit"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(principal: Principal = Depends(get_current_principal)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Warden API")


@app.get("/redoc", include_in_schema=False)
async def redoc(principal: Principal = Depends(get_current_principal)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="Warden API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------

# Most specific classes first -- the first isinstance() match wins.
_ERROR_MAP: tuple[tuple[type[WardenError], int, str], ...] = (
    (InvalidCredentials, 401, "bad_credentials"),
    (ExpiredToken, 401, "token_expired"),
    (RevokedToken, 401, "token_revoked"),
    (Unauthenticated, 401, "unauthorized"),
    (Forbidden, 403, "forbidden"),
    (NotFound, 404, "not_found"),
    (Conflict, 409, "conflict"),
    (InvalidGrant, 422, "invalid_grant"),
    (Unavailable, 503, "unavailable"),
)


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(WardenError)
async def warden_error_handler(request: Request, exc: WardenError) -> JSONResponse:
    """Map the core error taxonomy onto HTTP statuses."""
    status_code, code = 500, "internal_error"
    for error_class, mapped_status, mapped_code in _ERROR_MAP:
        if isinstance(exc, error_class):
            status_code, code = mapped_status, mapped_code
            break
    detail = None
    if isinstance(exc, InvalidGrant) and exc.module_id is not None:
        detail = f"module_id={exc.module_id}"
    response = _error_response(status_code, code, exc.message, detail)
    if status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
        response.headers["Cache-Control"] = "no-store"
    if status_code == 503:
        logger.error("%s %s unavailable: %s", request.method, request.url.path, exc.message)
    return response


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Storage failures that escaped a service surface as 503, never as a stack trace."""
    logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
    return _error_response(503, "unavailable", "The service is temporarily unavailable.")


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error_response(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it -- str(dict) produces a Python repr.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit, no auth, no audit.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    database = "ok"
    try:
        with request.app.state.rbac_store.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )
