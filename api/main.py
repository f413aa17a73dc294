"""
api/main.py -- FastAPI application entry point for the intranet auth service.

Run with:      uvicorn api.main:app --reload

Middleware, in the order a request meets it:
  log_requests           -- one access log line with latency
  SlowAPIMiddleware      -- per-route rate limits declared in the route modules
  CORSMiddleware         -- credentialed CORS for the portal front end
  TrustedHostMiddleware  -- rejects unexpected Host headers

Lifespan builds every service once and hangs it on app.state; route handlers
and auth.dependencies read them from there. Tests replace the lifespan and
call wire_services() with in-memory stores.
"""

from __future__ import annotations

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
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.access import router as access_router
from api.routes.v1.auth import router as auth_router
from auth.access_store import AccessStore
from auth.authorization import AuthorizationGate
from auth.codes import CodeRegistry, build_code_registry
from auth.login import LoginService
from auth.notify import NotificationDispatcher
from auth.oauth import build_token_service
from auth.store import UserStore
from auth.tokens import TokenService
from core.config import Settings, get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("intranet.api")

_settings = get_settings()


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(
    app: FastAPI,
    settings: Settings,
    user_store: UserStore,
    access_store: AccessStore,
    code_registry: CodeRegistry,
    dispatcher: NotificationDispatcher,
    token_service: TokenService,
) -> None:
    """Attach the auth services to app.state.

    The gate and login service are composed here from the lower-level pieces
    so there is exactly one instance of each per application.
    """
    gate = AuthorizationGate(user_store, access_store, settings, dispatcher)
    app.state.settings = settings
    app.state.user_store = user_store
    app.state.access_store = access_store
    app.state.code_registry = code_registry
    app.state.dispatcher = dispatcher
    app.state.token_service = token_service
    app.state.gate = gate
    app.state.login_service = LoginService(
        user_store, gate, code_registry, dispatcher, token_service, settings
    )


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. Startup order: stores first (they create their tables), then
    the code registry and dispatcher, then the token verifier chain.
    """
    logger.info("Intranet auth API starting up")
    settings = get_settings()
    user_store = UserStore(db_url=settings.database_url)
    access_store = AccessStore(db_url=settings.database_url)
    code_registry = build_code_registry(settings.code_store, settings.code_ttl_minutes)
    dispatcher = NotificationDispatcher.from_settings(settings)
    token_service = build_token_service(settings)
    wire_services(app, settings, user_store, access_store, code_registry, dispatcher, token_service)
    logger.info(
        "Auth initialized (code_store=%s, token strategies=%s)",
        settings.code_store,
        [s.name for s in token_service.strategies],
    )

    yield

    code_registry.close()
    access_store.close()
    user_store.close()
    logger.info("Intranet auth API shutdown complete")


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Intranet Auth API",
    description="Sign-in, access control and session tokens for the intranet portal.",
    version=__version__,
    lifespan=lifespan,
)

# Starlette wraps each add_middleware() call around the previous ones, so the
# last one added sees the request first: SlowAPI -> CORS -> TrustedHost.
app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_host_list)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origin_list,
    # The browser UI authenticates with the access_token cookie.
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)
app.add_middleware(SlowAPIMiddleware)
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Access log line per request; 5xx answers are logged as warnings."""
    start = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - start) * 1000
    level = logging.WARNING if response.status_code >= 500 else logging.INFO
    logger.log(
        level,
        "%s %s -> %d (%.1fms) client=%s",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
        request.client.host if request.client else "-",
    )
    return response


app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(access_router, prefix="/api/v1", tags=["Access"])


# ---------------------------------------------------------------------------
# Error envelope
#
# Every failure leaves the API as {"error": {"code", "message", "detail"}}.
# Login-flow outcomes are not errors in this sense: they come back as a
# LoginResponse with a status field even when the HTTP code is 4xx.
# ---------------------------------------------------------------------------


def _error_response(
    status_code: int,
    code: str,
    message: str,
    detail: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    retry_after = str(int(getattr(exc, "retry_after", 60)))
    logger.warning("Rate limit hit on %s from %s", request.url.path, request.client.host if request.client else "-")
    return _error_response(
        429, "rate_limited", "Too many attempts. Wait a minute and try again.", str(exc), {"Retry-After": retry_after}
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = ", ".join(".".join(str(p) for p in err.get("loc", ())) for err in exc.errors())
    return _error_response(422, "validation_error", "Request validation failed.", fields or None)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Routes raise HTTPException(detail={"code", "message"}); that dict is the error as-is."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail), headers=exc.headers)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # The traceback stays in the log.
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Liveness plus a database round trip. Public and not rate limited."""
    try:
        db_ok = request.app.state.user_store.ping()
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        db_ok = False
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=__version__,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )
