"""
api/main.py -- FastAPI application entry point for MotoManager.

Serves the JSON auth API under /api/v1. The web UI router is attached by
asgi.py so api/ and web/ stay independent.

Run with:      uvicorn asgi:app --reload

Middleware:
  - TrustedHostMiddleware -- rejects requests with unexpected Host headers
  - SlowAPIMiddleware     -- enforces per-route rate limits from core.limiter
  - log_requests          -- one log line per request with status and latency

Lifespan opens the auth store, builds the AuthGateway on app.state, purges
sessions that expired while the server was down, and closes the store on
shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import AuthError, ConflictError, ForbiddenError, ValidationError
from auth.gateway import AuthGateway
from auth.store import AuthStore
from core.config import get_settings
from core.limiter import limiter

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.DEBUG if get_settings().debug else logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("motomanager.api")

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def build_gateway(store: AuthStore) -> AuthGateway:
    """Wire an AuthGateway around store using the current settings."""
    settings = get_settings()
    return AuthGateway.from_store(
        store,
        session_duration=timedelta(seconds=settings.session_duration_seconds),
        secure_cookies=settings.secure_cookies,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the auth store on startup and close it on shutdown.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. Tests replace this with a lifespan that points at a throwaway
    database.
    """
    settings = get_settings()
    logger.info("MotoManager API starting up (env=%s)", settings.app_env)
    store = AuthStore(settings.database_url) if settings.database_url else AuthStore()
    app.state.auth_store = store
    app.state.auth = build_gateway(store)
    purged = app.state.auth.sessions.purge_expired()
    logger.info(
        "Auth initialized (users=%d, sessions=%d, expired purged=%d)",
        app.state.auth.users.count(),
        store.count_sessions(),
        purged,
    )

    yield

    store.close()
    logger.info("MotoManager API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="MotoManager API",
    description="Accounts, sessions and user administration for MotoManager.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=get_settings().allowed_hosts,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


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
# Web UI router is mounted by asgi.py, not here.


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Plain def: SlowAPIMiddleware calls this handler directly, without awaiting it.
    Limits raised from a @limiter.limit wrapper arrive here through the usual
    exception handling.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


_AUTH_ERROR_STATUS: dict[type[AuthError], int] = {
    ValidationError: 400,
    ConflictError: 409,
    ForbiddenError: 403,
}


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map domain errors raised by the auth components to 400 / 409 / 403."""
    status = _AUTH_ERROR_STATUS.get(type(exc), 400)
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(
            error=ErrorDetail(code=exc.code, message=exc.message, field=exc.field)
        ).model_dump(),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions, including 404s from routing.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it. Headers on the exception (e.g. the
    clear-cookie header on a 401) are carried over.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback goes to the log only; the client receives a generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=VERSION)
