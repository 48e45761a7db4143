"""
api/main.py -- FastAPI application entry point for Gatehouse.

Exposes the token lifecycle engine over HTTP so other services can
register, authenticate, refresh, and verify without linking the engine.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. log_requests          -- method, path, status, latency, client host

Lifespan builds every collaborator once from Settings (store, cache,
publisher, engine) and hands them to routes via app.state. Nothing below
the lifespan reads configuration.
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
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.engine import AuthEngine
from auth.events import EventPublisher, LoggingPublisher, WebhookPublisher
from auth.store import CredentialStore
from cache.store import RevocationCache
from core.config import APP_VERSION, Settings, get_settings
from core.errors import AuthError

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("gatehouse.api")

# ---------------------------------------------------------------------------
# Collaborator wiring
# ---------------------------------------------------------------------------


def build_publisher(settings: Settings) -> EventPublisher:
    if settings.event_webhook_url:
        return WebhookPublisher(settings.event_webhook_url, timeout=settings.store_timeout_seconds)
    return LoggingPublisher()


def build_engine(settings: Settings) -> AuthEngine:
    """Construct the engine and its stores from one Settings object."""
    store = CredentialStore(settings.database_url, timeout=settings.store_timeout_seconds)
    cache = RevocationCache.from_url(settings.redis_url, timeout=settings.store_timeout_seconds)
    return AuthEngine.from_settings(settings, store, cache, publisher=build_publisher(settings))


# ---------------------------------------------------------------------------
# Background cleanup task
# ---------------------------------------------------------------------------


async def _cleanup_loop(app: FastAPI, interval_seconds: int) -> None:
    """Purge expired and revoked refresh records every interval.

    The sweep runs in a worker thread so the DELETE never blocks the event
    loop. A failed sweep is logged and retried on the next tick.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(app.state.engine.cleanup)
        except AuthError as exc:
            logger.warning("Scheduled cleanup failed: %s", exc.message)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build collaborators on startup and release them on shutdown.

    Startup order matters:
      1. Settings -- fail fast on a missing or short SECRET_KEY.
      2. Engine (store + cache + publisher) -- must exist before any request.
      3. Cleanup task last -- references app.state.engine.
    """
    settings = get_settings()
    logger.info("Gatehouse API starting up")
    app.state.engine = build_engine(settings)
    logger.info("Engine initialized (issuer=%s, audience=%s)", settings.jwt_issuer, settings.jwt_audience)
    app.state.cleanup_task = asyncio.create_task(_cleanup_loop(app, settings.cleanup_interval_seconds))

    yield

    app.state.cleanup_task.cancel()
    app.state.engine.store.close()
    app.state.engine.cache.close()
    logger.info("Gatehouse API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Gatehouse API",
    description="Credential and session lifecycle: register, login, refresh rotation, logout, verify.",
    version=APP_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost", "testserver"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler. The path is logged, never the query string or headers, so tokens
# cannot leak into logs.
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

# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render the engine's error taxonomy. status_code and error_code live on the exception."""
    response = _error(exc.status_code, exc.error_code, exc.message, exc.detail)
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 when the request body or params fail validation.

    Only field locations and messages are echoed; the rejected input is
    dropped because it may be a password.
    """
    problems = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
    return _error(400, "validation_error", "Request validation failed.", problems)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Structured error for FastAPI/Starlette HTTP exceptions (404 route, 405 method)."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No auth -- load balancers call it.
# ---------------------------------------------------------------------------


def _probe(check) -> str:
    try:
        check()
    except (SQLAlchemyError, RedisError) as exc:
        logger.warning("Health probe failed: %s", exc)
        return "unavailable"
    return "ok"


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health() -> JSONResponse:
    """Liveness plus a reachability probe of the database and the cache.

    503 with status "degraded" when either backing store is down.
    """
    engine: AuthEngine = app.state.engine
    components = {
        "app": "ok",
        "database": _probe(engine.store.ping),
        "cache": _probe(engine.cache.ping),
    }
    healthy = all(v == "ok" for v in components.values())
    body = HealthResponse(status="ok" if healthy else "degraded", version=APP_VERSION, components=components)
    return JSONResponse(status_code=200 if healthy else 503, content=body.model_dump())
