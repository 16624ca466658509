"""Portal FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app()      - testable application factory
  - init_app_state()  - wire services onto app.state (lifespan and tests)
  - lifespan          - @asynccontextmanager startup/shutdown sequence
  - app = create_app() - module-level instance for uvicorn

Startup sequence:
  1. load_config()                 → app.state.config
  2. create_row_store()            → app.state.store
  3. init_app_state()              → background queue, activity logger,
                                     guards, rotation manager, scheduler
  4. deactivation scheduler start  (first sweep runs immediately)
  5. app.state.ready = True

Shutdown sequence (reverse):
  app.state.ready = False → stop scheduler → drain background queue →
  close store

Uvicorn hardened defaults are applied by portal/run.py.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, Callable

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from portal.activity.logger import ActivityLogger
from portal.activity.router import router as activity_router
from portal.auth.limiter import configure_limits, limiter
from portal.auth.middleware import ApiKeyGuard
from portal.auth.rotation import KeyDeactivationScheduler, KeyRotationManager
from portal.auth.router import router as api_keys_router
from portal.auth.router import v1_router
from portal.auth.session_router import router as session_router
from portal.auth.sessions import SessionGuard
from portal.config import Config, load_config
from portal.health import router as health_router
from portal.store.factory import create_row_store
from portal.store.protocol import RowStore
from portal.utils.background import BackgroundTaskQueue
from portal.utils.logger import clear_request_id, configure_logging, get_logger, set_request_id
from portal.utils.sanitizer import sanitize_error
from portal.utils.ulid import generate_ulid

# ─── Logging Setup ────────────────────────────────────────────────────────────
# Configure logging at module import time (before any other imports that may log).
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
DEFAULT_FRONTEND_URL = "http://localhost:5173"


# ─── Service wiring ───────────────────────────────────────────────────────────


def init_app_state(app: FastAPI, config: Config, store: RowStore) -> None:
    """Attach the portal services to ``app.state``.

    The scheduler is created but not started; the lifespan owns its lifecycle.
    """
    background = BackgroundTaskQueue()
    activity = ActivityLogger(store)
    retry_options = config.store.retry_options()

    rotation_manager = KeyRotationManager(
        store,
        activity,
        grace_period_days=config.api_keys.grace_period_days,
        retry_options=retry_options,
    )

    app.state.config = config
    app.state.store = store
    app.state.background = background
    app.state.activity = activity
    app.state.api_key_guard = ApiKeyGuard(
        store,
        activity,
        background,
        max_requests_per_window=config.api_keys.rate_limit_max_requests,
        window_seconds=config.api_keys.rate_limit_window_seconds,
        retry_options=retry_options,
    )
    app.state.session_guard = SessionGuard(store, retry_options=retry_options)
    app.state.rotation_manager = rotation_manager
    app.state.deactivation_scheduler = KeyDeactivationScheduler(
        rotation_manager, config.api_keys.deactivation_check_interval_ms
    )
    configure_limits(config.rate_limits)


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info("Portal starting up...")

    # load_config() raises SystemExit on parse error or missing version field,
    # so the process exits non-zero before ready=True is ever set.
    config: Config = load_config()

    # Incompatible schema version raises RuntimeError here.
    store: RowStore = await create_row_store(config)

    init_app_state(app, config, store)

    scheduler: KeyDeactivationScheduler = app.state.deactivation_scheduler
    await scheduler.start()

    app.state.ready = True
    logger.info(
        "Portal ready",
        rate_limit_max_requests=config.api_keys.rate_limit_max_requests,
        grace_period_days=config.api_keys.grace_period_days,
        deactivation_check_interval_ms=config.api_keys.deactivation_check_interval_ms,
    )

    yield

    logger.info("Portal shutting down...")
    app.state.ready = False

    await scheduler.stop()

    background: BackgroundTaskQueue = app.state.background
    await background.shutdown()

    await store.close()
    logger.info("Portal shutdown complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app() -> FastAPI:
    """Create and configure the portal FastAPI application.

    Call this function directly in tests to get an isolated app instance:
        app = create_app()
        init_app_state(app, config, store)
    """
    # Swagger UI / ReDoc only with DEBUG=true
    _debug = os.getenv("DEBUG", "false").lower() == "true"

    application = FastAPI(
        title="Accessibility Status Portal API",
        description="Admin and API-key authenticated API for the accessibility status portal",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if _debug else None,
        redoc_url="/redoc" if _debug else None,
        openapi_url="/openapi.json" if _debug else None,
    )

    application.state.ready = False

    # Rate limiter - attached to app state as required by slowapi.
    application.state.limiter = limiter
    application.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # CORS restricted to the admin frontend origin (FRONTEND_URL).
    application.add_middleware(
        CORSMiddleware,
        allow_origins=[os.getenv("FRONTEND_URL", DEFAULT_FRONTEND_URL)],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    # Rate limiting middleware. Must be added after state.limiter is set.
    application.add_middleware(SlowAPIMiddleware)

    @application.middleware("http")
    async def request_id_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or generate_ulid()
        set_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            clear_request_id()
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    application.include_router(health_router)
    application.include_router(session_router)
    application.include_router(api_keys_router)
    application.include_router(v1_router)
    application.include_router(activity_router)

    # Global exception handlers
    @application.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=str(request.url.path),
        )
        content = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
        return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error=sanitize_error(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=500, content={"error": "Internal server error"}
        )

    return application


app = create_app()
