"""SessionRelay FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app() — testable application factory
  - lifespan — @asynccontextmanager startup/shutdown sequence
  - exception handlers — every failure rendered as {"error": {"code", "message"}}
  - app = create_app() — module-level instance for uvicorn

Startup sequence:
  1. load_config()            → app.state.config
  2. per-address cap          → slowapi limit from config.rate_limits
  3. create_store()           → app.state.store
  4. RateLimiter              → app.state.rate_limiter
  5. HandoffCodeService       → app.state.handoff_service
  6. expiry sweeper task      → background asyncio.Task
  7. app.state.ready = True

Shutdown sequence (reverse):
  app.state.ready = False → cancel sweeper → close store

Uvicorn hardened defaults (see run.py):
  uvicorn sessionrelay.main:app \\
    --host 127.0.0.1 \\
    --port 8787 \\
    --limit-concurrency 100 \\
    --backlog 50 \\
    --timeout-keep-alive 5 \\
    --timeout-graceful-shutdown 30
"""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from sessionrelay import __version__
from sessionrelay.api.dependencies import require_ready
from sessionrelay.api.handoff import router as handoff_router
from sessionrelay.api.middleware import RequestIdMiddleware
from sessionrelay.api.search import router as search_router
from sessionrelay.auth.limiter import configure_per_address_rate_limit, limiter
from sessionrelay.config import Config, CorsConfig, load_config
from sessionrelay.constants import RATE_LIMIT_WINDOW_MINUTES_CEILING
from sessionrelay.handoff.service import HandoffCodeService
from sessionrelay.health import router as health_router
from sessionrelay.models.errors import RelayError
from sessionrelay.models.responses import build_error_response, build_relay_error_response
from sessionrelay.ratelimit.limiter import RateLimiter
from sessionrelay.store.factory import create_store
from sessionrelay.store.protocol import RelayStore
from sessionrelay.store.sweeper import run_expiry_sweeper
from sessionrelay.utils.clock import Clock, SystemClock
from sessionrelay.utils.codes import CodeGenerator
from sessionrelay.utils.logger import configure_logging, get_logger

# ─── Logging Setup ────────────────────────────────────────────────────────────
# Configure logging at module import time (before any other imports that may log).
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan — startup and shutdown sequence.

    ``app.state.clock`` may be set before startup to substitute the time
    source (tests use a frozen clock); otherwise the wall clock is used.
    """
    logger.info("SessionRelay starting up...")

    # ── Step 1: Load configuration ────────────────────────────────────────────
    # load_config() raises SystemExit on parse error or invalid values.
    # This ensures the process exits non-zero before ready=True is ever set.
    # A config passed to create_app() is used as-is.
    config: Config = app.state.config if app.state.config is not None else load_config()
    app.state.config = config

    # ── Step 2: Per-address blanket cap ───────────────────────────────────────
    configure_per_address_rate_limit(config.rate_limits.per_address_limit)

    # ── Step 3: Store ─────────────────────────────────────────────────────────
    # RuntimeError on schema mismatch / missing backend library propagates and
    # refuses startup.
    store: RelayStore = await create_store(config)
    app.state.store = store

    # ── Steps 4-5: Services ───────────────────────────────────────────────────
    clock: Clock = getattr(app.state, "clock", None) or SystemClock()
    app.state.clock = clock

    app.state.rate_limiter = RateLimiter(
        store,
        policies=config.rate_limits.policies,
        clock=clock,
    )
    app.state.handoff_service = HandoffCodeService(
        store,
        generator=CodeGenerator(length=config.handoff.code_length),
        clock=clock,
        max_collision_retries=config.handoff.max_collision_retries,
    )

    # ── Step 6: Expiry sweeper ────────────────────────────────────────────────
    sweeper_task: asyncio.Task[None] = asyncio.create_task(
        run_expiry_sweeper(
            store,
            clock,
            interval_s=config.store.sweep_interval_s,
        )
    )
    logger.info(
        "Expiry sweeper started",
        interval_s=config.store.sweep_interval_s,
        event_retention_minutes=RATE_LIMIT_WINDOW_MINUTES_CEILING,
    )

    # ── Step 7: Mark as ready ─────────────────────────────────────────────────
    app.state.ready = True
    logger.info("SessionRelay ready", store=store.backend_name, version=__version__)

    yield

    # ── Shutdown (reverse order) ──────────────────────────────────────────────
    logger.info("SessionRelay shutting down...")
    app.state.ready = False

    if not sweeper_task.done():
        sweeper_task.cancel()
        try:
            await sweeper_task
        except asyncio.CancelledError:
            pass

    await store.close()
    logger.info("SessionRelay shutdown complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app(config: Optional[Config] = None) -> FastAPI:
    """Create and configure the SessionRelay FastAPI application.

    Call this function directly in tests to get an isolated app instance:
        app = create_app()

    The module-level `app` is created at import time for uvicorn:
        uvicorn sessionrelay.main:app --host 127.0.0.1 --port 8787

    ``config`` is optional: when given (run.py passes the loaded config) the
    lifespan uses it as-is and CORS is built from ``config.cors``; otherwise
    the lifespan calls load_config() and CORS uses the defaults. CORS must be
    known at construction time because middleware cannot be added once the
    app has started.
    """
    # Swagger UI and ReDoc stay off unless debug is enabled.
    # Re-enable by setting DEBUG=true (local development only).
    _debug = os.getenv("DEBUG", "false").lower() == "true"

    application = FastAPI(
        title="SessionRelay",
        description="Single-use session handoff codes and sliding-window rate limiting",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if _debug else None,
        redoc_url="/redoc" if _debug else None,
        openapi_url="/openapi.json" if _debug else None,
    )

    # ready is False until lifespan startup completes; /health returns 503
    # on any request that somehow arrives before startup completes.
    application.state.ready = False

    # slowapi requires the limiter on app state.
    application.state.limiter = limiter

    application.state.config = config

    cors = config.cors if config is not None else CorsConfig()
    application.add_middleware(
        CORSMiddleware,
        allow_origins=cors.allow_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=cors.allow_headers,
    )

    # NOTE: In Starlette, the LAST-added middleware is OUTERMOST (runs first).
    # RequestIdMiddleware wraps CORS so preflight responses carry X-Request-ID too.
    application.add_middleware(RequestIdMiddleware)

    # Register routers
    application.include_router(health_router)
    application.include_router(handoff_router, dependencies=[Depends(require_ready)])
    application.include_router(search_router, dependencies=[Depends(require_ready)])

    # ── Exception handlers ────────────────────────────────────────────────────

    @application.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            "request_failed",
            code=exc.code,
            status_code=exc.status_code,
            path=str(request.url.path),
        )
        return build_relay_error_response(exc)

    @application.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        logger.info(
            "request_validation_failed",
            path=str(request.url.path),
            error_count=len(exc.errors()),
        )
        return build_error_response(400, "invalid_input", "Invalid request body")

    @application.exception_handler(RateLimitExceeded)
    async def per_address_limit_handler(
        request: Request, exc: RateLimitExceeded
    ) -> JSONResponse:
        logger.warning("per_address_limit_exceeded", path=str(request.url.path))
        return build_error_response(
            429, "rate_limited", "Rate limit exceeded", headers={"Retry-After": "60"}
        )

    @application.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        detail: Any = exc.detail
        if isinstance(detail, dict) and "code" in detail:
            code, message = str(detail["code"]), str(detail.get("message", ""))
        else:
            code, message = "http_error", str(detail)
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            code=code,
            path=str(request.url.path),
        )
        return build_error_response(exc.status_code, code, message)

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return build_error_response(500, "internal_error", "Internal server error")

    return application


# ─── Module-Level App (for uvicorn) ───────────────────────────────────────────

app = create_app()
