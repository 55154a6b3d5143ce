"""credkeeper FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app() — testable application factory
  - lifespan — @asynccontextmanager startup/shutdown sequence
  - /health — readiness + store health
  - RequestIdMiddleware — ULID request id bound to every log line, echoed in X-Request-ID
  - app = create_app() — module-level instance for uvicorn

Startup sequence:
  1. load_config()                  → app.state.config
  2. create_user_store()            → app.state.store
  3. create_notification_channel()  → app.state.notifier
  4. credential components          → app.state.keys / tokens / csrf / sessions / lifecycle
  5. run_credential_sweeper() task  → expired CSRF entries + cooldown stamps
  6. app.state.ready = True

Shutdown sequence (reverse):
  app.state.ready = False → cancel sweeper → close notifier → close store

Tests can inject config, store and notifier through create_app(); anything
not injected is built from config.
"""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.routing import APIRouter
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from credkeeper import __version__
from credkeeper.auth.csrf import CsrfTokenStore
from credkeeper.auth.keys import ApiKeyManager, CooldownTracker
from credkeeper.auth.lifecycle import AccountLifecycle
from credkeeper.auth.limiter import limiter
from credkeeper.auth.purpose_tokens import PurposeTokenService
from credkeeper.auth.router import router as auth_router
from credkeeper.auth.session import SessionAuthenticator
from credkeeper.auth.sweeper import run_credential_sweeper
from credkeeper.config import Config, load_config
from credkeeper.errors import CredentialError, RateLimited
from credkeeper.notify.channels import create_notification_channel
from credkeeper.notify.protocol import NotificationChannel
from credkeeper.store.factory import create_user_store
from credkeeper.store.protocol import UserStore
from credkeeper.utils.logger import clear_request_id, configure_logging, get_logger, set_request_id
from credkeeper.utils.ulid import generate_ulid

# ─── Logging Setup ────────────────────────────────────────────────────────────
# Configure logging at module import time (before any other imports that may log).
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


# ─── Request ID Middleware ────────────────────────────────────────────────────


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a fresh ULID to each request for log correlation.

    The id is echoed in the X-Request-ID response header. A client-supplied
    X-Request-ID is ignored so ids stay unique and unforgeable in the log.
    """

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        request_id = generate_ulid()
        set_request_id(request_id)
        request.state.request_id = request_id
        try:
            response = await call_next(request)
        finally:
            clear_request_id()
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


# ─── Health ───────────────────────────────────────────────────────────────────

health_router = APIRouter(tags=["health"])


@health_router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """HTTP 503 until startup completes; 200 with store status after."""
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(status_code=503, detail="credkeeper is starting up")
    store: UserStore = request.app.state.store
    store_ok = await store.health_check()
    return {
        "status": "ok" if store_ok else "degraded",
        "store": "healthy" if store_ok else "error",
        "version": __version__,
    }


# ─── Lifespan ─────────────────────────────────────────────────────────────────


def build_components(
    app: FastAPI, config: Config, store: UserStore, notifier: NotificationChannel
) -> None:
    """Wire the credential components onto app.state."""
    cooldown = CooldownTracker(window_seconds=config.api_keys.cooldown_seconds)
    keys = ApiKeyManager(store, cooldown)
    tokens = PurposeTokenService(config.secrets, config.tokens)
    csrf = CsrfTokenStore(
        ttl_seconds=config.csrf.ttl_seconds,
        bind_preauth_on_use=config.csrf.bind_preauth_on_use,
    )
    sessions = SessionAuthenticator(config.secrets.session_secret, config.session, config.admin)
    lifecycle = AccountLifecycle(
        store=store,
        keys=keys,
        tokens=tokens,
        sessions=sessions,
        notifier=notifier,
        base_url=config.mail.base_url,
        bcrypt_rounds=config.passwords.bcrypt_rounds,
    )
    app.state.keys = keys
    app.state.tokens = tokens
    app.state.csrf = csrf
    app.state.sessions = sessions
    app.state.lifecycle = lifecycle


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan — startup and shutdown sequence.

    A RuntimeError from the store's schema version guard propagates and
    refuses startup.
    """
    logger.info("credkeeper starting up...")

    config: Config = app.state.config_override or load_config()
    app.state.config = config

    store: UserStore = app.state.store_override or await create_user_store(config)
    app.state.store = store

    notifier: NotificationChannel = (
        app.state.notifier_override or create_notification_channel(config.mail)
    )
    app.state.notifier = notifier

    build_components(app, config, store, notifier)

    sweeper_task: asyncio.Task[None] = asyncio.create_task(
        run_credential_sweeper(
            app.state.csrf,
            app.state.keys.cooldown,
            interval_seconds=config.csrf.sweep_interval_seconds,
        )
    )
    logger.info("Credential sweeper started", interval_seconds=config.csrf.sweep_interval_seconds)

    app.state.ready = True
    logger.info("credkeeper ready", version=__version__)

    yield

    logger.info("credkeeper shutting down...")
    app.state.ready = False

    if not sweeper_task.done():
        sweeper_task.cancel()
        try:
            await sweeper_task
        except asyncio.CancelledError:
            pass

    try:
        await notifier.close()
    except Exception as exc:
        logger.warning("Notifier close error (non-fatal)", error=str(exc))

    await store.close()
    logger.info("credkeeper shutdown complete")


# ─── Application Factory ─────────────────────────────────────────────────────


def create_app(
    config: Optional[Config] = None,
    store: Optional[UserStore] = None,
    notifier: Optional[NotificationChannel] = None,
) -> FastAPI:
    """Create and configure the credkeeper FastAPI application.

    Call this function directly in tests to get an isolated app instance:
        app = create_app(config=cfg, store=InMemoryUserStore())

    The module-level `app` is created at import time for uvicorn:
        uvicorn credkeeper.main:app --host 127.0.0.1 --port 5000
    """
    _debug = os.getenv("DEBUG", "false").lower() == "true"

    application = FastAPI(
        title="credkeeper",
        description="Credential and token lifecycle manager",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if _debug else None,
        redoc_url="/redoc" if _debug else None,
        openapi_url="/openapi.json" if _debug else None,
    )

    application.state.ready = False
    application.state.config_override = config
    application.state.store_override = store
    application.state.notifier_override = notifier

    # ── Rate limiting (slowapi) ──────────────────────────────────────────────
    application.state.limiter = limiter
    application.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # ── Middleware (last added runs outermost) ───────────────────────────────
    allowed_origin = (config.mail.base_url if config else None) or os.getenv(
        "CREDKEEPER_FRONTEND_ORIGIN", "http://localhost:3000"
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origins=[allowed_origin],
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-CSRF-Token", "X-XSRF-Token", "X-API-Key"],
        expose_headers=[REQUEST_ID_HEADER, "Retry-After"],
    )
    application.add_middleware(SlowAPIMiddleware)
    application.add_middleware(RequestIdMiddleware)

    # ── Routers ──────────────────────────────────────────────────────────────
    application.include_router(health_router)
    application.include_router(auth_router)

    # ── Exception handlers ───────────────────────────────────────────────────

    @application.exception_handler(CredentialError)
    async def credential_error_handler(request: Request, exc: CredentialError) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            "Request rejected",
            code=exc.code,
            status_code=exc.status_code,
            path=str(request.url.path),
        )
        headers: dict[str, str] = {}
        if isinstance(exc, RateLimited) and exc.retry_after_seconds > 0:
            headers["Retry-After"] = str(exc.retry_after_seconds)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": {"message": exc.message, "code": exc.code}},
            headers=headers,
        )

    @application.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=str(request.url.path),
        )
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=500,
            content={"error": {"message": "Internal server error", "code": "internal_error"}},
        )

    return application


app = create_app()
