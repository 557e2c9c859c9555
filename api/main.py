"""
api/main.py -- FastAPI application entry point for Passgate.

Run with:      uvicorn asgi:app --reload

Middleware, outermost first:
  TrustedHostMiddleware  Host header must be in Settings.allowed_hosts
  CORSMiddleware         browser origins in Settings.cors_origins (GET/POST only)
  SlowAPIMiddleware      applies the @limiter.limit marks, i.e. the refresh limit

Lifespan builds the credential core once (engine, stores, access token codec,
OAuth provider registry, SessionService) and disposes the engine on shutdown.
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
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.auth import router as auth_router
from auth.errors import PassgateError, UnauthenticatedError
from auth.oauth import build_providers
from auth.session import SessionService
from auth.store import RefreshTokenStore, UserStore, create_auth_engine
from auth.tokens import AccessTokenCodec, LoginStateCodec
from core.config import get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("passgate.api")

_settings = get_settings()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def build_session_service(settings, engine) -> SessionService:
    """Wire the credential core from settings. Called once per process."""
    codec = AccessTokenCodec(
        settings.secret_key,
        settings.access_token_expire_seconds,
        settings.token_issuer,
    )
    return SessionService(
        users=UserStore(engine),
        refresh_tokens=RefreshTokenStore(engine, settings.refresh_token_expire_seconds),
        codec=codec,
        states=LoginStateCodec(settings.secret_key),
        providers=build_providers(settings),
        base_url=settings.base_url,
        allowed_redirect_origins=settings.allowed_redirect_origins,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the credential core on startup and dispose the engine on shutdown.

    The signing secret and provider registry are fixed for the
    process lifetime -- changing them requires a restart.
    """
    logger.info("Passgate API starting up")
    engine = create_auth_engine(_settings.database_url, _settings.db_timeout_seconds)
    app.state.engine = engine
    app.state.sessions = build_session_service(_settings, engine)
    logger.info(
        "Auth initialized (providers=%s, access_ttl=%ds, refresh_ttl=%ds)",
        sorted(app.state.sessions.providers),
        _settings.access_token_expire_seconds,
        _settings.refresh_token_expire_seconds,
    )

    yield

    engine.dispose()
    logger.info("Passgate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Passgate API",
    description="OAuth login with short-lived access tokens and single-use refresh tokens.",
    version=__version__,
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
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPIMiddleware reads the limiter from app.state.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler. Query strings are not logged: the callback redirect carries tokens.
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


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every failure leaves as {"error": {"code", "message", "detail"}}. Only the
# class-level public message is rendered; str(exc) may name token ids or
# storage errors and is logged instead.
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


@app.exception_handler(PassgateError)
async def passgate_error_handler(request: Request, exc: PassgateError) -> JSONResponse:
    """Map credential-core failures onto their class status, code and public message."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)

    headers = {"Cache-Control": "no-store"}
    if isinstance(exc, UnauthenticatedError):
        headers["WWW-Authenticate"] = "Bearer"
    return _error_response(exc.status_code, exc.code, exc.public_message, headers=headers)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning("Rate limit hit on %s from %s", request.url.path, request.client.host if request.client else "-")
    return _error_response(
        429,
        "rate_limited",
        "Too many requests.",
        detail=str(exc),
        headers={"Retry-After": str(int(getattr(exc, "retry_after", 60)))},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Bad query or body shape (e.g. a refresh_token that is not a UUID) -> 400."""
    return _error_response(400, "validation_error", "Request validation failed.", detail=str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Wrap HTTPException in the envelope; a dict detail is used as the error body as-is."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail), headers=exc.headers)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# No rate limit -- load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and a database ping."""
    components = {"app": "ok", "database": "ok"}
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check database ping failed")
        components["database"] = "error"
    return HealthResponse(version=__version__, components=components)
