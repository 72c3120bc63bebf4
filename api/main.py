"""
api/main.py -- FastAPI application entry point for the SynthAI authorization service.

Backend-for-frontend between the browser SPA and Keycloak. The browser holds
only a signed session-id cookie; tokens stay in the session store.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. request_context        -- X-Request-ID, security headers, request log line
  2. TrustedHostMiddleware  -- rejects requests with unexpected Host headers
  3. CORSMiddleware         -- CORS with credentials for ALLOWED_ORIGINS
  4. SlowAPIMiddleware      -- API_RATE_LIMIT on every route, tighter limits from api.limiter

Lifespan builds the provider client, session store, last-login ledger and the
flow controller into app.state on startup and closes them on shutdown.

No `from __future__ import annotations`: the limiter.exempt wrappers need
annotations FastAPI can resolve at runtime.
"""

import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import DetailedHealthResponse, ErrorResponse, HealthResponse, NotFoundResponse, ServiceIndexResponse
from api.routes.auth import router as auth_router
from api.routes.keycloak import router as keycloak_router
from api.routes.users import router as users_router
from auth.errors import AuthError, ErrorKind
from auth.flow import AuthFlowController
from auth.oidc import IdentityProviderClient
from auth.sessions import SessionCookie, build_session_store
from auth.store import LastLoginStore
from core.config import get_settings

settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("synthai.api")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Lifespan -- startup / shutdown
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build every collaborator once and inject it through app.state.

    Startup order matters: the flow controller takes the provider client, the
    session store and the ledger, so those three are built first. Shutdown
    closes them in reverse.
    """
    logger.info("%s %s starting (environment=%s)", settings.service_name, settings.version, settings.environment)
    app.state.started_at = time.monotonic()
    app.state.provider = IdentityProviderClient(settings)
    app.state.session_store = build_session_store(settings)
    app.state.ledger = LastLoginStore(settings.database_url)
    app.state.session_cookie = SessionCookie(settings)
    app.state.flow = AuthFlowController(
        app.state.provider,
        app.state.session_store,
        app.state.ledger,
        settings,
    )
    logger.info(
        "Identity provider realm %s at %s (internal %s)",
        settings.keycloak_realm,
        settings.provider_public_url,
        settings.provider_internal_url,
    )

    yield

    app.state.ledger.close()
    app.state.session_store.close()
    app.state.provider.close()
    logger.info("%s shutdown complete", settings.service_name)


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SynthAI Authorization Service",
    description="OIDC backend-for-frontend: Keycloak login, server-side sessions, profile and user admin.",
    version=settings.version,
    lifespan=lifespan,
    # No public schema browsing in production.
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None,
    openapi_url=None if settings.is_production else "/openapi.json",
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the current stack, so the LAST one added is the
# outermost. Added innermost-first: SlowAPI -> CORS -> TrustedHost.
# request_context (@app.middleware) is registered after these and therefore
# sees every request first, including ones TrustedHost rejects.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origin_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.trusted_host_list)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

_SECURITY_HEADERS = {
    "Content-Security-Policy": (
        "default-src 'self'; style-src 'self' 'unsafe-inline'; script-src 'self'; img-src 'self' data: https:"
    ),
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Opener-Policy": "same-origin",
}


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Tag the request with an id, add security headers, and log one line per request.

    An inbound X-Request-ID is reused so a proxy's correlation id survives;
    otherwise a fresh uuid4 is generated. Exception handlers read it from
    request.state.request_id.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    response.headers["X-Request-ID"] = request_id
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    if settings.secure_cookies:
        response.headers.setdefault("Strict-Transport-Security", "max-age=15552000; includeSubDomains")
    logger.info(
        "%s %s %d %.1fms %s rid=%s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
        request_id,
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api", tags=["Auth"])
app.include_router(users_router, prefix="/api", tags=["Users"])
app.include_router(keycloak_router, prefix="/api", tags=["Keycloak"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every handler returns the flat ErrorResponse envelope
# {"error", "code", "request_id"[, "detail"]} so the SPA can parse errors
# uniformly. "detail" is never sent in production.
# ---------------------------------------------------------------------------


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def _error(
    request: Request,
    status_code: int,
    message: str,
    code: str,
    detail: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(
        error=message,
        code=code,
        request_id=_request_id(request),
        detail=None if settings.is_production else detail,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True), headers=headers)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map the closed ErrorKind taxonomy to status code and log level."""
    if exc.kind in (ErrorKind.CLIENT_INPUT, ErrorKind.UPSTREAM_AUTH):
        logger.warning("%s on %s %s: %s rid=%s", exc.code, request.method, request.url.path, exc.message, _request_id(request))
    else:
        logger.error("%s on %s %s: %s rid=%s", exc.code, request.method, request.url.path, exc.message, _request_id(request))
    return _error(request, exc.status_code, exc.message, exc.code, exc.detail)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 15 * 60))
    return _error(
        request,
        429,
        "Too many requests, please try again later.",
        "rate_limited",
        detail=str(exc.detail),
        headers={"Retry-After": str(retry_after)},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error(request, 422, "Request validation failed", "validation_error", detail=str(exc.errors()))


@app.exception_handler(404)
async def not_found_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    logger.warning("404 - Endpoint not found: %s %s", request.method, request.url.path)
    body = NotFoundResponse(path=request.url.path, method=request.method, timestamp=_utc_now())
    return JSONResponse(status_code=404, content=body.model_dump())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Structured error for HTTPException, including the session guard's 401."""
    return _error(request, exc.status_code, str(exc.detail), f"http_{exc.status_code}", headers=exc.headers)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors.

    The traceback goes to the log with the request id. The response carries
    the exception text only outside production.
    """
    logger.exception("Unhandled exception on %s %s rid=%s", request.method, request.url.path, _request_id(request))
    return _error(request, 500, "Internal server error", "internal_error", detail=str(exc))


# ---------------------------------------------------------------------------
# Service index and health
#
# Defined directly in main.py (not in a router) so they are always reachable
# regardless of router registration state. Exempt from rate limiting --
# load balancers and monitoring must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api", response_model=ServiceIndexResponse, tags=["Service"])
@limiter.exempt
def service_index() -> ServiceIndexResponse:
    return ServiceIndexResponse(
        service="SynthAI Authorization Service",
        version=settings.version,
        environment=settings.environment,
        endpoints={
            "health": "/health",
            "auth": "/api/auth",
            "users": "/api/users",
            "keycloak": "/api/keycloak",
        },
    )


@app.get("/health", response_model=HealthResponse, tags=["Health"])
@limiter.exempt
def health() -> HealthResponse:
    """Liveness only; does not touch any backing store."""
    return HealthResponse(timestamp=_utc_now(), service=settings.service_name, version=settings.version)


@app.get("/health/detailed", response_model=DetailedHealthResponse, tags=["Health"])
@limiter.exempt
def health_detailed(request: Request) -> JSONResponse:
    """Readiness: pings the session store and the ledger. 503 when either is down."""
    checks = {
        "session_store": "ok" if request.app.state.session_store.ping() else "unavailable",
        "database": "ok" if request.app.state.ledger.ping() else "unavailable",
    }
    healthy = all(v == "ok" for v in checks.values())
    body = DetailedHealthResponse(
        message="OK" if healthy else "DEGRADED",
        uptime=round(time.monotonic() - request.app.state.started_at, 3),
        timestamp=_utc_now(),
        service=settings.service_name,
        version=settings.version,
        environment=settings.environment,
        checks=checks,
    )
    return JSONResponse(status_code=200 if healthy else 503, content=body.model_dump())
