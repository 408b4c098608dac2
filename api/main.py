"""
api/main.py -- FastAPI application factory for the builder auth service.

Exposes sign-in, session and profile endpoints over HTTP.

Run with:  uvicorn asgi:app --reload

create_app(settings) builds one self-contained app: its own provider
registry, rate limiter and entry handler, all derived from the Settings it is
given. Nothing is registered at import time except the module-level `app`
that asgi.py serves, so tests can build apps with other configurations.

Middleware stack (outermost to innermost):
  1. log_requests      -- one log line per request with latency
  2. AuthEntryHandler  -- HEAD short-circuit, mocked session, rate-limit tag
  3. CORSMiddleware    -- adds CORS headers for the builder web origin
  4. SessionMiddleware -- Authlib OAuth state between redirect and callback

Lifespan opens the AuthAdapter and wires app.state on startup; shutdown
waits for pending webhook calls and closes the DB engine.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import quote

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.middleware.sessions import SessionMiddleware

from api.entry import AuthEntryHandler
from api.limiter import build_email_signin_limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.auth import router as auth_router
from api.routes.users import router as users_router
from auth.dependencies import get_current_user
from auth.errors import AuthError
from auth.models import User
from auth.oauth import build_oauth_registry, build_providers
from auth.signin import SignInGate
from auth.store import AuthAdapter
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
logger = logging.getLogger("builder.api")


# ---------------------------------------------------------------------------
# App state
# ---------------------------------------------------------------------------


def init_app_state(app: FastAPI, settings: Settings, store: AuthAdapter) -> None:
    """Wire the store and everything derived from settings into app.state.

    Shared by the real lifespan and the test lifespan, so both see the same
    provider registry and gate construction.
    """
    providers = build_providers(settings)
    app.state.settings = settings
    app.state.store = store
    app.state.gate = SignInGate(store, settings)
    app.state.providers = providers
    app.state.oauth = build_oauth_registry(providers)
    logger.info("Auth initialized (providers=%s)", ",".join(p.id for p in providers))


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the store on startup, close it on shutdown.

    Everything before yield runs on startup; everything after yield runs on
    shutdown, even if a request handler raised.
    """
    settings: Settings = app.state.settings
    logger.info("Builder auth API starting up")
    store = AuthAdapter(settings=settings)
    init_app_state(app, settings, store)

    yield

    store.close()
    logger.info("Builder auth API shutdown complete")


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor / Chain of Responsibility. Every request passes through
# this coroutine before reaching any route handler. We capture wall-clock time
# before and after call_next so we can report latency on every response.
# ---------------------------------------------------------------------------


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
# Exception handlers
#
# AuthError is a browser-facing outcome: it redirects to the sign-in page with
# the error code. Everything else returns the same ErrorResponse envelope so
# API clients can parse errors uniformly.
# ---------------------------------------------------------------------------


async def auth_error_handler(request: Request, exc: AuthError) -> RedirectResponse:
    """Redirect to /signin?error=<code>. The message stays in the logs."""
    logger.info("Auth error on %s %s: %s (%s)", request.method, request.url.path, exc.code, exc)
    resp = RedirectResponse(f"/signin?error={quote(exc.code)}", status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    return resp


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


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a {"code", "message"} dict as
    detail. When detail is already a structured dict, use it directly as the
    error field rather than stringifying it -- str(dict) produces a Python repr,
    not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body. The client receives only a generic message.
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
# App factory
# ---------------------------------------------------------------------------


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title="Builder Auth API",
        description="Sign-in, session and profile endpoints for the bot builder.",
        version=VERSION,
        lifespan=lifespan,
        # Built-in /docs and /redoc are replaced by auth-protected routes below.
        docs_url=None,
        redoc_url=None,
    )
    app.state.settings = settings

    limiter = build_email_signin_limiter(settings)

    # add_middleware() wraps outermost-last: SessionMiddleware ends up
    # innermost, so the OAuth routes see request.session.
    app.add_middleware(SessionMiddleware, secret_key=settings.secret_key, https_only=settings.secure_cookies)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.base_url.rstrip("/")],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=3600,
    )
    app.middleware("http")(
        AuthEntryHandler(
            test_mode=settings.e2e_test_mode,
            limiter=limiter,
            rate=settings.email_signin_rate_limit,
        )
    )
    app.middleware("http")(log_requests)

    app.add_exception_handler(AuthError, auth_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.include_router(auth_router, prefix="/api/auth", tags=["Auth"])
    app.include_router(users_router, prefix="/api", tags=["Users"])

    @app.get("/docs", include_in_schema=False)
    async def docs(user: User = Depends(get_current_user)):
        """Swagger UI -- requires authentication."""
        return get_swagger_ui_html(openapi_url="/openapi.json", title="Builder Auth API")

    @app.get("/redoc", include_in_schema=False)
    async def redoc(user: User = Depends(get_current_user)):
        """ReDoc UI -- requires authentication."""
        return get_redoc_html(openapi_url="/openapi.json", title="Builder Auth API")

    # Health is defined on the app (not in a router) so it is always
    # reachable. No auth, no rate limit: load balancers poll it.
    @app.get("/api/health", tags=["Health"])
    async def health() -> HealthResponse:
        """Return API liveness and current version."""
        return HealthResponse(version=VERSION)

    return app


app = create_app()
