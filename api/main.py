"""
api/main.py -- FastAPI application entry point for WebAuth.

Builds the app, its middleware stack, exception handlers and the JSON health
probe. The HTML account flows and the SSE routes are mounted by asgi.py.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. assign_request_id     -- request.state.request_id + X-Request-ID header
  3. log_requests          -- one access log line per request
  4. security_headers      -- CSP, nosniff, frame and referrer policy
  5. attach_session_user   -- session cookie -> request.state.user

Lifespan handles startup (engine, stores, mailer, broadcaster, token purge
task) and shutdown (cancel purge task, close broadcaster, dispose engine)
symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from auth.events import EventJournal
from auth.models import User
from auth.schema import create_db_engine
from auth.session import SESSION_COOKIE, SessionLookup, delete_session_cookie, user_from_session_token
from auth.store import UserStore
from auth.tokens import TokenStore
from core.config import get_settings
from core.request_id import RequestIdGenerator
from mail.smtp import Mailer, SMTPConfig
from sse.broadcaster import Broadcaster

VERSION = "0.1.0"

settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("webauth.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval: float) -> None:
    """Delete expired tokens every `interval` seconds.

    Lookups already remove expired rows they touch; this sweeps the ones
    nobody presents again. A failed sweep is logged and retried next round.
    CancelledError from shutdown propagates out of asyncio.sleep.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(app.state.token_store.purge_expired)
        except SQLAlchemyError:
            logger.exception("Token purge failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create shared resources on startup and release them on shutdown.

    Startup order: engine first (every store needs it), then the stores,
    mailer and broadcaster, and the purge task last because it references
    app.state.token_store.
    """
    logger.info("WebAuth starting up")
    engine = create_db_engine(settings.database_url)
    app.state.engine = engine
    app.state.token_store = TokenStore(engine)
    app.state.user_store = UserStore(engine, app.state.token_store)
    app.state.journal = EventJournal(engine)
    app.state.mailer = Mailer(
        SMTPConfig(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_password,
            timeout=settings.smtp_timeout,
        )
    )
    logger.info("Stores initialized (%s)", engine.url.render_as_string(hide_password=True))

    broadcaster = Broadcaster(queue_size=settings.sse_queue_size)
    broadcaster.register_events(*settings.sse_events)
    broadcaster.run()
    app.state.broadcaster = broadcaster
    logger.info("Broadcaster running for events %s", settings.sse_events)

    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.token_purge_interval_seconds))

    yield

    app.state.purge_task.cancel()
    await broadcaster.close()
    engine.dispose()
    logger.info("WebAuth shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="WebAuth",
    description="Form-based authentication, sessions and server-sent events.",
    version=VERSION,
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
)

_request_ids = RequestIdGenerator()

# ---------------------------------------------------------------------------
# Middleware
#
# Each add_middleware() / @app.middleware call wraps everything registered
# before it, so the function defined LAST runs FIRST. They are therefore
# listed here innermost first.
# ---------------------------------------------------------------------------


def _sets_session_cookie(response: Response) -> bool:
    return any(v.startswith(f"{SESSION_COOKIE}=") for v in response.headers.getlist("set-cookie"))


@app.middleware("http")
async def attach_session_user(request: Request, call_next):
    """Resolve the session cookie to request.state.user.

    A cookie that no longer maps to a live session is deleted on the way
    out, unless the handler already wrote a fresh session cookie (login).
    The DB lookup only happens when a cookie is present.
    """
    value = request.cookies.get(SESSION_COOKIE, "")
    if value:
        lookup = await run_in_threadpool(user_from_session_token, request.app.state.user_store, value)
    else:
        lookup = SessionLookup(User(), False)
    request.state.user = lookup.user

    response = await call_next(request)
    if lookup.stale and not _sets_session_cookie(response):
        delete_session_cookie(response)
    return response


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("Content-Security-Policy", "default-src 'self'; style-src 'self' 'unsafe-inline'")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "same-origin")
    return response


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
        getattr(request.state, "request_id", "-"),
    )
    return response


@app.middleware("http")
async def assign_request_id(request: Request, call_next):
    request_id = _request_ids.next_id()
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

# ---------------------------------------------------------------------------
# Exception handlers
#
# Requests under /api/ get the ErrorResponse JSON envelope; the HTML pages
# get a short plain-text body.
# ---------------------------------------------------------------------------


def _is_api(request: Request) -> bool:
    return request.url.path.startswith("/api/")


def _error(request: Request, status_code: int, code: str, message: str, detail: str | None = None) -> Response:
    if _is_api(request):
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
        )
    return PlainTextResponse(message, status_code=status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> Response:
    return _error(request, 422, "validation_error", "Unprocessable Entity", str(exc.errors()))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> Response:
    return _error(request, exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> Response:
    """Catch-all for unexpected server errors.

    The traceback goes to the log only; the client gets a generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(request, 500, "internal_error", "Internal Server Error")


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version and a database round-trip check."""
    components = {"app": "ok", "database": "ok"}
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("Health check database failure: %s", exc)
        components["database"] = "error"
    status = "healthy" if all(v == "ok" for v in components.values()) else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)
