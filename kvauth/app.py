from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, Request

from kvauth.api.error_handling import error_response, register_exception_handlers
from kvauth.api.routes import delete_session_cookie, router, set_session_cookie
from kvauth.logging import bind_request_context, get_logger
from kvauth.service.errors import ServiceError
from kvauth.service.runtime import get_runtime
from kvauth.storage.errors import StoreUnavailable

logger = get_logger(__name__)

__version__ = "0.1.0"

_NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, private",
    "Pragma": "no-cache",
    "Expires": "0",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup so misconfiguration fails fast."""
    try:
        get_runtime()
    except Exception as exc:
        logger.error("startup_failed", error_type=type(exc).__name__, error=str(exc))
        raise

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="kvauth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def attach_session(request: Request, call_next):
    """Validate the session cookie and expose ``request.state.user``.

    A valid session gets its cookie refreshed to the (possibly rotated)
    expiry; an invalid one gets the cookie deleted. Storage failures fail
    the request instead of treating it as anonymous.
    """
    request.state.session = None
    request.state.user = None
    try:
        runtime = get_runtime()
    except ServiceError as exc:
        return error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)
    settings = runtime.settings
    token = request.cookies.get(settings.session_cookie_name)
    if token is None:
        return await call_next(request)

    try:
        session, user = await runtime.sessions.validate_token(token)
    except StoreUnavailable as exc:
        logger.error("session_validation_unavailable", path=request.url.path, error=exc.message)
        return error_response(503, "storage temporarily unavailable", code="store_unavailable")

    request.state.session = session
    request.state.user = user
    response = await call_next(request)

    if session is not None:
        for name, value in _NO_STORE_HEADERS.items():
            response.headers[name] = value
    if getattr(request.state, "session_cookie_handled", False):
        return response
    if session is not None:
        set_session_cookie(response, settings, token, session.expires_at)
    else:
        delete_session_cookie(response, settings)
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


# Registered last so it wraps the others and their logs carry the id
@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag the request with X-Request-ID (client supplied or fresh UUID)."""
    correlation_id = bind_request_context(
        request.headers.get("X-Request-ID"), method=request.method, path=request.url.path
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    overall_healthy = True
    for label, store in (("users_store", runtime.users_store), ("sessions_store", runtime.sessions_store)):
        try:
            await store.get("healthz")
            checks[label] = {"status": "healthy"}
        except StoreUnavailable as exc:
            logger.error(f"health_check_{label}_failed", error=exc.message)
            checks[label] = {"status": "unhealthy"}
            overall_healthy = False
    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
