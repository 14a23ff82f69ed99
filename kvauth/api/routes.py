from __future__ import annotations

from datetime import datetime
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response
from fastapi.responses import PlainTextResponse, RedirectResponse

from kvauth.api.error_handling import error_response
from kvauth.api.schemas import (
    CreateUserRequest,
    DeleteUserRequest,
    Envelope,
    InvalidatedSessionsResponse,
    LoginStartResponse,
    ToggleActiveRequest,
    UpdateRoleRequest,
    UserListResponse,
    UserResponse,
)
from kvauth.config import Settings
from kvauth.logging import get_logger
from kvauth.service.authz import require_admin
from kvauth.service.errors import AuthRequiredError, NotFoundError, ServiceError, ValidationError
from kvauth.service.linking import CallbackInput
from kvauth.service.oauth import generate_state
from kvauth.service.runtime import get_runtime
from kvauth.storage.models import AuthSource, Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

LOGIN_USERNAME_HEADER = "X-Login-Username"


def mark_session_cookie_handled(request: Request) -> None:
    """Stop the session middleware from re-setting the cookie on this response."""
    request.state.session_cookie_handled = True


def set_session_cookie(
    response: Response, settings: Settings, token: str, expires_at: datetime
) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        expires=expires_at,
        path="/",
    )


def delete_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
    )


def _set_oauth_cookie(response: Response, settings: Settings, name: str, value: str) -> None:
    response.set_cookie(
        name,
        value,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.oauth_cookie_max_age_seconds,
        path="/",
    )


def _clear_oauth_cookies(response: Response, settings: Settings) -> None:
    for name in (settings.oauth_username_cookie_name, settings.oauth_state_cookie_name):
        response.delete_cookie(
            name, path="/", httponly=True, secure=settings.cookie_secure, samesite="lax"
        )


def get_current_session(request: Request) -> Optional[Session]:
    return getattr(request.state, "session", None)


def get_current_user(request: Request) -> Optional[User]:
    return getattr(request.state, "user", None)


async def get_admin_user(request: Request) -> User:
    return require_admin(get_current_user(request))


@router.get("/auth/login/{provider}", response_model=Envelope, tags=["auth"])
async def login_start(
    response: Response,
    provider: AuthSource = Path(..., description="Identity provider"),
    username: Optional[str] = Header(None, alias=LOGIN_USERNAME_HEADER),
):
    """Begin an OAuth login for ``username``.

    Returns the provider authorization URL for the client to navigate to.
    """
    runtime = get_runtime()
    settings = runtime.settings
    username = (username or "").strip()
    if not username:
        raise ValidationError("Username is required")

    user = await runtime.users.lookup_by_username(username)
    if user is None and not settings.registration_enabled:
        logger.warning("oauth_start_user_not_found", username=username, provider=provider.value)
        raise NotFoundError("User not found. Please contact the site administrator.")

    client = runtime.oauth_client(provider)
    state = generate_state()
    _set_oauth_cookie(response, settings, settings.oauth_username_cookie_name, username.lower())
    _set_oauth_cookie(response, settings, settings.oauth_state_cookie_name, state)
    logger.info("oauth_start", provider=provider.value, username=username)
    return Envelope(
        status="ok",
        data=LoginStartResponse(
            redirect_url=client.create_authorization_url(state), provider=provider
        ),
    )


@router.get("/auth/login/{provider}/callback", tags=["auth"])
async def login_callback(
    request: Request,
    provider: AuthSource = Path(..., description="Identity provider"),
    code: Optional[str] = Query(None, max_length=512),
    state: Optional[str] = Query(None, max_length=128),
):
    runtime = get_runtime()
    settings = runtime.settings
    try:
        client = runtime.oauth_client(provider)
    except ServiceError as exc:
        logger.error("oauth_callback_client_unavailable", provider=provider.value, error=exc.message)
        response = error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)
        _clear_oauth_cookies(response, settings)
        return response
    outcome = await runtime.linker.link(
        CallbackInput(
            stored_state=request.cookies.get(settings.oauth_state_cookie_name),
            pending_username=request.cookies.get(settings.oauth_username_cookie_name),
            code=code,
            state=state,
        ),
        client,
    )

    if outcome.fatal_status is not None:
        response: Response = PlainTextResponse(
            outcome.reason or "", status_code=outcome.fatal_status
        )
    elif not outcome.succeeded:
        response = RedirectResponse(
            f"{settings.login_path}?error={quote(outcome.reason or '')}", status_code=302
        )
    else:
        token = runtime.sessions.issue_token()
        session = await runtime.sessions.create_session(token, outcome.user.id)
        response = RedirectResponse(settings.home_path, status_code=302)
        set_session_cookie(response, settings, token, session.expires_at)
        mark_session_cookie_handled(request)
        logger.info(
            "oauth_login_complete",
            provider=provider.value,
            outcome=outcome.status.value,
            user_id=outcome.user.id,
        )

    if outcome.clear_pending_username:
        _clear_oauth_cookies(response, settings)
    return response


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    session = get_current_session(request)
    if session is None:
        logger.warning("logout_without_session")
        raise AuthRequiredError("authentication required")
    token = request.cookies.get(runtime.settings.session_cookie_name)
    await runtime.sessions.invalidate_token(token)
    delete_session_cookie(response, runtime.settings)
    mark_session_cookie_handled(request)
    return Envelope(status="ok", data={"logged_out": True})


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(principal: User = Depends(get_admin_user)):
    runtime = get_runtime()
    users = await runtime.users.list_all()
    return Envelope(
        status="ok",
        data=UserListResponse(users=[UserResponse.from_user(user) for user in users]),
    )


@router.post("/admin/users", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_user(
    body: CreateUserRequest, principal: User = Depends(get_admin_user)
):
    runtime = get_runtime()
    user = await runtime.users.create_pre_registered_user(
        body.username, body.email, body.role, body.auth_source
    )
    logger.info("admin_user_created", admin_id=principal.id, user_id=user.id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/admin/users/update-role", response_model=Envelope, tags=["admin"])
async def admin_update_role(
    body: UpdateRoleRequest, principal: User = Depends(get_admin_user)
):
    runtime = get_runtime()
    user = await runtime.users.update_role(body.user_id, body.role)
    if not user:
        raise NotFoundError("user not found", detail={"user_id": body.user_id})
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/admin/users/toggle-active", response_model=Envelope, tags=["admin"])
async def admin_toggle_active(
    body: ToggleActiveRequest, principal: User = Depends(get_admin_user)
):
    runtime = get_runtime()
    user = await runtime.users.set_active(body.user_id, body.is_active)
    if not user:
        raise NotFoundError("user not found", detail={"user_id": body.user_id})
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/admin/users/delete", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    body: DeleteUserRequest, principal: User = Depends(get_admin_user)
):
    runtime = get_runtime()
    if body.user_id == principal.id:
        raise ValidationError("Cannot delete your own account")
    if not await runtime.users.delete_user(body.user_id):
        raise NotFoundError("user not found", detail={"user_id": body.user_id})
    logger.info("admin_user_deleted", admin_id=principal.id, user_id=body.user_id)
    return Envelope(status="ok", data={"deleted": True, "user_id": body.user_id})


@router.delete("/admin/users/{user_id}/sessions", response_model=Envelope, tags=["admin"])
async def admin_invalidate_sessions(
    user_id: str, principal: User = Depends(get_admin_user)
):
    """Log a user out everywhere. Scans the whole session table."""
    runtime = get_runtime()
    count = await runtime.sessions.invalidate_all_for_user(user_id)
    return Envelope(
        status="ok", data=InvalidatedSessionsResponse(user_id=user_id, invalidated=count)
    )
