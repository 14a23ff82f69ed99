from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from kvauth.logging import get_correlation_id
from kvauth.storage.models import AuthSource, Role, User

_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "server_error",
    "misconfigured",
    "upstream_error",
    "oauth_exchange_failed",
    "provider_fetch_failed",
    "store_unavailable",
}

_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._@+-]{0,253}$")
_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email local part")
    labels = domain.split(".")
    if len(labels) < 2 or not all(_EMAIL_DOMAIN_LABEL.match(label) for label in labels):
        raise ValueError("invalid email domain")
    return normalized


def _validate_username(value: str) -> str:
    cleaned = unicodedata.normalize("NFKC", (value or "").strip())
    if not _USERNAME_PATTERN.match(cleaned):
        raise ValueError(
            "username must start with a letter or digit and contain only letters, digits and . _ @ + -"
        )
    return cleaned


class UserResponse(BaseModel):
    """User as returned by the admin API. The session mirror is never exposed."""

    id: str
    username: str
    email: str
    role: Role
    auth_source: AuthSource
    external_id: Optional[str] = None
    is_active: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls.model_validate(user.to_dict(include_sessions=False))


class UserListResponse(BaseModel):
    users: List[UserResponse]


class CreateUserRequest(BaseModel):
    username: str = Field(..., max_length=254)
    email: str
    role: Role = Role.READER
    auth_source: AuthSource = AuthSource.GITHUB

    @field_validator("username")
    @classmethod
    def _validate_create_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _validate_create_email(cls, value: str) -> str:
        return _validate_email(value)


class UpdateRoleRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    role: Role


class ToggleActiveRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    is_active: bool


class DeleteUserRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


class LoginStartResponse(BaseModel):
    redirect_url: str
    provider: AuthSource


class InvalidatedSessionsResponse(BaseModel):
    user_id: str
    invalidated: int
