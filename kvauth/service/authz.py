from __future__ import annotations

from typing import Iterable, Optional, Union

from kvauth.service.errors import (
    AccountDeactivatedError,
    AuthRequiredError,
    InsufficientRoleError,
)
from kvauth.storage.models import Role, User

RoleLike = Union[Role, str]

EDITOR_ROLES = (Role.ADMIN, Role.EDITOR)


def _as_roles(roles: Iterable[RoleLike]) -> set[Role]:
    return {Role(role) for role in roles}


def has_role(user: Optional[User], role: RoleLike) -> bool:
    if user is None:
        return False
    return user.role == Role(role)


def has_any_role(user: Optional[User], roles: Iterable[RoleLike]) -> bool:
    if user is None:
        return False
    return user.role in _as_roles(roles)


def is_admin(user: Optional[User]) -> bool:
    return has_role(user, Role.ADMIN)


def can_edit(user: Optional[User]) -> bool:
    return has_any_role(user, EDITOR_ROLES)


def can_read(user: Optional[User]) -> bool:
    """Any authenticated, active user."""
    return user is not None and user.is_active


def require_auth(user: Optional[User]) -> User:
    if user is None:
        raise AuthRequiredError("authentication required")
    if not user.is_active:
        raise AccountDeactivatedError("account is deactivated", detail={"user_id": user.id})
    return user


def require_role(user: Optional[User], *roles: RoleLike) -> User:
    user = require_auth(user)
    if not has_any_role(user, roles):
        allowed = sorted(role.value for role in _as_roles(roles))
        raise InsufficientRoleError(
            f"{' or '.join(allowed)} access required", detail={"required_roles": allowed}
        )
    return user


def require_admin(user: Optional[User]) -> User:
    return require_role(user, Role.ADMIN)


def require_editor(user: Optional[User]) -> User:
    return require_role(user, *EDITOR_ROLES)
