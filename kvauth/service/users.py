"""User directory over a key-value store.

Layout in the users store::

    profile:<user_id>                      JSON user record
    index:username:<lowercased username>   user_id
    index:<auth_source>:<external_id>      user_id

Profile and index writes are separate, non-transactional puts. Every read
that goes through an index re-checks the profile it lands on, so a dangling
or stale index entry reads as "not found" instead of an integrity error.
Concurrent mutations of the same profile are last-writer-wins.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional, Type, TypeVar, Union

from kvauth.logging import get_logger
from kvauth.service.errors import ConflictError, ValidationError
from kvauth.storage.kv import KeyValueStore
from kvauth.storage.models import AuthSource, Role, SessionRef, User, utcnow

logger = get_logger(__name__)

PROFILE_PREFIX = "profile:"
USERNAME_INDEX_PREFIX = "index:username:"

E = TypeVar("E", bound=Enum)


def profile_key(user_id: str) -> str:
    return f"{PROFILE_PREFIX}{user_id}"


def username_key(username: str) -> str:
    return f"{USERNAME_INDEX_PREFIX}{username.lower()}"


def external_id_key(auth_source: Union[AuthSource, str], external_id: Union[str, int]) -> str:
    source = AuthSource(auth_source).value
    return f"index:{source}:{external_id}"


def _coerce(enum_cls: Type[E], value: Union[E, str], field: str) -> E:
    try:
        return enum_cls(value)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(
            f"invalid {field}; must be one of: {allowed}", detail={field: str(value)}
        ) from exc


def _clean_username(username: str) -> str:
    cleaned = (username or "").strip()
    if not cleaned:
        raise ValidationError("username is required")
    if ":" in cleaned:
        raise ValidationError("username cannot contain ':'", detail={"username": cleaned})
    return cleaned


class UserDirectory:
    """Profiles plus the username and external-identity indexes."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store
        self.logger = logger

    def _now(self) -> datetime:
        return utcnow()

    @staticmethod
    def _new_user_id() -> str:
        return uuid.uuid4().hex

    async def _write_profile(self, user: User) -> None:
        await self.store.put(profile_key(user.id), user.to_dict())

    async def _ensure_username_available(self, username: str) -> None:
        # Best-effort: read-then-write, so two concurrent creates of the same
        # username both pass and the later index write wins.
        existing = await self.lookup_by_username(username)
        if existing is not None:
            self.logger.warning(
                "create_user_conflict", username=username, existing_user_id=existing.id
            )
            raise ConflictError(
                "username already exists", detail={"username": username}
            )

    async def _insert(self, user: User) -> User:
        # Order matters: profile first, then indexes. An interrupted create
        # leaves a profile without indexes, which index reads never surface.
        await self._write_profile(user)
        await self.store.put(username_key(user.username), user.id)
        if user.external_id is not None:
            await self.store.put(external_id_key(user.auth_source, user.external_id), user.id)
        return user

    async def create_user(
        self,
        external_id: Union[str, int],
        email: str,
        username: str,
        role: Union[Role, str] = Role.READER,
        *,
        auth_source: Union[AuthSource, str] = AuthSource.GITHUB,
    ) -> User:
        """Create a user already bound to an external identity."""
        username = _clean_username(username)
        role = _coerce(Role, role, "role")
        auth_source = _coerce(AuthSource, auth_source, "auth_source")
        self.logger.info(
            "create_user",
            username=username,
            external_id=str(external_id),
            auth_source=auth_source.value,
            role=role.value,
            email=email,
        )
        await self._ensure_username_available(username)
        now = self._now()
        user = User(
            id=self._new_user_id(),
            username=username,
            email=email,
            role=role,
            auth_source=auth_source,
            external_id=str(external_id),
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        try:
            await self._insert(user)
        except Exception as exc:
            self.logger.error("create_user_error", username=username, error=str(exc))
            raise
        self.logger.info("create_user_success", user_id=user.id, username=username)
        return user

    async def create_pre_registered_user(
        self,
        username: str,
        email: str,
        role: Union[Role, str],
        auth_source: Union[AuthSource, str],
    ) -> User:
        """Create a user that will be bound to its provider identity on first login."""
        username = _clean_username(username)
        role = _coerce(Role, role, "role")
        auth_source = _coerce(AuthSource, auth_source, "auth_source")
        self.logger.info(
            "create_preregistered_user",
            username=username,
            auth_source=auth_source.value,
            role=role.value,
            email=email,
        )
        await self._ensure_username_available(username)
        now = self._now()
        user = User(
            id=self._new_user_id(),
            username=username,
            email=email,
            role=role,
            auth_source=auth_source,
            external_id=None,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        try:
            await self._insert(user)
        except Exception as exc:
            self.logger.error(
                "create_preregistered_user_error", username=username, error=str(exc)
            )
            raise
        self.logger.info("create_preregistered_user_success", user_id=user.id, username=username)
        return user

    async def lookup_by_id(self, user_id: str) -> Optional[User]:
        if not user_id:
            return None
        data = await self.store.get(profile_key(user_id), as_json=True)
        if not data:
            self.logger.info("get_user_by_id_not_found", user_id=user_id)
            return None
        try:
            return User.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            self.logger.error("user_profile_unreadable", user_id=user_id, error=str(exc))
            return None

    async def _resolve_index(
        self, key: str, operation: str, matches: Callable[[User], bool], **context: Any
    ) -> Optional[User]:
        user_id = await self.store.get(key)
        if not user_id:
            self.logger.info(f"{operation}_not_found", **context)
            return None
        user = await self.lookup_by_id(user_id)
        if user is None or not matches(user):
            # Index written but profile missing or no longer carrying the value
            self.logger.warning(f"{operation}_dangling_index", user_id=user_id, **context)
            return None
        return user

    async def lookup_by_username(self, username: str) -> Optional[User]:
        if not username:
            return None
        lowered = username.strip().lower()
        return await self._resolve_index(
            username_key(lowered),
            "get_user_by_username",
            lambda user: user.username.lower() == lowered,
            username=username,
        )

    async def lookup_by_external_id(
        self,
        external_id: Union[str, int],
        auth_source: Union[AuthSource, str] = AuthSource.GITHUB,
    ) -> Optional[User]:
        if external_id is None or external_id == "":
            return None
        source = _coerce(AuthSource, auth_source, "auth_source")
        wanted = str(external_id)
        return await self._resolve_index(
            external_id_key(source, wanted),
            "get_user_by_external_id",
            lambda user: user.external_id == wanted and user.auth_source == source,
            external_id=wanted,
            auth_source=source.value,
        )

    async def _mutate(
        self, user_id: str, operation: str, apply: Callable[[User], None]
    ) -> Optional[User]:
        user = await self.lookup_by_id(user_id)
        if user is None:
            self.logger.error(f"{operation}_not_found", user_id=user_id)
            return None
        apply(user)
        user.updated_at = self._now()
        await self._write_profile(user)
        return user

    async def update_role(self, user_id: str, role: Union[Role, str]) -> Optional[User]:
        new_role = _coerce(Role, role, "role")
        previous: dict[str, str] = {}

        def _apply(user: User) -> None:
            previous["role"] = user.role.value
            user.role = new_role

        user = await self._mutate(user_id, "update_user_role", _apply)
        if user is not None:
            self.logger.info(
                "update_user_role_success",
                user_id=user_id,
                username=user.username,
                old_role=previous["role"],
                new_role=new_role.value,
            )
        return user

    async def set_active(self, user_id: str, is_active: bool) -> Optional[User]:
        operation = "reactivate_user" if is_active else "deactivate_user"

        def _apply(user: User) -> None:
            user.is_active = bool(is_active)

        user = await self._mutate(user_id, operation, _apply)
        if user is not None:
            self.logger.info(f"{operation}_success", user_id=user_id, username=user.username)
        return user

    async def link_external_identity(
        self,
        user_id: str,
        external_id: Union[str, int],
        email: str,
        *,
        provider: Union[AuthSource, str] = AuthSource.GITHUB,
    ) -> Optional[User]:
        """Bind a pre-registered user to its provider identity on first login."""
        provider = _coerce(AuthSource, provider, "provider")
        wanted = str(external_id)

        def _apply(user: User) -> None:
            user.external_id = wanted
            user.email = email

        user = await self._mutate(user_id, "update_user_first_login", _apply)
        if user is None:
            return None
        if user.auth_source == provider:
            await self.store.put(external_id_key(provider, wanted), user.id)
        else:
            self.logger.warning(
                "link_external_identity_source_mismatch",
                user_id=user_id,
                auth_source=user.auth_source.value,
                provider=provider.value,
            )
        self.logger.info(
            "update_user_first_login_success", user_id=user_id, username=user.username
        )
        return user

    async def list_all(self) -> List[User]:
        """Every profile, newest first. Full scan: administrative use only."""
        users: List[User] = []
        for entry in await self.store.list(PROFILE_PREFIX):
            user = await self.lookup_by_id(entry.name[len(PROFILE_PREFIX):])
            if user is not None:
                users.append(user)
        users.sort(key=lambda u: u.created_at, reverse=True)
        self.logger.info("list_all_users_success", user_count=len(users))
        return users

    async def delete_user(self, user_id: str) -> bool:
        """Remove the profile, then any index entries still pointing at it.

        Sessions are left to expire or to self-heal on their next validation.
        """
        user = await self.lookup_by_id(user_id)
        if user is None:
            self.logger.error("delete_user_not_found", user_id=user_id)
            return False
        await self.store.delete(profile_key(user_id))
        index_keys = [username_key(user.username)]
        if user.external_id is not None:
            index_keys.append(external_id_key(user.auth_source, user.external_id))
        for key in index_keys:
            # A reused username may already point at a newer user
            if await self.store.get(key) == user_id:
                await self.store.delete(key)
        self.logger.info("delete_user_success", user_id=user_id, username=user.username)
        return True

    async def add_session_ref(
        self, user_id: str, session_id: str, expires_at: datetime
    ) -> Optional[User]:
        """Mirror a session onto its owner, pruning expired entries as a side effect."""
        user = await self.lookup_by_id(user_id)
        if user is None:
            self.logger.error("add_session_error", user_id=user_id, error="user not found")
            return None
        now = self._now()
        live = [
            ref
            for ref in user.sessions
            if not ref.is_expired(now) and ref.session_id != session_id
        ]
        expired_count = sum(1 for ref in user.sessions if ref.is_expired(now))
        live.append(SessionRef(session_id=session_id, expires_at=expires_at))
        user.sessions = live
        await self._write_profile(user)
        if expired_count:
            self.logger.info(
                "add_session_cleaned_expired",
                user_id=user_id,
                expired_sessions_cleaned=expired_count,
            )
        return user

    async def remove_session_refs(self, user_id: str, session_ids: Iterable[str]) -> None:
        targets = set(session_ids)
        user = await self.lookup_by_id(user_id)
        if user is None:
            self.logger.info("remove_session_user_not_found", user_id=user_id)
            return
        remaining = [ref for ref in user.sessions if ref.session_id not in targets]
        if len(remaining) == len(user.sessions):
            return
        user.sessions = remaining
        await self._write_profile(user)

    async def remove_session_ref(self, user_id: str, session_id: str) -> None:
        await self.remove_session_refs(user_id, [session_id])

    async def prune_expired_session_refs(self, user: User) -> List[str]:
        """Drop expired mirror entries from ``user`` and persist; returns their ids."""
        now = self._now()
        expired = [ref.session_id for ref in user.sessions if ref.is_expired(now)]
        if not expired:
            return []
        self.logger.info(
            "clean_expired_sessions", user_id=user.id, expired_session_count=len(expired)
        )
        user.sessions = [ref for ref in user.sessions if not ref.is_expired(now)]
        await self._write_profile(user)
        return expired
