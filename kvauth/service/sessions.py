"""Hashed-token sessions with lazy expiry and in-place rotation."""

from __future__ import annotations

import base64
import hashlib
import secrets
from datetime import datetime, timedelta
from typing import List, NamedTuple, Optional

from kvauth.config import Settings
from kvauth.logging import get_logger
from kvauth.service.errors import AccountDeactivatedError, NotFoundError
from kvauth.service.users import UserDirectory
from kvauth.storage.kv import KeyValueStore
from kvauth.storage.models import Session, User, utcnow

logger = get_logger(__name__)

TOKEN_PREFIX = "token:"
TOKEN_BYTES = 20


def generate_session_token() -> str:
    """Random bearer token: 20 bytes, lower-case base32 without padding."""
    raw = secrets.token_bytes(TOKEN_BYTES)
    return base64.b32encode(raw).decode("ascii").rstrip("=").lower()


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def session_key(session_id: str) -> str:
    return f"{TOKEN_PREFIX}{session_id}"


class SessionValidation(NamedTuple):
    session: Optional[Session]
    user: Optional[User]


_INVALID = SessionValidation(None, None)


class SessionStore:
    """Session records keyed by the SHA-256 of the bearer token.

    The raw token is never persisted. Each record carries a store TTL equal to
    its expiry, and expiry is also checked on read since TTL eviction is not
    guaranteed to be prompt. Rotation extends ``expires_at`` under the same
    session id; the token a client holds never changes.
    """

    def __init__(
        self, store: KeyValueStore, users: UserDirectory, settings: Settings
    ) -> None:
        self.store = store
        self.users = users
        self.lifetime = timedelta(days=settings.session_ttl_days)
        self.refresh_window = timedelta(days=settings.session_refresh_days)

    def _now(self) -> datetime:
        return utcnow()

    @staticmethod
    def _ttl_seconds(expires_at: datetime, now: datetime) -> int:
        return max(1, int((expires_at - now).total_seconds()))

    @staticmethod
    def issue_token() -> str:
        return generate_session_token()

    async def _write(self, session: Session, now: datetime) -> None:
        await self.store.put(
            session_key(session.id),
            session.to_record(),
            ttl_seconds=self._ttl_seconds(session.expires_at, now),
        )

    async def _read(self, session_id: str) -> Optional[Session]:
        data = await self.store.get(session_key(session_id), as_json=True)
        if not data:
            return None
        try:
            return Session.from_record(session_id, data)
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("session_record_unreadable", session_id=session_id, error=str(exc))
            await self.store.delete(session_key(session_id))
            return None

    async def _sweep_stale_refs(self, user: User, now: datetime) -> User:
        """Drop mirror entries that look expired, deleting their records if truly dead.

        The mirror is not authoritative: an entry whose record is still live
        (its rotation never reached the profile) is re-mirrored instead.
        """
        for stale_id in await self.users.prune_expired_session_refs(user):
            backing = await self._read(stale_id)
            if backing is None or now >= backing.expires_at:
                await self.store.delete(session_key(stale_id))
                continue
            if backing.user_id != user.id:
                continue
            logger.info("session_mirror_expiry_stale", session_id=stale_id, user_id=user.id)
            refreshed = await self.users.add_session_ref(user.id, stale_id, backing.expires_at)
            if refreshed is not None:
                user = refreshed
        return user

    async def create_session(self, token: str, user_id: str) -> Session:
        user = await self.users.lookup_by_id(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        if not user.is_active:
            logger.warning("session_refused_inactive_user", user_id=user_id)
            raise AccountDeactivatedError("account is deactivated")
        now = self._now()
        session = Session(id=hash_token(token), user_id=user_id, expires_at=now + self.lifetime)
        await self._write(session, now)
        mirrored = await self.users.add_session_ref(user_id, session.id, session.expires_at)
        if mirrored is None:
            # Owner vanished between the lookup and the mirror write
            await self.store.delete(session_key(session.id))
            raise NotFoundError("user not found", detail={"user_id": user_id})
        logger.info(
            "session_created",
            session_id=session.id,
            user_id=user_id,
            expires_at=session.expires_at.isoformat(),
        )
        return session

    async def validate_token(self, token: Optional[str]) -> SessionValidation:
        if not token:
            return _INVALID
        session_id = hash_token(token)
        session = await self._read(session_id)
        if session is None:
            logger.info("session_not_found", session_id=session_id)
            return _INVALID

        now = self._now()
        if now >= session.expires_at:
            await self.store.delete(session_key(session_id))
            await self.users.remove_session_ref(session.user_id, session_id)
            logger.info("session_expired", session_id=session_id, user_id=session.user_id)
            return _INVALID

        user = await self.users.lookup_by_id(session.user_id)
        if user is None:
            await self.store.delete(session_key(session_id))
            logger.warning("session_orphaned", session_id=session_id, user_id=session.user_id)
            return _INVALID

        user = await self._sweep_stale_refs(user, now)
        mirrored = next((ref for ref in user.sessions if ref.session_id == session_id), None)

        if session.expires_at - now < self.refresh_window:
            session.expires_at = now + self.lifetime
            await self._write(session, now)
            refreshed = await self.users.add_session_ref(user.id, session_id, session.expires_at)
            if refreshed is not None:
                user = refreshed
            logger.info(
                "session_rotated",
                session_id=session_id,
                user_id=user.id,
                expires_at=session.expires_at.isoformat(),
            )
        elif mirrored is None or mirrored.expires_at != session.expires_at:
            # Mirror write was lost, or a later profile write carried an old expiry
            repaired = await self.users.add_session_ref(user.id, session_id, session.expires_at)
            if repaired is not None:
                user = repaired
            logger.info("session_mirror_repaired", session_id=session_id, user_id=user.id)

        return SessionValidation(session, user)

    async def invalidate_session(self, session_id: str) -> None:
        session = await self._read(session_id)
        await self.store.delete(session_key(session_id))
        if session is not None:
            await self.users.remove_session_ref(session.user_id, session_id)
            logger.info("session_invalidated", session_id=session_id, user_id=session.user_id)

    async def invalidate_token(self, token: str) -> None:
        await self.invalidate_session(hash_token(token))

    async def invalidate_all_for_user(self, user_id: str) -> int:
        """Delete every session owned by ``user_id``. Scans the whole session table."""
        removed: List[str] = []
        for entry in await self.store.list(TOKEN_PREFIX):
            session_id = entry.name[len(TOKEN_PREFIX):]
            data = await self.store.get(entry.name, as_json=True)
            if data and data.get("user_id") == user_id:
                await self.store.delete(entry.name)
                removed.append(session_id)
        if removed:
            await self.users.remove_session_refs(user_id, removed)
        logger.info("sessions_invalidated_for_user", user_id=user_id, session_count=len(removed))
        return len(removed)
