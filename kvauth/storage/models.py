from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class Role(str, Enum):
    ADMIN = "admin"
    EDITOR = "editor"
    READER = "reader"


class AuthSource(str, Enum):
    """External identity providers a user can be bound to."""

    GITHUB = "github"
    GOOGLE = "google"
    MICROSOFT = "microsoft"


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


def serialize_datetime(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def deserialize_datetime(raw: str) -> datetime:
    dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class SessionRef:
    """Denormalized pointer from a user profile to one of its sessions.

    Not authoritative: the session table decides validity.
    """

    session_id: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.session_id, "expires_at": serialize_datetime(self.expires_at)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRef":
        return cls(
            session_id=data["id"],
            expires_at=deserialize_datetime(data["expires_at"]),
        )


@dataclass
class User:
    id: str
    username: str
    email: str
    role: Role = Role.READER
    auth_source: AuthSource = AuthSource.GITHUB
    external_id: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    sessions: List[SessionRef] = field(default_factory=list)

    @property
    def is_linked(self) -> bool:
        return self.external_id is not None

    def to_dict(self, *, include_sessions: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role.value,
            "auth_source": self.auth_source.value,
            "is_active": self.is_active,
            "created_at": serialize_datetime(self.created_at),
            "updated_at": serialize_datetime(self.updated_at),
        }
        if self.external_id is not None:
            data["external_id"] = self.external_id
        if include_sessions:
            data["sessions"] = [ref.to_dict() for ref in self.sessions]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        external_id = data.get("external_id")
        return cls(
            id=data["id"],
            username=data["username"],
            email=data["email"],
            role=Role(data.get("role", Role.READER.value)),
            auth_source=AuthSource(data.get("auth_source", AuthSource.GITHUB.value)),
            external_id=str(external_id) if external_id is not None else None,
            is_active=bool(data.get("is_active", True)),
            created_at=deserialize_datetime(data["created_at"]),
            updated_at=deserialize_datetime(data["updated_at"]),
            sessions=[SessionRef.from_dict(ref) for ref in data.get("sessions") or []],
        )


@dataclass
class Session:
    """Session credential. ``id`` is the SHA-256 of the bearer token."""

    id: str
    user_id: str
    expires_at: datetime

    def to_record(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "expires_at": serialize_datetime(self.expires_at)}

    @classmethod
    def from_record(cls, session_id: str, data: Dict[str, Any]) -> "Session":
        return cls(
            id=session_id,
            user_id=data["user_id"],
            expires_at=deserialize_datetime(data["expires_at"]),
        )
