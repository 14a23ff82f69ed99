from __future__ import annotations

import os
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from kvauth.logging import get_logger
from kvauth.storage.models import AuthSource

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity and session subsystem."""

    redis_url: Optional[str] = env_field("redis://localhost:6379/0", "REDIS_URL")
    users_namespace: str = env_field("users", "USERS_NAMESPACE")
    sessions_namespace: str = env_field("sessions", "SESSIONS_NAMESPACE")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    production: bool = env_field(
        False,
        "PRODUCTION",
        description="Production mode: secure cookies, registration closed unless overridden",
    )
    allow_registration: Optional[bool] = env_field(
        None,
        "ALLOW_REGISTRATION",
        description="Allow unknown provider identities to self-register; defaults to not PRODUCTION",
    )
    session_ttl_days: int = env_field(30, "SESSION_TTL_DAYS", ge=1)
    session_refresh_days: int = env_field(
        15,
        "SESSION_REFRESH_DAYS",
        ge=0,
        description="Extend a session when fewer than this many days remain",
    )
    # OAuth settings
    oauth_github_client_id: Optional[str] = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: Optional[str] = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_google_client_id: Optional[str] = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: Optional[str] = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_microsoft_client_id: Optional[str] = env_field(None, "OAUTH_MICROSOFT_CLIENT_ID")
    oauth_microsoft_client_secret: Optional[str] = env_field(
        None, "OAUTH_MICROSOFT_CLIENT_SECRET"
    )
    oauth_redirect_uri: str = env_field(
        "http://localhost:8000/v1/auth/login/{provider}/callback",
        "OAUTH_REDIRECT_URI",
        description="Callback URL; {provider} is replaced with the provider name",
    )
    oauth_user_agent: str = env_field("kvauth", "OAUTH_USER_AGENT")
    # Cookie names and redirect targets used by the HTTP layer
    session_cookie_name: str = env_field("session", "SESSION_COOKIE_NAME")
    oauth_state_cookie_name: str = env_field("oauth_state", "OAUTH_STATE_COOKIE_NAME")
    oauth_username_cookie_name: str = env_field(
        "oauth_username", "OAUTH_USERNAME_COOKIE_NAME"
    )
    oauth_cookie_max_age_seconds: int = env_field(60 * 10, "OAUTH_COOKIE_MAX_AGE_SECONDS")
    login_path: str = env_field("/login", "LOGIN_PATH")
    home_path: str = env_field("/", "HOME_PATH")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("redis_url", "allow_registration", mode="before")
    @classmethod
    def _blank_as_unset(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("session_refresh_days")
    @classmethod
    def _refresh_within_lifetime(cls, value: int, info) -> int:
        ttl = info.data.get("session_ttl_days")
        if ttl is not None and value > ttl:
            raise ValueError("SESSION_REFRESH_DAYS cannot exceed SESSION_TTL_DAYS")
        return value

    @property
    def registration_enabled(self) -> bool:
        if self.allow_registration is not None:
            return self.allow_registration
        return not self.production

    @property
    def cookie_secure(self) -> bool:
        return self.production

    def oauth_credentials(self, provider: str) -> tuple[Optional[str], Optional[str]]:
        """Get OAuth client credentials for a provider."""
        if provider == AuthSource.GITHUB:
            return self.oauth_github_client_id, self.oauth_github_client_secret
        elif provider == AuthSource.GOOGLE:
            return self.oauth_google_client_id, self.oauth_google_client_secret
        elif provider == AuthSource.MICROSOFT:
            return self.oauth_microsoft_client_id, self.oauth_microsoft_client_secret
        return None, None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            production=_settings_cache.production,
            use_memory_store=_settings_cache.use_memory_store,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
