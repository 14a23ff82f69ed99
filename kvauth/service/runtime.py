from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

import httpx

from kvauth.config import Settings, get_settings, reset_settings_cache
from kvauth.logging import get_logger
from kvauth.service.errors import MisconfiguredError
from kvauth.service.linking import IdentityLinker
from kvauth.service.oauth import OAuthClient, build_oauth_client
from kvauth.service.sessions import SessionStore
from kvauth.service.users import UserDirectory
from kvauth.storage.kv import KeyValueStore
from kvauth.storage.memory import MemoryKeyValueStore
from kvauth.storage.models import AuthSource
from kvauth.storage.redis_kv import RedisKeyValueStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Composition root: stores, directory, sessions and linker for the app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            production=self.settings.production,
        )
        self.users_store: KeyValueStore
        self.sessions_store: KeyValueStore
        if self.settings.use_memory_store:
            self.users_store = MemoryKeyValueStore(self.settings.users_namespace)
            self.sessions_store = MemoryKeyValueStore(self.settings.sessions_namespace)
        else:
            if not self.settings.redis_url:
                logger.error("runtime_store_missing", error="redis_url_missing")
                raise MisconfiguredError(
                    "REDIS_URL is required unless USE_MEMORY_STORE=true"
                )
            try:
                users_store = RedisKeyValueStore(
                    self.settings.redis_url, self.settings.users_namespace
                )
                users_store.verify_connection()
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
            self.users_store = users_store
            self.sessions_store = RedisKeyValueStore(
                self.settings.redis_url, self.settings.sessions_namespace
            )

        # Tests swap in an httpx.MockTransport here
        self.oauth_transport: Optional[httpx.AsyncBaseTransport] = None
        self.users = UserDirectory(self.users_store)
        self.sessions = SessionStore(self.sessions_store, self.users, self.settings)
        self.linker = IdentityLinker(self.users, self.settings)
        logger.info(
            "runtime_initialized",
            store_type="memory" if self.settings.use_memory_store else "redis",
            redis_url=_mask_url_password(self.settings.redis_url),
            registration_enabled=self.settings.registration_enabled,
        )

    def oauth_client(self, provider: Union[AuthSource, str]) -> OAuthClient:
        return build_oauth_client(self.settings, provider, transport=self.oauth_transport)

    async def close(self) -> None:
        for store in (self.users_store, self.sessions_store):
            await store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and not runtime.settings.use_memory_store:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.close())
            except RuntimeError:
                asyncio.run(runtime.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.use_memory_store:
            raise RuntimeError("runtime reset is only allowed with USE_MEMORY_STORE")
        runtime = Runtime(settings)
        return runtime
