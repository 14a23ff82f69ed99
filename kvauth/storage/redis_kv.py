from __future__ import annotations

import functools
from typing import Any, List, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from kvauth.logging import get_logger
from kvauth.storage.errors import StoreUnavailable
from kvauth.storage.kv import KeyEntry, decode_value, encode_value

logger = get_logger(__name__)


def _translate_errors(fn):
    """Surface connection failures as StoreUnavailable; no retries here."""

    @functools.wraps(fn)
    async def wrapper(self: "RedisKeyValueStore", *args, **kwargs):
        try:
            return await fn(self, *args, **kwargs)
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.error(
                "kv_store_unavailable",
                namespace=self.namespace,
                operation=fn.__name__,
                error=str(exc),
            )
            raise StoreUnavailable(
                f"{self.namespace} store unavailable", detail={"operation": fn.__name__}
            ) from exc

    return wrapper


class RedisKeyValueStore:
    """Key-value store over Redis with every key scoped to a namespace."""

    DEFAULT_OPERATION_TIMEOUT = 5.0
    SCAN_BATCH = 500

    def __init__(
        self,
        redis_url: str,
        namespace: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ) -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # Short-lived synchronous client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @_translate_errors
    async def get(self, key: str, *, as_json: bool = False) -> Any:
        raw = await self.client.get(self._key(key))
        return decode_value(raw, as_json)

    @_translate_errors
    async def put(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        await self.client.set(self._key(key), encode_value(value), ex=ttl_seconds)

    @_translate_errors
    async def delete(self, key: str) -> None:
        await self.client.delete(self._key(key))

    @_translate_errors
    async def list(self, prefix: str = "") -> List[KeyEntry]:
        scoped_prefix = self._key("")
        names: List[str] = []
        async for scoped in self.client.scan_iter(
            match=f"{self._key(prefix)}*", count=self.SCAN_BATCH
        ):
            names.append(scoped[len(scoped_prefix):])
        return [KeyEntry(name) for name in sorted(names)]

    async def close(self) -> None:
        await self.client.aclose()
