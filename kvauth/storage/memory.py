from __future__ import annotations

import threading
import time
from typing import Any, Dict, List, Optional, Tuple

from kvauth.storage.kv import KeyEntry, decode_value, encode_value


class MemoryKeyValueStore:
    """In-process key-value store for tests and local development.

    Mirrors the semantics of the durable backends: string values, optional
    per-key TTL, prefix listing. Expired keys are dropped on access.
    """

    def __init__(self, name: str = "memory") -> None:
        self.name = name
        # value, absolute expiry (epoch seconds) or None
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.RLock()

    def _now(self) -> float:
        return time.time()

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._now():
            del self._data[key]
            return None
        return value

    async def get(self, key: str, *, as_json: bool = False) -> Any:
        with self._lock:
            raw = self._live(key)
        return decode_value(raw, as_json)

    async def put(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        expires_at = self._now() + ttl_seconds if ttl_seconds is not None else None
        with self._lock:
            self._data[key] = (encode_value(value), expires_at)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    async def list(self, prefix: str = "") -> List[KeyEntry]:
        with self._lock:
            names = [key for key in list(self._data) if key.startswith(prefix)]
            return [KeyEntry(name) for name in sorted(names) if self._live(name) is not None]

    async def close(self) -> None:
        return None

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for key in list(self._data) if self._live(key) is not None)
