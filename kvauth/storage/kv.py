from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol


@dataclass(frozen=True)
class KeyEntry:
    name: str


class KeyValueStore(Protocol):
    """Durable string-keyed mapping without transactions or compare-and-swap.

    Values are strings; ``get(..., as_json=True)`` decodes JSON and ``put``
    encodes anything that is not already a string.
    """

    async def get(self, key: str, *, as_json: bool = False) -> Any: ...

    async def put(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def list(self, prefix: str = "") -> List[KeyEntry]: ...

    async def close(self) -> None: ...


def encode_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"))


def decode_value(raw: Optional[str], as_json: bool) -> Any:
    if raw is None or not as_json:
        return raw
    try:
        return json.loads(raw)
    except ValueError:
        # Unreadable JSON reads as a miss
        return None
