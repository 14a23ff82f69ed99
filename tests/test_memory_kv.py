"""Tests for the in-memory key-value store and value encoding."""

import pytest

from kvauth.storage.kv import KeyEntry, decode_value, encode_value
from kvauth.storage.memory import MemoryKeyValueStore


class TestEncoding:
    def test_strings_pass_through(self):
        assert encode_value("user-1") == "user-1"

    def test_objects_are_compact_json(self):
        assert encode_value({"a": 1, "b": [1, 2]}) == '{"a":1,"b":[1,2]}'

    def test_invalid_json_reads_as_miss(self):
        assert decode_value("{not json", as_json=True) is None

    def test_raw_read_ignores_json(self):
        assert decode_value('{"a":1}', as_json=False) == '{"a":1}'


class TestMemoryKeyValueStore:
    async def test_get_missing_returns_none(self):
        store = MemoryKeyValueStore()
        assert await store.get("nope") is None
        assert await store.get("nope", as_json=True) is None

    async def test_put_and_get_json(self):
        store = MemoryKeyValueStore()
        await store.put("profile:1", {"id": "1", "username": "alice"})

        assert await store.get("profile:1", as_json=True) == {"id": "1", "username": "alice"}
        assert await store.get("profile:1") == '{"id":"1","username":"alice"}'

    async def test_delete_is_idempotent(self):
        store = MemoryKeyValueStore()
        await store.put("k", "v")
        await store.delete("k")
        await store.delete("k")
        assert await store.get("k") is None

    async def test_list_filters_by_prefix_and_sorts(self):
        store = MemoryKeyValueStore()
        await store.put("profile:b", "{}")
        await store.put("profile:a", "{}")
        await store.put("index:username:alice", "a")

        entries = await store.list("profile:")

        assert entries == [KeyEntry("profile:a"), KeyEntry("profile:b")]
        assert len(await store.list()) == 3

    async def test_expired_keys_disappear(self):
        store = MemoryKeyValueStore()
        fake_now = [1_000.0]
        store._now = lambda: fake_now[0]
        await store.put("token:abc", "{}", ttl_seconds=60)
        await store.put("token:keep", "{}")

        fake_now[0] += 61

        assert await store.get("token:abc") is None
        assert [entry.name for entry in await store.list("token:")] == ["token:keep"]
        assert len(store) == 1

    async def test_non_positive_ttl_rejected(self):
        store = MemoryKeyValueStore()
        with pytest.raises(ValueError):
            await store.put("k", "v", ttl_seconds=0)
