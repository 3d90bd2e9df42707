"""In-process cache semantics and the single-use authorization code store."""

import asyncio
import json
import time
from datetime import timedelta

import pytest

from tenantauth.service.errors import ErrorCode, InternalError
from tenantauth.service.grants import AuthCodeStore, code_key
from tenantauth.storage.local_cache import MemoryCache
from tenantauth.storage.models import AuthorizationCode, utcnow
from tenantauth.storage.redis_cache import ttl_seconds


def _code(ttl=60):
    return AuthorizationCode.new(
        client_id="c1",
        tenant_id="t1",
        subject_id="u1",
        redirect_uri="https://app/cb",
        scope=["openid"],
        ttl_seconds=ttl,
        nonce="N1",
    )


class BrokenCache:
    async def set_nx(self, key, value, ttl_seconds):
        raise ConnectionError("redis down")

    async def pop(self, key):
        raise ConnectionError("redis down")


class AlwaysTakenCache(MemoryCache):
    async def set_nx(self, key, value, ttl_seconds):
        return False


class TestMemoryCache:
    async def test_set_get_delete(self):
        cache = MemoryCache()
        await cache.set("k", "v", 60)
        assert await cache.get("k") == "v"
        await cache.delete("k")
        assert await cache.get("k") is None

    async def test_pop_returns_value_once(self):
        cache = MemoryCache()
        await cache.set("k", "v", 60)
        assert await cache.pop("k") == "v"
        assert await cache.pop("k") is None

    async def test_set_nx_keeps_first_writer(self):
        cache = MemoryCache()
        assert await cache.set_nx("k", "first", 60) is True
        assert await cache.set_nx("k", "second", 60) is False
        assert await cache.get("k") == "first"

    async def test_expired_entries_are_misses(self):
        cache = MemoryCache()
        cache._entries["k"] = ("v", time.monotonic() - 1)
        assert await cache.get("k") is None
        cache._entries["k"] = ("v", time.monotonic() - 1)
        assert await cache.pop("k") is None
        assert await cache.set_nx("k", "again", 5) is True

    async def test_capacity_evicts_oldest(self):
        cache = MemoryCache(max_entries=2)
        await cache.set("a", "1", 10)
        await cache.set("b", "2", 60)
        await cache.set("c", "3", 60)
        assert await cache.get("a") is None
        assert await cache.get("c") == "3"

    async def test_set_nx_respects_capacity(self):
        cache = MemoryCache(max_entries=2)
        for index in range(5):
            assert await cache.set_nx(f"k{index}", "v", 60 + index) is True
        assert len(cache._entries) == 2
        assert await cache.get("k4") == "v"

    async def test_overwrite_at_capacity_keeps_other_keys(self):
        cache = MemoryCache(max_entries=2)
        await cache.set("a", "1", 60)
        await cache.set("b", "2", 60)
        await cache.set("a", "3", 60)
        assert await cache.get("a") == "3"
        assert await cache.get("b") == "2"


def test_ttl_seconds_is_at_least_one():
    assert ttl_seconds(utcnow() - timedelta(seconds=30)) == 1
    assert 58 <= ttl_seconds(utcnow() + timedelta(seconds=60)) <= 60


class TestAuthCodeStore:
    async def test_put_stores_under_hashed_key(self):
        cache = MemoryCache()
        store = AuthCodeStore(cache)
        raw = await store.put(_code())
        assert await cache.get(raw) is None
        assert json.loads(await cache.get(code_key(raw)))["nonce"] == "N1"

    async def test_consume_is_single_use_under_concurrency(self):
        store = AuthCodeStore(MemoryCache())
        raw = await store.put(_code())
        results = await asyncio.gather(*(store.consume(raw) for _ in range(10)))
        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert winners[0].subject_id == "u1"

    async def test_unknown_and_empty_codes(self):
        store = AuthCodeStore(MemoryCache())
        assert await store.consume("nope") is None
        assert await store.consume("") is None

    async def test_expired_code_is_rejected(self):
        cache = MemoryCache()
        store = AuthCodeStore(cache)
        code = _code()
        code.expires_at = utcnow() - timedelta(seconds=1)
        await cache.set(code_key("old"), json.dumps(code.to_payload()), 60)
        assert await store.consume("old") is None

    async def test_corrupt_payload_is_a_miss(self):
        cache = MemoryCache()
        await cache.set(code_key("bad"), "{not json", 60)
        await cache.set(code_key("partial"), json.dumps({"client_id": "c1"}), 60)
        store = AuthCodeStore(cache)
        assert await store.consume("bad") is None
        assert await store.consume("partial") is None

    async def test_cache_failure_is_internal(self):
        store = AuthCodeStore(BrokenCache())
        with pytest.raises(InternalError) as excinfo:
            await store.put(_code())
        assert excinfo.value.code == ErrorCode.STORE_FAILURE
        with pytest.raises(InternalError):
            await store.consume("anything")

    async def test_repeated_key_collisions_give_up(self):
        with pytest.raises(InternalError) as excinfo:
            await AuthCodeStore(AlwaysTakenCache()).put(_code())
        assert excinfo.value.code == ErrorCode.STORE_FAILURE
