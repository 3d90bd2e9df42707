import pytest

from tenantauth.config import reset_settings_cache
from tenantauth.service.runtime import Runtime, _mask_url_password, reset_runtime_for_tests
from tenantauth.storage.local_cache import MemoryCache
from tenantauth.storage.memory import MemoryStore


def test_mask_url_password():
    assert _mask_url_password("redis://:secret@localhost:6379/0") == "redis://:***@localhost:6379/0"
    assert _mask_url_password("postgresql://app:pw@db/auth") == "postgresql://app:***@db/auth"
    assert _mask_url_password("redis://localhost:6379") == "redis://localhost:6379"
    assert _mask_url_password(None) is None


def test_test_runtime_uses_memory_backends(runtime):
    assert isinstance(runtime.store, MemoryStore)
    assert isinstance(runtime.cache, MemoryCache)
    assert runtime.selector.global_store is runtime.store


def test_unreachable_redis_falls_back_in_test_mode(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "redis://127.0.0.1:1/0")
    rt = reset_runtime_for_tests()
    try:
        assert isinstance(rt.cache, MemoryCache)
    finally:
        rt.close_stores()


def test_redis_required_outside_test_mode(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "false")
    monkeypatch.setenv("ALLOW_REDIS_FALLBACK_DEV", "false")
    reset_settings_cache()
    try:
        with pytest.raises(RuntimeError, match="Redis is required"):
            Runtime()
    finally:
        reset_settings_cache()


def test_reset_refused_outside_test_mode(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "false")
    try:
        with pytest.raises(RuntimeError, match="TEST_MODE"):
            reset_runtime_for_tests()
    finally:
        reset_settings_cache()
