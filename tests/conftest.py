import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything imports the app or runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tenantauth_test_")
os.environ.setdefault("DATA_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("ISSUER_BASE", "https://issuer")
os.environ.setdefault("ISSUER_MODE", "path")
# In-process cache keeps the tests independent of a running Redis
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

TESTS_DIR = Path(__file__).resolve().parent
ROOT = TESTS_DIR.parent
for path in (ROOT, TESTS_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from tenantauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from support import World, build_world  # noqa: E402


@pytest.fixture(autouse=True)
def runtime(tmp_path, monkeypatch):
    """Fresh runtime per test, rooted in its own DATA_ROOT."""
    monkeypatch.setenv("DATA_ROOT", str(tmp_path / "data"))
    rt = reset_runtime_for_tests()
    yield rt
    rt.close_stores()


@pytest.fixture
def world(runtime) -> World:
    """tenantA with a tenant database, public client c1, confidential client svc, user u1."""
    return build_world(runtime)


@pytest.fixture
def client(world):
    from fastapi.testclient import TestClient

    from tenantauth import app as app_module

    return TestClient(app_module.app, base_url="https://testserver")


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
