from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse, urlunparse

from tenantauth.config import get_settings, reset_settings_cache
from tenantauth.logging import get_logger
from tenantauth.service.clients import ClientRegistry
from tenantauth.service.grants import AuthCodeStore
from tenantauth.service.introspection import AccessTokenVerifier, IntrospectionService
from tenantauth.service.issuer import IssuerResolver
from tenantauth.service.oauth import TokenService
from tenantauth.service.revocation import RevocationService
from tenantauth.service.sessions import RedirectAllowlist, SessionService
from tenantauth.service.signer import KeyStore, Signer
from tenantauth.service.stores import StoreSelector
from tenantauth.storage.controlplane import FSControlPlane
from tenantauth.storage.local_cache import MemoryCache
from tenantauth.storage.memory import MemoryStore
from tenantauth.storage.redis_cache import RedisCache, SyncRedisCache
from tenantauth.storage.tenantsql import TenantSQLManager

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except Exception:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            issuer_mode=self.settings.issuer_mode.value,
        )
        data_root = Path(self.settings.data_root)

        self.store: Any = None
        store_type = "none"
        try:
            if self.settings.use_memory_store:
                store_type = "memory"
                self.store = MemoryStore(data_root / "state" / "memory_store.json")
            elif self.settings.database_url:
                from tenantauth.storage.postgres import PostgresStore

                store_type = "postgres"
                self.store = PostgresStore(self.settings.database_url)
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.control_plane = FSControlPlane(data_root)
        self.tenant_manager = TenantSQLManager(self.control_plane)

        self.cache: Any = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Use sync Redis client in test mode to avoid event loop issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if self.cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for sessions and authorization codes; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; sessions and "
                    "authorization codes are in-memory only."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache()

        self.keystore = KeyStore(data_root)
        self.signer = Signer(self.keystore)
        self.issuers = IssuerResolver(self.settings)
        self.selector = StoreSelector(self.store, self.tenant_manager)
        self.clients = ClientRegistry(self.control_plane)
        self.grants = AuthCodeStore(self.cache)
        self.redirect_allowlist = RedirectAllowlist(self.settings.redirect_host_allowlist)
        self.sessions = SessionService(
            self.cache,
            self.selector,
            self.control_plane,
            self.clients,
            self.settings,
        )
        self.tokens = TokenService(
            self.settings,
            selector=self.selector,
            clients=self.clients,
            grants=self.grants,
            signer=self.signer,
            issuers=self.issuers,
        )
        self.revocation = RevocationService(
            self.settings,
            selector=self.selector,
            clients=self.clients,
            control_plane=self.control_plane,
        )
        self.verifier = AccessTokenVerifier(self.signer, self.issuers, self.control_plane)
        self.introspection = IntrospectionService(
            clients=self.clients,
            selector=self.selector,
            verifier=self.verifier,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=not isinstance(self.cache, MemoryCache),
            issuer=self.issuers.global_issuer,
            tenants=len(self.control_plane.list_tenants()),
        )

    def close_stores(self) -> None:
        """Release database pools; the cache is closed separately."""
        self.tenant_manager.close()
        if self.store is not None:
            self.store.close()

    async def close(self) -> None:
        await asyncio.to_thread(self.close_stores)
        await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the first check skips the lock once the
    runtime exists, the second prevents two threads from both building it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache: Any) -> None:
    if cache is None:
        return
    if isinstance(cache, SyncRedisCache):
        cache.client.close()
        return
    try:
        loop = asyncio.get_running_loop()
        loop.create_task(cache.close())
    except RuntimeError:
        asyncio.run(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.close_stores()
                _close_cache(runtime.cache)
            except Exception as exc:
                # Connections may already be gone between tests
                logger.debug("runtime_reset_cleanup_failed", error=str(exc))
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
