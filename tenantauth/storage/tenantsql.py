from __future__ import annotations

import threading
from typing import Any, Callable, Dict, Optional

from tenantauth.logging import get_logger, sanitize_error_message
from tenantauth.storage.controlplane import FSControlPlane
from tenantauth.storage.errors import TenantDBMissing, TenantNotFound
from tenantauth.storage.memory import MemoryStore

logger = get_logger(__name__)

MEMORY_DSN_PREFIX = "memory://"


def default_store_factory(dsn: str, slug: str, statement_timeout_ms: int = 3000) -> Any:
    """Open the store behind a tenant DSN.

    ``memory://`` DSNs give an in-process store; anything else is treated as
    a Postgres connection string.
    """
    if dsn.startswith(MEMORY_DSN_PREFIX):
        return MemoryStore(name=f"tenant:{slug}")
    from tenantauth.storage.postgres import PostgresStore

    return PostgresStore(dsn, name=f"tenant:{slug}", statement_timeout_ms=statement_timeout_ms)


class TenantSQLManager:
    """Opens and pools one store per tenant slug.

    The DSN comes from the tenant's control-plane settings. Stores are
    created once per (slug, dsn) and reused; a changed DSN reopens the store.
    """

    def __init__(
        self,
        control_plane: FSControlPlane,
        *,
        store_factory: Optional[Callable[[str, str], Any]] = None,
    ) -> None:
        self.control_plane = control_plane
        self.store_factory = store_factory or default_store_factory
        self._stores: Dict[str, tuple[str, Any]] = {}
        self._lock = threading.Lock()

    def open(self, slug: str) -> Any:
        tenant = self.control_plane.get_tenant_by_slug(slug)
        if tenant is None:
            raise TenantNotFound(slug)
        dsn = tenant.settings.user_db_dsn
        if not dsn:
            raise TenantDBMissing(slug)
        with self._lock:
            cached = self._stores.get(slug)
            if cached and cached[0] == dsn:
                return cached[1]
            try:
                store = self.store_factory(dsn, slug)
            except Exception as exc:
                logger.error(
                    "tenant_store_open_failed",
                    tenant=slug,
                    error=sanitize_error_message(str(exc)),
                )
                raise
            if cached:
                self._close_quietly(slug, cached[1])
            self._stores[slug] = (dsn, store)
            logger.info("tenant_store_opened", tenant=slug)
            return store

    def register(self, slug: str, store: Any, dsn: Optional[str] = None) -> None:
        """Pin a pre-built store for ``slug``; used by tooling and tests."""
        if dsn is None:
            tenant = self.control_plane.get_tenant_by_slug(slug)
            dsn = (tenant.settings.user_db_dsn if tenant else None) or MEMORY_DSN_PREFIX
        with self._lock:
            self._stores[slug] = (dsn, store)

    @staticmethod
    def _close_quietly(slug: str, store: Any) -> None:
        try:
            store.close()
        except Exception as exc:
            logger.warning("tenant_store_close_failed", tenant=slug, error=str(exc))

    def close(self) -> None:
        with self._lock:
            stores = list(self._stores.items())
            self._stores.clear()
        for slug, (_, store) in stores:
            self._close_quietly(slug, store)
