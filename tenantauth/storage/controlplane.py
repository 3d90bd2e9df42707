from __future__ import annotations

import json
import os
import re
import tempfile
import threading
import time
from collections import OrderedDict
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import Client, Tenant

logger = get_logger(__name__)

SLUG_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,62}$")
# "global" names the process-wide signing key scope
RESERVED_SLUGS = frozenset({"global"})


def is_valid_slug(slug: str) -> bool:
    return bool(slug) and bool(SLUG_RE.match(slug)) and slug.lower() not in RESERVED_SLUGS


class FSControlPlane:
    """Tenant and client registry backed by JSON files under ``DATA_ROOT``.

    Layout::

        <root>/tenants/<slug>/tenant.json
        <root>/tenants/<slug>/clients.json

    Client lookups by ``client_id`` scan every tenant, so results are kept in
    a small LRU with a TTL; writes through this class invalidate it.
    """

    def __init__(
        self,
        data_root: str | Path,
        *,
        client_cache_ttl: float = 30.0,
        client_cache_size: int = 1024,
    ) -> None:
        self.root = Path(data_root)
        self.tenants_dir = self.root / "tenants"
        self.client_cache_ttl = client_cache_ttl
        self.client_cache_size = client_cache_size
        self._client_cache: "OrderedDict[str, Tuple[float, Optional[Tuple[Tenant, Client]]]]" = OrderedDict()
        self._lock = threading.Lock()

    # -- reads -----------------------------------------------------------------

    def _tenant_dir(self, slug: str) -> Path:
        if not is_valid_slug(slug):
            raise ValueError(f"invalid tenant slug {slug!r}")
        return self.tenants_dir / slug

    @staticmethod
    def _read_json(path: Path):
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        if not is_valid_slug(slug):
            return None
        path = self.tenants_dir / slug / "tenant.json"
        if not path.is_file():
            return None
        try:
            return Tenant.from_dict(self._read_json(path))
        except (OSError, ValueError, KeyError) as exc:
            logger.error("tenant_record_unreadable", tenant=slug, error=str(exc))
            return None

    def list_tenants(self) -> List[Tenant]:
        if not self.tenants_dir.is_dir():
            return []
        tenants: List[Tenant] = []
        for entry in sorted(self.tenants_dir.iterdir()):
            if entry.is_dir():
                tenant = self.get_tenant_by_slug(entry.name)
                if tenant:
                    tenants.append(tenant)
        return tenants

    def get_tenant_by_id(self, tenant_id: str) -> Optional[Tenant]:
        return next((t for t in self.list_tenants() if t.id == tenant_id), None)

    def resolve_tenant(self, ref: str) -> Optional[Tenant]:
        """Look a tenant up by slug first, then by id."""
        if not ref:
            return None
        return self.get_tenant_by_slug(ref) or self.get_tenant_by_id(ref)

    def list_clients(self, slug: str) -> List[Client]:
        tenant = self.get_tenant_by_slug(slug)
        if tenant is None:
            return []
        path = self.tenants_dir / slug / "clients.json"
        if not path.is_file():
            return []
        try:
            raw = self._read_json(path)
        except (OSError, ValueError) as exc:
            logger.error("client_registry_unreadable", tenant=slug, error=str(exc))
            return []
        return [Client.from_dict(item, tenant_id=tenant.id) for item in raw]

    def get_client(self, slug: str, client_id: str) -> Optional[Client]:
        return next((c for c in self.list_clients(slug) if c.client_id == client_id), None)

    def find_client(self, client_id: str) -> Optional[Tuple[Tenant, Client]]:
        """Find the tenant owning ``client_id`` across all tenants."""
        if not client_id:
            return None
        now = time.monotonic()
        with self._lock:
            cached = self._client_cache.get(client_id)
            if cached and cached[0] > now:
                self._client_cache.move_to_end(client_id)
                return cached[1]
        found: Optional[Tuple[Tenant, Client]] = None
        for tenant in self.list_tenants():
            client = self.get_client(tenant.slug, client_id)
            if client is not None:
                found = (tenant, client)
                break
        with self._lock:
            self._client_cache[client_id] = (now + self.client_cache_ttl, found)
            self._client_cache.move_to_end(client_id)
            while len(self._client_cache) > self.client_cache_size:
                self._client_cache.popitem(last=False)
        return found

    def invalidate(self) -> None:
        with self._lock:
            self._client_cache.clear()

    # -- writes ------------------------------------------------------------------

    def _atomic_write(self, path: Path, payload) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.stem}_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=True)
            os.replace(tmp_path, path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def save_tenant(self, tenant: Tenant) -> Tenant:
        tenant_dir = self._tenant_dir(tenant.slug)
        existing = self.get_tenant_by_id(tenant.id)
        if existing and existing.slug != tenant.slug:
            raise ConstraintViolation("tenant id already in use", {"field": "id"})
        self._atomic_write(tenant_dir / "tenant.json", tenant.to_dict())
        self.invalidate()
        return tenant

    def save_client(self, slug: str, client: Client) -> Client:
        tenant = self.get_tenant_by_slug(slug)
        if tenant is None:
            raise ConstraintViolation("tenant not found", {"tenant": slug})
        client.tenant_id = tenant.id
        clients: Dict[str, Client] = {c.client_id: c for c in self.list_clients(slug)}
        clients[client.client_id] = client
        self._atomic_write(
            self._tenant_dir(slug) / "clients.json",
            [c.to_dict() for c in clients.values()],
        )
        self.invalidate()
        return client
