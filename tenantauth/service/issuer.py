from __future__ import annotations

from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from tenantauth.config import IssuerMode, Settings
from tenantauth.logging import get_logger
from tenantauth.storage.models import Tenant

logger = get_logger(__name__)

SYSTEM_NAMESPACE_SUFFIX = "/claims/sys"


def resolve_issuer(
    base: str,
    mode: IssuerMode | str,
    slug: str,
    override: Optional[str] = None,
) -> str:
    """Return the `iss` value for a tenant.

    An explicit override wins and loses any trailing slash. ``global`` uses the
    base as-is, ``path`` appends the slug as a path segment and ``domain``
    prefixes the slug as a sub-domain of the base host.
    """
    if override and override.strip():
        return override.strip().rstrip("/")
    base = base.rstrip("/")
    mode = IssuerMode(mode)
    if mode == IssuerMode.GLOBAL or not slug:
        return base
    if mode == IssuerMode.PATH:
        return f"{base}/{slug}"
    parts = urlsplit(base)
    host = parts.hostname or ""
    netloc = f"{slug}.{host}"
    if parts.port:
        netloc = f"{netloc}:{parts.port}"
    return urlunsplit((parts.scheme, netloc, parts.path, "", ""))


def system_namespace(issuer: str) -> str:
    """Claim key under which roles and permissions travel in `custom`."""
    return issuer.rstrip("/") + SYSTEM_NAMESPACE_SUFFIX


class IssuerResolver:
    """Resolve issuers for tenants using process settings plus tenant overrides."""

    def __init__(self, settings: Settings) -> None:
        self.base = settings.issuer_base
        self.mode = settings.issuer_mode

    @property
    def global_issuer(self) -> str:
        return self.base

    def for_tenant(self, tenant: Tenant) -> str:
        mode = self.mode
        if tenant.settings.issuer_mode:
            try:
                mode = IssuerMode(tenant.settings.issuer_mode.lower())
            except ValueError:
                logger.warning(
                    "tenant_issuer_mode_invalid",
                    tenant=tenant.slug,
                    value=tenant.settings.issuer_mode,
                )
        return resolve_issuer(self.base, mode, tenant.slug, tenant.settings.issuer_override)
