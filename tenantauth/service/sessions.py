from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.clients import ClientRegistry
from tenantauth.service.credentials import burn_verification, verify_secret
from tenantauth.service.errors import (
    ErrorCode,
    InvalidCredentialsError,
    InvalidRequestError,
    SessionStoreUnavailableError,
)
from tenantauth.service.stores import StoreSelector
from tenantauth.service.tokens import generate_opaque_token, sha256_b64url
from tenantauth.storage.controlplane import FSControlPlane
from tenantauth.storage.models import Client, SessionRecord, Tenant, utcnow
from tenantauth.storage.redis_cache import ttl_seconds

logger = get_logger(__name__)

SESSION_KEY_PREFIX = "sid:"


def session_key(raw_sid: str) -> str:
    return SESSION_KEY_PREFIX + sha256_b64url(raw_sid)


def _split_host_port(value: str) -> Tuple[str, Optional[int]]:
    value = value.strip().lower()
    if value.startswith("["):
        host, _, rest = value[1:].partition("]")
        port = rest[1:] if rest.startswith(":") else ""
    elif value.count(":") == 1:
        host, _, port = value.partition(":")
    else:
        host, port = value, ""
    host = host.rstrip(".")
    return host, int(port) if port.isdigit() else None


class RedirectAllowlist:
    """Hosts that logout may redirect to.

    Entries and candidate URLs are compared on lower-cased hosts with any
    trailing dot removed. An entry without a port matches the host on any
    port; an entry with a port only matches that port.
    """

    def __init__(self, hosts: Iterable[str]) -> None:
        self._entries: List[Tuple[str, Optional[int]]] = []
        for raw in hosts:
            raw = raw.strip()
            if not raw:
                continue
            if "://" in raw:
                parts = urlsplit(raw)
                raw = parts.netloc
            host, port = _split_host_port(raw)
            if host:
                self._entries.append((host, port))

    def __bool__(self) -> bool:
        return bool(self._entries)

    def allows(self, url: Optional[str]) -> bool:
        if not url or "\\" in url or any(ch.isspace() for ch in url):
            return False
        try:
            parts = urlsplit(url)
            port = parts.port
        except ValueError:
            return False
        if parts.scheme not in ("http", "https") or not parts.hostname:
            return False
        if parts.username is not None or parts.password is not None:
            return False
        host = parts.hostname.lower().rstrip(".")
        for entry_host, entry_port in self._entries:
            if entry_host != host:
                continue
            if entry_port is None or entry_port == (port or (443 if parts.scheme == "https" else 80)):
                return True
        return False


@dataclass
class LoginResult:
    raw_sid: str
    record: SessionRecord
    tenant: Tenant
    client: Optional[Client]


class SessionService:
    """Server-side browser sessions stored under ``sid:<hash>`` in the cache."""

    def __init__(
        self,
        cache: Any,
        selector: StoreSelector,
        control_plane: FSControlPlane,
        clients: ClientRegistry,
        settings: Settings,
    ) -> None:
        self.cache = cache
        self.selector = selector
        self.control_plane = control_plane
        self.clients = clients
        self.settings = settings

    # -- cache primitives ------------------------------------------------------

    async def save(self, raw_sid: str, record: SessionRecord) -> None:
        expires_at = record.expires_at
        if record.idle_expires_at and record.idle_expires_at < expires_at:
            expires_at = record.idle_expires_at
        try:
            await self.cache.set(
                session_key(raw_sid), json.dumps(record.to_payload()), ttl_seconds(expires_at)
            )
        except Exception as exc:
            logger.error("session_store_set_failed", error=str(exc))
            raise SessionStoreUnavailableError(
                "session store unavailable", code=ErrorCode.SESSION_STORE_UNAVAILABLE
            ) from exc

    async def load(self, raw_sid: Optional[str]) -> Optional[SessionRecord]:
        """Return the live session for a cookie value; any cache error is a miss."""
        if not raw_sid:
            return None
        key = session_key(raw_sid)
        try:
            cached = await self.cache.get(key)
        except Exception as exc:
            logger.warning("session_store_get_failed", error=str(exc))
            return None
        if cached is None:
            return None
        try:
            record = SessionRecord.from_payload(json.loads(cached))
        except (json.JSONDecodeError, TypeError, KeyError, ValueError):
            logger.warning("session_payload_corrupt")
            return None
        now = utcnow()
        if record.is_expired(now):
            await self.destroy(raw_sid)
            return None
        if self.settings.session_idle_ttl and record.idle_expires_at is not None:
            record.idle_expires_at = min(
                record.expires_at, now + timedelta(seconds=self.settings.session_idle_ttl)
            )
            try:
                await self.save(raw_sid, record)
            except SessionStoreUnavailableError:
                logger.warning("session_idle_slide_failed")
        return record

    async def destroy(self, raw_sid: Optional[str]) -> None:
        if not raw_sid:
            return
        try:
            await self.cache.delete(session_key(raw_sid))
        except Exception as exc:
            logger.warning("session_store_delete_failed", error=str(exc))

    # -- login -------------------------------------------------------------------

    def _resolve_tenant(
        self, tenant_ref: Optional[str], client_id: Optional[str]
    ) -> Tuple[Tenant, Optional[Client]]:
        if client_id:
            tenant, client = self.clients.resolve(client_id, tenant_ref)
            if tenant_ref and tenant_ref not in (tenant.id, tenant.slug):
                raise InvalidRequestError(
                    "client does not belong to tenant", code=ErrorCode.UNKNOWN_TENANT
                )
            return tenant, client
        if not tenant_ref:
            raise InvalidRequestError(
                "tenant_id or client_id is required", code=ErrorCode.MISSING_PARAMETER
            )
        tenant = self.control_plane.resolve_tenant(tenant_ref)
        if tenant is None:
            raise InvalidRequestError("unknown tenant", code=ErrorCode.UNKNOWN_TENANT)
        return tenant, None

    def _authenticate_user(self, tenant: Tenant, email: str, password: str) -> str:
        active = self.selector.select(tenant.slug)
        user = active.store.get_user_by_email(tenant.id, email)
        if user is None or not user.is_active:
            burn_verification(password)
            logger.info("session_login_failed", tenant=tenant.slug, reason="unknown_user")
            raise InvalidCredentialsError("invalid credentials")
        record = active.store.get_password_record(user.id)
        stored_hash, algo = record if record else (None, "argon2id")
        if not verify_secret(stored_hash, password, algo=algo):
            logger.info("session_login_failed", tenant=tenant.slug, reason="bad_password")
            raise InvalidCredentialsError("invalid credentials")
        return user.id

    async def login(
        self,
        *,
        email: str,
        password: str,
        tenant_ref: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> LoginResult:
        email = email.strip().lower()
        tenant, client = await asyncio.to_thread(self._resolve_tenant, tenant_ref, client_id)
        subject_id = await asyncio.to_thread(self._authenticate_user, tenant, email, password)
        record = SessionRecord.new(
            subject_id=subject_id,
            tenant_id=tenant.id,
            ttl_seconds=self.settings.session_ttl,
            client_id=client.client_id if client else None,
            amr=["pwd"],
            idle_ttl_seconds=self.settings.session_idle_ttl,
        )
        raw_sid = generate_opaque_token(32)
        await self.save(raw_sid, record)
        logger.info(
            "session_created",
            tenant=tenant.slug,
            user_id=subject_id,
            client_id=record.client_id,
        )
        return LoginResult(raw_sid=raw_sid, record=record, tenant=tenant, client=client)
