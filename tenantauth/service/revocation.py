from __future__ import annotations

import asyncio
from typing import Optional

from tenantauth.config import Settings
from tenantauth.logging import get_logger, sanitize_error_message
from tenantauth.service.claims import ADMIN_ROLE, Claims
from tenantauth.service.clients import ClientCredentials, ClientRegistry
from tenantauth.service.errors import (
    ErrorCode,
    ForbiddenError,
    InternalError,
    InvalidClientError,
    InvalidRequestError,
    NotSupportedError,
    ServiceError,
)
from tenantauth.service.introspection import looks_opaque
from tenantauth.service.stores import StoreSelector
from tenantauth.service.tokens import sha256_b64url
from tenantauth.storage.controlplane import FSControlPlane

logger = get_logger(__name__)


class RevocationService:
    """Single-token revocation and per-subject bulk revocation."""

    def __init__(
        self,
        settings: Settings,
        *,
        selector: StoreSelector,
        clients: ClientRegistry,
        control_plane: FSControlPlane,
    ) -> None:
        self.settings = settings
        self.selector = selector
        self.clients = clients
        self.control_plane = control_plane

    # -- RFC 7009 ----------------------------------------------------------------

    def _revoke(self, token: str, tenant_hint: Optional[str], credentials: Optional[ClientCredentials]) -> None:
        client = None
        slug = tenant_hint
        if credentials is not None and credentials.client_id:
            tenant, client = self.clients.resolve(credentials.client_id, tenant_hint)
            self.clients.authenticate(client, credentials)
            slug = tenant.slug
        elif self.settings.revoke_require_client_auth:
            raise InvalidClientError(
                "client authentication required", code=ErrorCode.CLIENT_AUTH_FAILED
            )

        if not looks_opaque(token):
            # Access JWTs are stateless and expire on their own.
            logger.debug("revoke_non_opaque_ignored")
            return
        try:
            active = self.selector.select(slug)
            record = active.store.get_refresh_token_by_hash(sha256_b64url(token))
        except ServiceError as exc:
            logger.warning("revoke_store_unavailable", tenant=slug, error=exc.error)
            return
        except Exception as exc:
            logger.warning("revoke_lookup_failed", tenant=slug, error=sanitize_error_message(str(exc)))
            return
        if record is None:
            return
        if client is not None and record.client_id != client.client_id:
            logger.warning("revoke_foreign_token_ignored", client_id=client.client_id)
            return
        try:
            active.store.revoke_refresh_token(record.id)
        except Exception as exc:
            logger.error("revoke_failed", refresh_id=record.id, error=sanitize_error_message(str(exc)))
            return
        logger.info("refresh_token_revoked", refresh_id=record.id, client_id=record.client_id)

    async def revoke(
        self,
        token: Optional[str],
        *,
        tenant_hint: Optional[str] = None,
        credentials: Optional[ClientCredentials] = None,
    ) -> None:
        """Revoke an opaque refresh token; unknown tokens succeed silently."""
        token = (token or "").strip()
        if not token:
            raise InvalidRequestError("token is required", code=ErrorCode.MISSING_TOKEN)
        await asyncio.to_thread(self._revoke, token, tenant_hint, credentials)

    # -- logout-all ----------------------------------------------------------------

    def _resolve_slug(self, tenant_hint: Optional[str], caller: Claims) -> Optional[str]:
        ref = tenant_hint or caller.tid
        tenant = self.control_plane.resolve_tenant(ref) if ref else None
        if tenant is None:
            return tenant_hint
        if tenant.id != caller.tid and not caller.system.is_admin:
            raise ForbiddenError("token belongs to another tenant", code=ErrorCode.FORBIDDEN_SUBJECT)
        return tenant.slug

    def _revoke_all(
        self,
        user_id: str,
        client_id: Optional[str],
        tenant_hint: Optional[str],
        caller: Claims,
    ) -> int:
        slug = self._resolve_slug(tenant_hint, caller)
        active = self.selector.select(slug, strict=True)
        revoke_all = getattr(active.store, "revoke_all_refresh_tokens", None)
        if revoke_all is None:
            raise NotSupportedError("bulk revocation is not supported by this store")
        try:
            return revoke_all(user_id, client_id or None)
        except Exception as exc:
            logger.error("revoke_all_failed", user_id=user_id, error=sanitize_error_message(str(exc)))
            raise InternalError("bulk revocation failed", code=ErrorCode.STORE_FAILURE) from exc

    async def logout_all(
        self,
        *,
        user_id: Optional[str],
        client_id: Optional[str],
        caller: Claims,
        tenant_hint: Optional[str] = None,
    ) -> int:
        """Revoke every refresh token of ``user_id``, optionally for one client only.

        Access tokens already issued stay valid until they expire.
        """
        user_id = (user_id or "").strip()
        if not user_id:
            raise InvalidRequestError("user_id is required", code=ErrorCode.MISSING_PARAMETER)
        if caller.sub != user_id and not (caller.system.is_admin or ADMIN_ROLE in caller.system.roles):
            raise ForbiddenError("cannot revoke tokens of another user", code=ErrorCode.FORBIDDEN_SUBJECT)
        revoked = await asyncio.to_thread(self._revoke_all, user_id, client_id, tenant_hint, caller)
        logger.info("refresh_tokens_bulk_revoked", user_id=user_id, client_id=client_id, revoked=revoked)
        return revoked
