from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, Tuple

import jwt

from tenantauth.logging import get_logger
from tenantauth.service.claims import Claims
from tenantauth.service.clients import ClientCredentials, ClientRegistry
from tenantauth.service.errors import ErrorCode, InvalidClientError, UnauthorizedError
from tenantauth.service.issuer import IssuerResolver, system_namespace
from tenantauth.service.signer import GLOBAL_SCOPE, Signer
from tenantauth.service.stores import StoreSelector
from tenantauth.service.tokens import sha256_b64url
from tenantauth.storage.controlplane import FSControlPlane

logger = get_logger(__name__)

INACTIVE: Dict[str, Any] = {"active": False}


def looks_opaque(token: str) -> bool:
    return len(token) >= 40 and "." not in token


class AccessTokenVerifier:
    """Verify access JWTs against the key and issuer of the tenant they name."""

    def __init__(self, signer: Signer, issuers: IssuerResolver, control_plane: FSControlPlane) -> None:
        self.signer = signer
        self.issuers = issuers
        self.control_plane = control_plane

    def decode(self, token: str) -> Dict[str, Any]:
        """Return the verified payload; raises ``jwt.InvalidTokenError``."""
        payload = self.signer.verify(token)
        if payload.get("token_use") == "refresh":
            raise jwt.InvalidTokenError("refresh tokens are not access tokens")
        key_scope = payload.pop("_key_scope", None)
        if key_scope == GLOBAL_SCOPE:
            expected = self.issuers.global_issuer
        else:
            tenant = self.control_plane.get_tenant_by_slug(key_scope or "")
            if tenant is None or payload.get("tid") != tenant.id:
                raise jwt.InvalidTokenError("token tenant does not match signing key")
            expected = self.issuers.for_tenant(tenant)
        if payload.get("iss") != expected:
            raise jwt.InvalidIssuerError("unexpected issuer")
        return payload

    def authenticate(self, token: Optional[str]) -> Claims:
        """Bearer authentication for API calls made with an access token."""
        if not token:
            raise UnauthorizedError("bearer token required", code=ErrorCode.BEARER_REQUIRED)
        try:
            payload = self.decode(token)
        except jwt.InvalidTokenError as exc:
            logger.info("bearer_rejected", reason=type(exc).__name__)
            raise UnauthorizedError("invalid bearer token", code=ErrorCode.BEARER_REQUIRED)
        return Claims.from_access_payload(payload)


class IntrospectionService:
    """RFC 7662 introspection for authenticated confidential clients."""

    def __init__(
        self,
        *,
        clients: ClientRegistry,
        selector: StoreSelector,
        verifier: AccessTokenVerifier,
    ) -> None:
        self.clients = clients
        self.selector = selector
        self.verifier = verifier

    def _authenticate(
        self, credentials: ClientCredentials, tenant_hint: Optional[str] = None
    ) -> Tuple[Any, Any]:
        tenant, client = self.clients.resolve(credentials.client_id, tenant_hint)
        if client.is_public:
            raise InvalidClientError(
                "introspection requires a confidential client", code=ErrorCode.CLIENT_AUTH_FAILED
            )
        self.clients.authenticate(client, credentials)
        return tenant, client

    def _opaque(self, tenant, token: str) -> Dict[str, Any]:
        active = self.selector.select(tenant.slug)
        record = active.store.get_refresh_token_by_hash(sha256_b64url(token))
        if record is None or not record.is_active() or record.tenant_id != tenant.id:
            return dict(INACTIVE)
        return {
            "active": True,
            "token_type": "refresh_token",
            "sub": record.subject_id,
            "client_id": record.client_id,
            "scope": " ".join(record.scope),
            "exp": int(record.expires_at.timestamp()),
            "iat": int(record.issued_at.timestamp()),
            "tid": record.tenant_id,
        }

    def _jwt(self, tenant, token: str, include_sys: bool) -> Dict[str, Any]:
        try:
            payload = self.verifier.decode(token)
        except jwt.InvalidTokenError:
            return dict(INACTIVE)
        if payload.get("tid") != tenant.id:
            return dict(INACTIVE)
        body: Dict[str, Any] = {
            "active": True,
            "token_type": "access_token",
            "sub": payload.get("sub"),
            "client_id": payload.get("aud"),
            "scope": payload.get("scope", ""),
            "exp": payload.get("exp"),
            "iat": payload.get("iat"),
            "amr": payload.get("amr", []),
            "tid": payload.get("tid"),
            "iss": payload.get("iss"),
        }
        for optional in ("acr", "jti"):
            if payload.get(optional):
                body[optional] = payload[optional]
        if include_sys:
            sys_claims = (payload.get("custom") or {}).get(system_namespace(payload.get("iss", ""))) or {}
            body["roles"] = list(sys_claims.get("roles") or [])
            body["perms"] = list(sys_claims.get("perms") or [])
        return body

    def _introspect(
        self,
        token: str,
        credentials: ClientCredentials,
        include_sys: bool,
        tenant_hint: Optional[str],
    ) -> Dict[str, Any]:
        tenant, _client = self._authenticate(credentials, tenant_hint)
        token = (token or "").strip()
        if not token:
            return dict(INACTIVE)
        if looks_opaque(token):
            return self._opaque(tenant, token)
        return self._jwt(tenant, token, include_sys)

    async def introspect(
        self,
        token: str,
        credentials: ClientCredentials,
        *,
        include_sys: bool = False,
        tenant_hint: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await asyncio.to_thread(self._introspect, token, credentials, include_sys, tenant_hint)
