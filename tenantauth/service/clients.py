from __future__ import annotations

from dataclasses import dataclass
from typing import List, Mapping, Optional, Tuple

from tenantauth.logging import get_logger
from tenantauth.service.credentials import parse_basic_auth, verify_secret
from tenantauth.service.errors import (
    ErrorCode,
    InvalidClientError,
    InvalidRequestError,
    InvalidScopeError,
    UnauthorizedClientError,
)
from tenantauth.storage.controlplane import FSControlPlane
from tenantauth.storage.models import Client, Tenant

logger = get_logger(__name__)


@dataclass
class ClientCredentials:
    """Client identity as presented on a request."""

    client_id: Optional[str]
    secret: Optional[str]
    via_basic: bool = False

    @property
    def has_secret(self) -> bool:
        return bool(self.secret)


def extract_client_credentials(
    authorization: Optional[str], form: Mapping[str, str]
) -> ClientCredentials:
    """Collect ``client_id``/``client_secret`` from Basic auth or the form body."""
    basic = parse_basic_auth(authorization)
    form_client_id = (form.get("client_id") or "").strip() or None
    form_secret = form.get("client_secret") or None
    if basic:
        basic_id, basic_secret = basic
        if form_client_id and form_client_id != basic_id:
            raise InvalidRequestError(
                "client_id does not match the authenticated client",
                code=ErrorCode.MALFORMED_REQUEST,
            )
        if form_secret:
            raise InvalidRequestError(
                "client authentication must use a single method",
                code=ErrorCode.MALFORMED_REQUEST,
            )
        return ClientCredentials(client_id=basic_id, secret=basic_secret, via_basic=True)
    return ClientCredentials(client_id=form_client_id, secret=form_secret)


class ClientRegistry:
    """Resolve, authenticate and police OAuth clients from the control plane."""

    def __init__(self, control_plane: FSControlPlane) -> None:
        self.control_plane = control_plane

    def resolve(self, client_id: Optional[str], tenant_ref: Optional[str] = None) -> Tuple[Tenant, Client]:
        """Find ``client_id``, preferring the tenant the request named.

        A client id may be registered by several tenants; without a usable
        ``tenant_ref`` the first tenant registering it wins.
        """
        if not client_id:
            raise InvalidRequestError("client_id is required", code=ErrorCode.MISSING_PARAMETER)
        tenant = self.control_plane.resolve_tenant(tenant_ref) if tenant_ref else None
        if tenant is not None:
            client = self.control_plane.get_client(tenant.slug, client_id)
            if client is not None:
                return tenant, client
        found = self.control_plane.find_client(client_id)
        if found is None:
            logger.warning("client_not_found", client_id=client_id, tenant=tenant_ref)
            raise InvalidClientError("unknown client", code=ErrorCode.CLIENT_NOT_FOUND)
        return found

    def authenticate(self, client: Client, credentials: ClientCredentials) -> None:
        """Confidential clients must prove their secret; public clients must not need one."""
        if client.is_public:
            return
        if not credentials.has_secret:
            raise InvalidClientError(
                "client authentication required", code=ErrorCode.CLIENT_AUTH_FAILED
            )
        if not verify_secret(client.secret_hash, credentials.secret or ""):
            logger.warning("client_auth_failed", client_id=client.client_id)
            raise InvalidClientError(
                "client authentication failed", code=ErrorCode.CLIENT_AUTH_FAILED
            )

    @staticmethod
    def require_grant(client: Client, grant_type: str) -> None:
        if not client.allows_grant(grant_type):
            raise UnauthorizedClientError(
                f"client is not allowed to use {grant_type}",
                code=ErrorCode.GRANT_NOT_ALLOWED,
            )

    @staticmethod
    def check_scopes(client: Client, requested: List[str]) -> List[str]:
        """Return the effective scope set; empty requests get everything allowed."""
        if not requested:
            return list(client.scopes_allowed)
        allowed = set(client.scopes_allowed)
        denied = [s for s in requested if s not in allowed]
        if denied:
            raise InvalidScopeError(
                "requested scope exceeds what the client may ask for",
                code=ErrorCode.SCOPE_NOT_ALLOWED,
                detail={"scopes": denied},
            )
        return list(requested)

    @staticmethod
    def redirect_uri_registered(client: Client, redirect_uri: str) -> bool:
        return redirect_uri in client.redirect_uris
