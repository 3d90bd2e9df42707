from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol

from tenantauth.logging import get_logger, sanitize_error_message
from tenantauth.service.errors import (
    ErrorCode,
    InternalError,
    InvalidRequestError,
    TenantDBMissingError,
)
from tenantauth.storage.errors import TenantDBMissing, TenantNotFound
from tenantauth.storage.models import RefreshToken, User
from tenantauth.storage.tenantsql import TenantSQLManager

logger = get_logger(__name__)


class IdentityStore(Protocol):
    """Operations the token and session core needs from a user database."""

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, tenant_id: str, email: str) -> Optional[User]: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def get_user_roles(self, user_id: str) -> List[str]: ...

    def get_user_permissions(self, user_id: str) -> List[str]: ...

    def create_refresh_token(
        self, token: RefreshToken, *, deadline: Optional[float] = None
    ) -> RefreshToken: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(self, token_id: str) -> None: ...

    def rotate_refresh_token(
        self, old_hash: str, new_token: RefreshToken, *, deadline: Optional[float] = None
    ) -> RefreshToken: ...

    def has_child_refresh_token(self, token_id: str) -> bool: ...


@dataclass
class ActiveStore:
    store: IdentityStore
    tenant_slug: Optional[str]
    scoped: bool


class StoreSelector:
    """Pick the user database for a request.

    A tenant database wins when a tenant manager exists and a slug was
    resolved. A tenant without a configured database falls back to the
    global store unless ``strict`` is set; failures opening a configured
    tenant database are never masked by the fallback.

    Grant handling selects twice: once for the request tenant and again for
    the tenant owning the resolved client, because refresh tokens must live
    in the client's tenant database.
    """

    def __init__(
        self,
        global_store: Optional[IdentityStore],
        tenant_manager: Optional[TenantSQLManager],
    ) -> None:
        self.global_store = global_store
        self.tenant_manager = tenant_manager

    def _global(self, slug: Optional[str]) -> ActiveStore:
        if self.global_store is None:
            raise TenantDBMissingError(
                "no database available for tenant", code=ErrorCode.TENANT_DB_MISSING
            )
        return ActiveStore(store=self.global_store, tenant_slug=slug, scoped=False)

    def select(self, slug: Optional[str], *, strict: bool = False) -> ActiveStore:
        if not slug or self.tenant_manager is None:
            if strict and self.tenant_manager is not None:
                raise InvalidRequestError("tenant is required", code=ErrorCode.UNKNOWN_TENANT)
            return self._global(slug)
        try:
            store = self.tenant_manager.open(slug)
        except TenantNotFound:
            if strict:
                raise InvalidRequestError("unknown tenant", code=ErrorCode.UNKNOWN_TENANT)
            logger.info("tenant_unknown_using_global", tenant=slug)
            return self._global(slug)
        except TenantDBMissing:
            if strict:
                raise TenantDBMissingError(
                    "tenant has no database configured", code=ErrorCode.TENANT_DB_MISSING
                )
            logger.info("tenant_db_missing_using_global", tenant=slug)
            return self._global(slug)
        except Exception as exc:
            logger.error(
                "tenant_db_open_failed",
                tenant=slug,
                error=sanitize_error_message(str(exc)),
            )
            raise InternalError(
                "tenant database unavailable", code=ErrorCode.TENANT_DB_UNAVAILABLE
            ) from exc
        return ActiveStore(store=store, tenant_slug=slug, scoped=True)
