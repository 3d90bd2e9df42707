from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode

import jwt

from tenantauth.config import Settings
from tenantauth.logging import get_logger, log_token_issued
from tenantauth.service.claims import ADMIN_ROLE, Claims, SystemClaims, parse_scope
from tenantauth.service.clients import ClientRegistry, extract_client_credentials
from tenantauth.service.errors import (
    ErrorCode,
    InternalError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidScopeError,
    ServiceError,
    UnauthorizedClientError,
    UnsupportedGrantTypeError,
)
from tenantauth.service.grants import AuthCodeStore
from tenantauth.service.issuer import IssuerResolver
from tenantauth.service.signer import GLOBAL_SCOPE, Signer
from tenantauth.service.stores import ActiveStore, IdentityStore, StoreSelector
from tenantauth.service.tokens import at_hash, generate_opaque_token, sha256_b64url, verify_pkce
from tenantauth.storage.errors import DeadlineExceeded, RotationConflict
from tenantauth.storage.models import (
    GRANT_AUTHORIZATION_CODE,
    GRANT_CLIENT_CREDENTIALS,
    GRANT_REFRESH_TOKEN,
    AuthorizationCode,
    Client,
    RefreshToken,
    SessionRecord,
    Tenant,
)

logger = get_logger(__name__)

ADMIN_AUDIENCE = "admin"
ADMIN_TENANT = "global"
ADMIN_SCOPES = ["openid", "profile", "email"]


@dataclass
class TokenResponse:
    access_token: str
    expires_in: int
    scope: str
    token_type: str = "Bearer"
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }
        if self.scope:
            body["scope"] = self.scope
        if self.refresh_token:
            body["refresh_token"] = self.refresh_token
        if self.id_token:
            body["id_token"] = self.id_token
        return body


def _with_query(uri: str, params: Dict[str, Optional[str]]) -> str:
    query = urlencode({k: v for k, v in params.items() if v is not None})
    if not query:
        return uri
    return uri + ("&" if "?" in uri else "?") + query


@dataclass
class Exchange:
    """Per-request state for one token exchange."""

    deadline: float
    tenant_hint: Optional[str] = None
    request_store: Optional[ActiveStore] = None

    def remaining(self) -> float:
        return max(self.deadline - time.monotonic(), 0.0)


class TokenService:
    """Grant handling for the token and authorization endpoints.

    Store selection happens twice per grant: once for the tenant named by the
    request, then again for the tenant that owns the resolved client. Every
    refresh token is read from and written to the second selection.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        selector: StoreSelector,
        clients: ClientRegistry,
        grants: AuthCodeStore,
        signer: Signer,
        issuers: IssuerResolver,
    ) -> None:
        self.settings = settings
        self.selector = selector
        self.clients = clients
        self.grants = grants
        self.signer = signer
        self.issuers = issuers

    # -- token endpoint ------------------------------------------------------------

    async def exchange(
        self,
        form: Mapping[str, str],
        *,
        authorization: Optional[str] = None,
        tenant_hint: Optional[str] = None,
    ) -> TokenResponse:
        """Run one grant under the configured deadline.

        Reads give up when the deadline fires. Refresh-row writes are never
        abandoned half way: the store refuses to start one after the deadline,
        and one that started in time is awaited, so a 500 here always means
        nothing was written.
        """
        ctx = Exchange(
            deadline=time.monotonic() + self.settings.token_deadline,
            tenant_hint=tenant_hint,
        )
        try:
            return await self._exchange(form, authorization, ctx)
        except (asyncio.TimeoutError, DeadlineExceeded):
            logger.error(
                "token_exchange_deadline_exceeded",
                grant_type=form.get("grant_type"),
                deadline=self.settings.token_deadline,
            )
            raise InternalError("token exchange timed out", code=ErrorCode.DEADLINE_EXCEEDED)

    async def _exchange(
        self, form: Mapping[str, str], authorization: Optional[str], ctx: Exchange
    ) -> TokenResponse:
        grant_type = (form.get("grant_type") or "").strip()
        if not grant_type:
            raise InvalidRequestError("grant_type is required", code=ErrorCode.MISSING_PARAMETER)
        if ctx.tenant_hint:
            ctx.request_store = await self._call(ctx, self.selector.select, ctx.tenant_hint)
        if grant_type == GRANT_AUTHORIZATION_CODE:
            return await self._authorization_code(form, authorization, ctx)
        if grant_type == GRANT_REFRESH_TOKEN:
            return await self._refresh_token(form, authorization, ctx)
        if grant_type == GRANT_CLIENT_CREDENTIALS:
            return await self._client_credentials(form, authorization, ctx)
        raise UnsupportedGrantTypeError(
            f"unsupported grant_type {grant_type!r}", code=ErrorCode.UNSUPPORTED_GRANT
        )

    # -- deadline-aware calls ----------------------------------------------------------

    async def _call(self, ctx: Exchange, fn, *args, **kwargs):
        """Blocking read in a worker thread, abandoned when the deadline fires."""
        return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), ctx.remaining())

    async def _write(self, ctx: Exchange, fn, *args):
        """Refresh-row write run to completion; the store enforces the deadline."""
        return await asyncio.to_thread(fn, *args, deadline=ctx.deadline)

    async def _store_for(self, ctx: Exchange, tenant: Tenant) -> ActiveStore:
        """Second selection, for the tenant that owns the resolved client."""
        first = ctx.request_store
        if first is not None and first.scoped and first.tenant_slug == tenant.slug:
            return first
        return await self._call(ctx, self.selector.select, tenant.slug)

    async def _resolve_client(
        self,
        form: Mapping[str, str],
        authorization: Optional[str],
        grant_type: str,
        ctx: Exchange,
    ) -> tuple[Tenant, Client]:
        creds = extract_client_credentials(authorization, form)
        tenant, client = await self._call(ctx, self.clients.resolve, creds.client_id, ctx.tenant_hint)
        await self._call(ctx, self.clients.authenticate, client, creds)
        self.clients.require_grant(client, grant_type)
        return tenant, client

    async def _authorization_code(
        self, form: Mapping[str, str], authorization: Optional[str], ctx: Exchange
    ) -> TokenResponse:
        raw_code = (form.get("code") or "").strip()
        redirect_uri = form.get("redirect_uri") or ""
        if not raw_code or not redirect_uri:
            raise InvalidRequestError(
                "code and redirect_uri are required", code=ErrorCode.MISSING_PARAMETER
            )
        tenant, client = await self._resolve_client(form, authorization, GRANT_AUTHORIZATION_CODE, ctx)

        code = await self.grants.consume(raw_code)
        if code is None:
            raise InvalidGrantError("authorization code is invalid or expired", code=ErrorCode.CODE_NOT_FOUND)
        if code.client_id != client.client_id or code.tenant_id != tenant.id:
            logger.warning("auth_code_client_mismatch", client_id=client.client_id)
            raise InvalidGrantError("authorization code was issued to another client", code=ErrorCode.CODE_CLIENT_MISMATCH)
        if code.redirect_uri != redirect_uri:
            raise InvalidGrantError("redirect_uri does not match", code=ErrorCode.REDIRECT_URI_MISMATCH)
        if code.code_challenge or client.is_public:
            verifier = form.get("code_verifier") or ""
            if not verifier:
                raise InvalidRequestError("code_verifier is required", code=ErrorCode.MISSING_CODE_VERIFIER)
            if not code.code_challenge or not verify_pkce(
                verifier, code.code_challenge, code.code_challenge_method
            ):
                logger.warning("pkce_verification_failed", client_id=client.client_id)
                raise InvalidGrantError("code_verifier does not match", code=ErrorCode.PKCE_MISMATCH)

        active = await self._store_for(ctx, tenant)
        claims = await self._call(
            ctx,
            self._user_claims,
            active.store,
            tenant,
            subject_id=code.subject_id,
            audience=client.client_id,
            scope=code.scope,
            amr=code.amr,
            nonce=code.nonce,
        )
        access_token, issued_at = self._mint_access(claims, tenant.slug)
        refresh_raw = generate_opaque_token(32)
        record = RefreshToken.new(
            tenant_id=tenant.id,
            client_id=client.client_id,
            subject_id=claims.sub,
            token_hash=sha256_b64url(refresh_raw),
            scope=code.scope,
            ttl_seconds=self.settings.refresh_token_ttl,
        )
        await self._write(ctx, active.store.create_refresh_token, record)
        id_token = self._mint_id_token(claims, access_token, issued_at, tenant.slug) if claims.has_openid else None
        log_token_issued(
            GRANT_AUTHORIZATION_CODE,
            tenant=tenant.slug,
            client_id=client.client_id,
            user_id=claims.sub,
            scope=claims.scope,
            logger=logger,
        )
        return TokenResponse(
            access_token=access_token,
            expires_in=self.settings.access_token_ttl,
            scope=claims.scope_string,
            refresh_token=refresh_raw,
            id_token=id_token,
        )

    async def _refresh_token(
        self, form: Mapping[str, str], authorization: Optional[str], ctx: Exchange
    ) -> TokenResponse:
        raw = (form.get("refresh_token") or "").strip()
        if not raw:
            raise InvalidRequestError("refresh_token is required", code=ErrorCode.MISSING_PARAMETER)
        if raw.count(".") == 2:
            return self._admin_refresh(raw)

        tenant, client = await self._resolve_client(form, authorization, GRANT_REFRESH_TOKEN, ctx)
        active = await self._store_for(ctx, tenant)
        store = active.store
        token_hash = sha256_b64url(raw)
        current = await self._call(ctx, store.get_refresh_token_by_hash, token_hash)
        if current is None:
            raise InvalidGrantError("refresh token is invalid", code=ErrorCode.REFRESH_NOT_FOUND)
        if current.client_id != client.client_id or current.tenant_id != tenant.id:
            logger.warning("refresh_token_client_mismatch", client_id=client.client_id)
            raise InvalidGrantError("refresh token is invalid", code=ErrorCode.REFRESH_CLIENT_MISMATCH)
        if current.revoked:
            await self._call(ctx, self._handle_reuse, store, current)
            raise InvalidGrantError("refresh token is invalid", code=ErrorCode.REFRESH_REVOKED)
        if current.is_expired():
            raise InvalidGrantError("refresh token is expired", code=ErrorCode.REFRESH_EXPIRED)

        requested = parse_scope(form.get("scope"))
        if requested and not set(requested).issubset(current.scope):
            raise InvalidScopeError(
                "requested scope exceeds the original grant", code=ErrorCode.SCOPE_WIDENED
            )
        scope = requested or list(current.scope)

        claims = await self._call(
            ctx,
            self._user_claims,
            store,
            tenant,
            subject_id=current.subject_id,
            audience=client.client_id,
            scope=scope,
            amr=["refresh"],
            nonce=None,
        )

        new_raw = generate_opaque_token(32)
        successor = RefreshToken.new(
            tenant_id=tenant.id,
            client_id=client.client_id,
            subject_id=current.subject_id,
            token_hash=sha256_b64url(new_raw),
            scope=current.scope,
            ttl_seconds=self.settings.refresh_token_ttl,
            parent_id=current.id,
        )
        try:
            await self._write(ctx, store.rotate_refresh_token, token_hash, successor)
        except RotationConflict as exc:
            logger.warning(
                "refresh_rotation_conflict",
                client_id=client.client_id,
                reason=exc.message,
            )
            raise InvalidGrantError("refresh token is invalid", code=ErrorCode.REFRESH_REUSED)

        access_token, _ = self._mint_access(claims, tenant.slug)
        log_token_issued(
            GRANT_REFRESH_TOKEN,
            tenant=tenant.slug,
            client_id=client.client_id,
            user_id=claims.sub,
            scope=claims.scope,
            logger=logger,
        )
        return TokenResponse(
            access_token=access_token,
            expires_in=self.settings.access_token_ttl,
            scope=claims.scope_string,
            refresh_token=new_raw,
        )

    def _handle_reuse(self, store: IdentityStore, token: RefreshToken) -> None:
        """A revoked token that already has a successor was replayed: burn the family."""
        if not store.has_child_refresh_token(token.id):
            return
        revoke_all = getattr(store, "revoke_all_refresh_tokens", None)
        revoked = revoke_all(token.subject_id, token.client_id) if revoke_all else 0
        logger.warning(
            "refresh_token_reuse_detected",
            user_id=token.subject_id,
            client_id=token.client_id,
            revoked=revoked,
        )

    def _admin_refresh(self, raw: str) -> TokenResponse:
        """Stateless refresh for global administrators; nothing is persisted."""
        if not self.settings.fs_admin_enable:
            raise InvalidGrantError("refresh token is invalid", code=ErrorCode.ADMIN_REFRESH_INVALID)
        try:
            payload = self.signer.verify(raw, audience=ADMIN_AUDIENCE, scope=GLOBAL_SCOPE)
        except jwt.InvalidTokenError as exc:
            logger.warning("admin_refresh_rejected", reason=type(exc).__name__)
            raise InvalidGrantError("refresh token is invalid", code=ErrorCode.ADMIN_REFRESH_INVALID)
        if payload.get("token_use") != "refresh" or payload.get("iss") != self.issuers.global_issuer:
            raise InvalidGrantError("refresh token is invalid", code=ErrorCode.ADMIN_REFRESH_INVALID)
        claims = Claims(
            sub=str(payload["sub"]),
            tid=ADMIN_TENANT,
            iss=self.issuers.global_issuer,
            aud=ADMIN_AUDIENCE,
            scope=list(ADMIN_SCOPES),
            amr=["pwd", "refresh"],
            system=SystemClaims(roles=[ADMIN_ROLE], is_admin=True),
        )
        access_token, _ = self._mint_access(claims, GLOBAL_SCOPE)
        refresh_token = self.mint_admin_refresh(claims.sub)
        logger.info("admin_token_refreshed", user_id=claims.sub)
        return TokenResponse(
            access_token=access_token,
            expires_in=self.settings.access_token_ttl,
            scope=claims.scope_string,
            refresh_token=refresh_token,
        )

    def mint_admin_refresh(self, subject_id: str) -> str:
        now = int(time.time())
        payload = {
            "iss": self.issuers.global_issuer,
            "sub": subject_id,
            "aud": ADMIN_AUDIENCE,
            "iat": now,
            "nbf": now,
            "exp": now + self.settings.refresh_token_ttl,
            "jti": uuid.uuid4().hex,
            "token_use": "refresh",
        }
        return self.signer.sign(payload, scope=GLOBAL_SCOPE)

    async def _client_credentials(
        self, form: Mapping[str, str], authorization: Optional[str], ctx: Exchange
    ) -> TokenResponse:
        creds = extract_client_credentials(authorization, form)
        tenant, client = await self._call(ctx, self.clients.resolve, creds.client_id, ctx.tenant_hint)
        if not client.is_confidential:
            raise UnauthorizedClientError(
                "client_credentials requires a confidential client",
                code=ErrorCode.CLIENT_NOT_CONFIDENTIAL,
            )
        await self._call(ctx, self.clients.authenticate, client, creds)
        self.clients.require_grant(client, GRANT_CLIENT_CREDENTIALS)
        scope = self.clients.check_scopes(client, parse_scope(form.get("scope")))
        claims = Claims(
            sub=client.client_id,
            tid=tenant.id,
            iss=self.issuers.for_tenant(tenant),
            aud=client.client_id,
            scope=scope,
            amr=["client"],
        )
        access_token, _ = self._mint_access(claims, tenant.slug)
        log_token_issued(
            GRANT_CLIENT_CREDENTIALS, tenant=tenant.slug, client_id=client.client_id, scope=claims.scope, logger=logger
        )
        return TokenResponse(
            access_token=access_token,
            expires_in=self.settings.access_token_ttl,
            scope=claims.scope_string,
        )

    # -- minting ---------------------------------------------------------------------

    def _user_claims(
        self,
        store: IdentityStore,
        tenant: Tenant,
        *,
        subject_id: str,
        audience: str,
        scope: List[str],
        amr: List[str],
        nonce: Optional[str],
    ) -> Claims:
        user = store.get_user(subject_id)
        if user is None or not user.is_active or user.tenant_id != tenant.id:
            raise InvalidGrantError("subject is no longer valid", code=ErrorCode.USER_NOT_FOUND)
        system = SystemClaims(
            roles=store.get_user_roles(user.id),
            perms=store.get_user_permissions(user.id),
        )
        system.is_admin = ADMIN_ROLE in system.roles
        return Claims(
            sub=user.id,
            tid=tenant.id,
            iss=self.issuers.for_tenant(tenant),
            aud=audience,
            scope=list(scope),
            amr=list(amr),
            nonce=nonce,
            system=system,
        )

    def _mint_access(self, claims: Claims, key_scope: str) -> tuple[str, int]:
        now = int(time.time())
        payload = claims.access_payload(
            iat=now, exp=now + self.settings.access_token_ttl, jti=uuid.uuid4().hex
        )
        try:
            return self.signer.sign(payload, scope=key_scope), now
        except (ValueError, RuntimeError) as exc:
            logger.error("access_token_signing_failed", error=str(exc))
            raise InternalError("could not sign token", code=ErrorCode.SIGNING_FAILED) from exc

    def _mint_id_token(self, claims: Claims, access_token: str, issued_at: int, key_scope: str) -> str:
        payload = claims.id_payload(
            iat=issued_at,
            exp=issued_at + self.settings.access_token_ttl,
            at_hash=at_hash(access_token),
        )
        return self.signer.sign(payload, scope=key_scope)

    # -- authorization endpoint ------------------------------------------------------

    async def authorize(
        self,
        params: Mapping[str, str],
        session: Optional[SessionRecord],
        tenant_hint: Optional[str] = None,
    ) -> str:
        """Return the redirect target for an authorization request.

        Problems with ``client_id`` or ``redirect_uri`` raise, because the
        redirect target cannot be trusted; everything else is reported to the
        client through the redirect.
        """
        client_id = (params.get("client_id") or "").strip()
        redirect_uri = params.get("redirect_uri") or ""
        if not client_id or not redirect_uri:
            raise InvalidRequestError(
                "client_id and redirect_uri are required", code=ErrorCode.MISSING_PARAMETER
            )
        tenant, client = await asyncio.to_thread(self.clients.resolve, client_id, tenant_hint)
        if not self.clients.redirect_uri_registered(client, redirect_uri):
            raise InvalidRequestError(
                "redirect_uri is not registered for this client",
                code=ErrorCode.INVALID_REDIRECT_URI,
            )
        state = params.get("state") or None

        def fail(error: str, description: str) -> str:
            logger.info("authorize_rejected", client_id=client_id, error=error)
            return _with_query(
                redirect_uri,
                {"error": error, "error_description": description, "state": state},
            )

        if params.get("response_type") != "code":
            return fail("unsupported_response_type", "only response_type=code is supported")
        challenge = params.get("code_challenge") or None
        method = params.get("code_challenge_method") or ("S256" if challenge else None)
        if challenge and method != "S256":
            return fail("invalid_request", "only S256 code challenges are supported")
        if client.is_public and not challenge:
            return fail("invalid_request", "PKCE code_challenge is required")
        try:
            self.clients.require_grant(client, GRANT_AUTHORIZATION_CODE)
            scope = self.clients.check_scopes(client, parse_scope(params.get("scope")))
        except ServiceError as exc:
            return fail(exc.error, exc.message)
        if session is None or session.tenant_id != tenant.id:
            return fail("login_required", "an authenticated session is required")

        code = AuthorizationCode.new(
            client_id=client.client_id,
            tenant_id=tenant.id,
            subject_id=session.subject_id,
            redirect_uri=redirect_uri,
            scope=scope,
            ttl_seconds=self.settings.auth_code_ttl,
            code_challenge=challenge,
            code_challenge_method=method,
            nonce=params.get("nonce") or None,
            amr=session.amr,
        )
        raw_code = await self.grants.put(code)
        logger.info("authorization_code_issued", tenant=tenant.slug, client_id=client.client_id)
        return _with_query(redirect_uri, {"code": raw_code, "state": state})
