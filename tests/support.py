"""Shared builders for tests: a seeded tenant, codes, refresh tokens and bearer tokens."""

import base64
import json
import time
import uuid
from dataclasses import dataclass
from typing import Iterable, List, Optional

from tenantauth.service.claims import Claims, SystemClaims
from tenantauth.service.credentials import hash_secret
from tenantauth.service.grants import code_key
from tenantauth.service.tokens import generate_opaque_token, pkce_s256, sha256_b64url
from tenantauth.storage.models import (
    CLIENT_CONFIDENTIAL,
    CLIENT_PUBLIC,
    AuthorizationCode,
    Client,
    RefreshToken,
    Tenant,
    TenantSettings,
)

TENANT_SLUG = "tenantA"
TENANT_ID = "tid-A"
USER_ID = "u1"
USER_EMAIL = "alice@example.com"
USER_PASSWORD = "correct horse battery staple"
REDIRECT_URI = "https://app/cb"
SERVICE_SECRET = "svc-secret"
VERIFIER = "V" * 43


@dataclass
class World:
    runtime: object
    tenant: Tenant
    store: object
    public_client: Client
    other_client: Client
    service_client: Client


def build_world(runtime) -> World:
    tenant = Tenant(
        id=TENANT_ID,
        slug=TENANT_SLUG,
        name="Tenant A",
        settings=TenantSettings(user_db_dsn="memory://tenantA"),
    )
    runtime.control_plane.save_tenant(tenant)
    public = Client(
        id="c1",
        client_id="c1",
        tenant_id=TENANT_ID,
        client_type=CLIENT_PUBLIC,
        redirect_uris=[REDIRECT_URI],
        scopes_allowed=["openid", "profile", "email", "offline_access"],
    )
    other = Client(
        id="c2",
        client_id="c2",
        tenant_id=TENANT_ID,
        client_type=CLIENT_PUBLIC,
        redirect_uris=["https://other/cb"],
        scopes_allowed=["openid", "profile"],
    )
    service = Client(
        id="svc",
        client_id="svc",
        tenant_id=TENANT_ID,
        client_type=CLIENT_CONFIDENTIAL,
        redirect_uris=["https://svc/cb"],
        scopes_allowed=["openid", "api.read", "api.write"],
        secret_hash=hash_secret(SERVICE_SECRET)[0],
    )
    for client in (public, other, service):
        runtime.control_plane.save_client(TENANT_SLUG, client)

    store = runtime.tenant_manager.open(TENANT_SLUG)
    store.create_user(USER_EMAIL, tenant_id=TENANT_ID, email_verified=True, user_id=USER_ID)
    password_hash, algo = hash_secret(USER_PASSWORD)
    store.save_password(USER_ID, password_hash, algo)
    store.assign_role(USER_ID, "editor")
    store.grant_permission("editor", "docs:write")
    return World(
        runtime=runtime,
        tenant=tenant,
        store=store,
        public_client=public,
        other_client=other,
        service_client=service,
    )


def basic_auth(client_id: str, secret: str) -> str:
    raw = f"{client_id}:{secret}".encode("utf-8")
    return "Basic " + base64.b64encode(raw).decode("ascii")


async def store_code(
    world: World,
    raw_code: str,
    *,
    client_id: str = "c1",
    subject_id: str = USER_ID,
    redirect_uri: str = REDIRECT_URI,
    scope: Iterable[str] = ("openid", "profile"),
    verifier: Optional[str] = VERIFIER,
    nonce: Optional[str] = "N1",
    ttl_seconds: int = 60,
) -> AuthorizationCode:
    """Place an authorization code in the cache under a caller-chosen raw value."""
    code = AuthorizationCode.new(
        client_id=client_id,
        tenant_id=world.tenant.id,
        subject_id=subject_id,
        redirect_uri=redirect_uri,
        scope=list(scope),
        ttl_seconds=ttl_seconds,
        code_challenge=pkce_s256(verifier) if verifier else None,
        code_challenge_method="S256" if verifier else None,
        nonce=nonce,
    )
    await world.runtime.cache.set(code_key(raw_code), json.dumps(code.to_payload()), ttl_seconds)
    return code


def issue_refresh(
    world: World,
    *,
    client_id: str = "c1",
    subject_id: str = USER_ID,
    scope: Iterable[str] = ("openid", "profile"),
    ttl_seconds: int = 3600,
) -> tuple[str, RefreshToken]:
    raw = generate_opaque_token(32)
    record = RefreshToken.new(
        tenant_id=world.tenant.id,
        client_id=client_id,
        subject_id=subject_id,
        token_hash=sha256_b64url(raw),
        scope=list(scope),
        ttl_seconds=ttl_seconds,
    )
    world.store.create_refresh_token(record)
    return raw, record


def access_token_for(world: World, subject_id: str = USER_ID, roles: List[str] | None = None) -> str:
    """Sign an access token for ``subject_id`` with the tenant key."""
    runtime = world.runtime
    roles = list(roles or [])
    claims = Claims(
        sub=subject_id,
        tid=world.tenant.id,
        iss=runtime.issuers.for_tenant(world.tenant),
        aud="c1",
        scope=["openid"],
        system=SystemClaims(roles=roles, is_admin="sys:admin" in roles),
    )
    now = int(time.time())
    payload = claims.access_payload(iat=now, exp=now + 600, jti=uuid.uuid4().hex)
    return runtime.signer.sign(payload, scope=world.tenant.slug)


def add_second_tenant(world: World, *, slug: str = "tenantB", tenant_id: str = "tid-B", secret: str = "secret-B") -> Tenant:
    """A second tenant registering its own confidential ``svc`` client."""
    runtime = world.runtime
    tenant = Tenant(
        id=tenant_id,
        slug=slug,
        name="Tenant B",
        settings=TenantSettings(user_db_dsn=f"memory://{slug}"),
    )
    runtime.control_plane.save_tenant(tenant)
    runtime.control_plane.save_client(
        slug,
        Client(
            id=f"svc-{slug}",
            client_id="svc",
            tenant_id=tenant_id,
            client_type=CLIENT_CONFIDENTIAL,
            redirect_uris=["https://svc-b/cb"],
            scopes_allowed=["api.read"],
            secret_hash=hash_secret(secret)[0],
        ),
    )
    return tenant
