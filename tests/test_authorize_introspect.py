"""Authorization endpoint redirects and RFC 7662 introspection."""

import asyncio
import time
import uuid
from urllib.parse import parse_qs, urlsplit

import pytest

from tenantauth.service.claims import Claims
from tenantauth.service.tokens import pkce_s256
from tenantauth.storage.models import SessionRecord, Tenant

from support import (
    REDIRECT_URI,
    SERVICE_SECRET,
    TENANT_ID,
    USER_ID,
    VERIFIER,
    access_token_for,
    add_second_tenant,
    basic_auth,
    issue_refresh,
)

AUTHORIZE_URL = "/v1/oauth/authorize"
INTROSPECT_URL = "/v1/oauth/introspect"


def _authorize_params(**overrides):
    params = {
        "response_type": "code",
        "client_id": "c1",
        "redirect_uri": REDIRECT_URI,
        "scope": "openid profile",
        "state": "s1",
        "nonce": "N1",
        "code_challenge": pkce_s256(VERIFIER),
        "code_challenge_method": "S256",
    }
    params.update(overrides)
    return {k: v for k, v in params.items() if v is not None}


def _query(resp):
    assert resp.status_code == 302, resp.text
    location = resp.headers["location"]
    assert location.startswith(REDIRECT_URI)
    return {k: v[0] for k, v in parse_qs(urlsplit(location).query).items()}


@pytest.fixture
def signed_in(client, world):
    record = SessionRecord.new(subject_id=USER_ID, tenant_id=TENANT_ID, ttl_seconds=3600)
    asyncio.run(world.runtime.sessions.save("browser-sid", record))
    client.cookies.set("sid", "browser-sid")
    return client


class TestAuthorize:
    def test_issues_code_that_redeems(self, signed_in, world):
        resp = signed_in.get(AUTHORIZE_URL, params=_authorize_params(), follow_redirects=False)
        query = _query(resp)
        assert query["state"] == "s1"
        assert "error" not in query

        token = signed_in.post(
            "/v1/oauth/token",
            data={
                "grant_type": "authorization_code",
                "code": query["code"],
                "redirect_uri": REDIRECT_URI,
                "client_id": "c1",
                "code_verifier": VERIFIER,
            },
        )
        assert token.status_code == 200, token.text
        id_token = world.runtime.signer.verify(token.json()["id_token"], audience="c1")
        assert id_token["nonce"] == "N1"

    def test_login_required_without_session(self, client, world):
        query = _query(client.get(AUTHORIZE_URL, params=_authorize_params(), follow_redirects=False))
        assert query["error"] == "login_required"
        assert query["state"] == "s1"
        assert "code" not in query

    def test_session_of_another_tenant(self, client, world):
        record = SessionRecord.new(subject_id=USER_ID, tenant_id="tid-other", ttl_seconds=3600)
        asyncio.run(world.runtime.sessions.save("other-sid", record))
        client.cookies.set("sid", "other-sid")
        query = _query(client.get(AUTHORIZE_URL, params=_authorize_params(), follow_redirects=False))
        assert query["error"] == "login_required"

    def test_public_client_needs_pkce(self, signed_in, world):
        params = _authorize_params(code_challenge=None, code_challenge_method=None)
        query = _query(signed_in.get(AUTHORIZE_URL, params=params, follow_redirects=False))
        assert query["error"] == "invalid_request"

    def test_plain_challenge_rejected(self, signed_in, world):
        params = _authorize_params(code_challenge_method="plain")
        assert _query(signed_in.get(AUTHORIZE_URL, params=params, follow_redirects=False))["error"] == "invalid_request"

    def test_unsupported_response_type(self, signed_in, world):
        params = _authorize_params(response_type="token")
        query = _query(signed_in.get(AUTHORIZE_URL, params=params, follow_redirects=False))
        assert query["error"] == "unsupported_response_type"

    def test_scope_outside_allowance(self, signed_in, world):
        params = _authorize_params(scope="openid api.write")
        assert _query(signed_in.get(AUTHORIZE_URL, params=params, follow_redirects=False))["error"] == "invalid_scope"

    def test_unregistered_redirect_is_not_followed(self, signed_in, world):
        resp = signed_in.get(
            AUTHORIZE_URL,
            params=_authorize_params(redirect_uri="https://evil/cb"),
            follow_redirects=False,
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"

    def test_unknown_client(self, signed_in, world):
        resp = signed_in.get(AUTHORIZE_URL, params=_authorize_params(client_id="ghost"), follow_redirects=False)
        assert resp.status_code == 401


class TestIntrospect:
    def _introspect(self, client, token, *, auth=("svc", SERVICE_SECRET), **extra):
        headers = {"Authorization": basic_auth(*auth)} if auth else {}
        return client.post(INTROSPECT_URL, data={"token": token, **extra}, headers=headers)

    def test_active_refresh_token(self, client, world):
        raw, record = issue_refresh(world)
        body = self._introspect(client, raw).json()
        assert body["active"] is True
        assert body["token_type"] == "refresh_token"
        assert body["sub"] == USER_ID
        assert body["client_id"] == "c1"
        assert body["exp"] == int(record.expires_at.timestamp())

    def test_revoked_refresh_token(self, client, world):
        raw, record = issue_refresh(world)
        world.store.revoke_refresh_token(record.id)
        assert self._introspect(client, raw).json() == {"active": False}

    def test_access_token(self, client, world):
        token = access_token_for(world, roles=["editor"])
        body = self._introspect(client, token).json()
        assert body["active"] is True
        assert body["token_type"] == "access_token"
        assert body["iss"] == "https://issuer/tenantA"
        assert body["tid"] == TENANT_ID
        assert body["acr"] == "urn:tenantauth:loa:1"
        assert "roles" not in body

        with_sys = self._introspect(client, token, include_sys="1").json()
        assert with_sys["roles"] == ["editor"]

    def test_access_token_of_another_tenant(self, client, world):
        runtime = world.runtime
        other = Tenant(id="tid-B", slug="tenantB")
        runtime.control_plane.save_tenant(other)
        now = int(time.time())
        claims = Claims(sub="u9", tid=other.id, iss=runtime.issuers.for_tenant(other), aud="x", scope=["openid"])
        token = runtime.signer.sign(claims.access_payload(iat=now, exp=now + 60, jti=uuid.uuid4().hex), scope="tenantB")
        assert self._introspect(client, token).json() == {"active": False}

    def test_garbage_is_inactive(self, client, world):
        assert self._introspect(client, "a.b.c").json() == {"active": False}
        assert self._introspect(client, "z" * 43).json() == {"active": False}

    def test_requires_confidential_client(self, client, world):
        assert self._introspect(client, "z" * 43, auth=None).status_code == 401
        public = client.post(INTROSPECT_URL, data={"token": "z" * 43, "client_id": "c1"})
        assert public.status_code == 401
        assert self._introspect(client, "z" * 43, auth=("svc", "wrong")).status_code == 401

    def test_shared_client_id_introspects_for_named_tenant(self, client, world):
        runtime = world.runtime
        other = add_second_tenant(world)
        now = int(time.time())
        claims = Claims(sub="u9", tid=other.id, iss=runtime.issuers.for_tenant(other), aud="x", scope=["api.read"])
        token = runtime.signer.sign(claims.access_payload(iat=now, exp=now + 60, jti=uuid.uuid4().hex), scope="tenantB")
        resp = client.post(
            INTROSPECT_URL,
            data={"token": token},
            headers={"Authorization": basic_auth("svc", "secret-B"), "X-Tenant-ID": other.id},
        )
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["active"] is True
        assert body["tid"] == other.id
