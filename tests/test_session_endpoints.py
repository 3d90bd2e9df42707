"""CSRF issuance, session login and logout over HTTP."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from tenantauth.config import SecureCookieMode
from tenantauth.service.errors import ErrorCode
from tenantauth.service.sessions import RedirectAllowlist, session_key
from tenantauth.storage.models import SessionRecord

from support import TENANT_ID, TENANT_SLUG, USER_EMAIL, USER_PASSWORD

LOGIN_URL = "/v1/session/login"
LOGOUT_URL = "/v1/session/logout"


def _set_cookie(resp, name):
    headers = [h for h in resp.headers.get_list("set-cookie") if h.startswith(f"{name}=")]
    assert headers, f"no Set-Cookie for {name}"
    return headers[0]


def _attributes(header):
    return {part.strip().split("=")[0].lower() for part in header.split(";")[1:]}


def _login_body(**overrides):
    body = {"tenant_id": TENANT_SLUG, "email": USER_EMAIL, "password": USER_PASSWORD}
    body.update(overrides)
    return body


def _csrf(client):
    resp = client.get("/v1/csrf")
    assert resp.status_code == 200
    return resp.json()["csrf_token"]


class TestCsrfEndpoint:
    def test_issues_cookie_and_body(self, client):
        resp = client.get("/v1/csrf")
        token = resp.json()["csrf_token"]
        assert len(token) == 64
        assert resp.headers["cache-control"] == "no-store"

        header = _set_cookie(resp, "csrf_token")
        assert header.startswith(f"csrf_token={token}")
        attrs = _attributes(header)
        assert "httponly" not in attrs
        assert {"secure", "path", "expires", "samesite"} <= attrs
        assert "samesite=lax" in header.lower()

    def test_tokens_differ_per_call(self, client):
        assert _csrf(client) != _csrf(client)

    def test_secure_follows_forwarded_proto(self, world):
        from tenantauth import app as app_module

        plain = TestClient(app_module.app, base_url="http://testserver")
        assert "secure" not in _attributes(_set_cookie(plain.get("/v1/csrf"), "csrf_token"))
        forwarded = plain.get("/v1/csrf", headers={"X-Forwarded-Proto": "https"})
        assert "secure" in _attributes(_set_cookie(forwarded, "csrf_token"))


class TestCsrfEnforcement:
    def test_missing_header_rejected(self, client):
        _csrf(client)
        resp = client.post(LOGIN_URL, json=_login_body())
        assert resp.status_code == 403
        assert resp.json()["error"] == "forbidden"
        assert resp.json()["code"] == ErrorCode.CSRF_MISMATCH

    def test_missing_cookie_rejected(self, client):
        token = _csrf(client)
        client.cookies.clear()
        resp = client.post(LOGIN_URL, json=_login_body(), headers={"X-CSRF-Token": token})
        assert resp.status_code == 403

    def test_mismatch_rejected(self, client):
        token = _csrf(client)
        resp = client.post(LOGIN_URL, json=_login_body(), headers={"X-CSRF-Token": token[::-1]})
        assert resp.status_code == 403

    def test_matching_pair_accepted(self, client):
        token = _csrf(client)
        resp = client.post(LOGIN_URL, json=_login_body(), headers={"X-CSRF-Token": token})
        assert resp.status_code == 204

    def test_bearer_requests_are_exempt(self, client):
        resp = client.post(LOGIN_URL, json=_login_body(), headers={"Authorization": "Bearer abc"})
        assert resp.status_code == 204

    def test_enforcement_can_be_disabled(self, client, world):
        world.runtime.settings.csrf_cookie_enforced = False
        assert client.post(LOGIN_URL, json=_login_body()).status_code == 204


class TestLogin:
    @pytest.fixture(autouse=True)
    def _csrf_header(self, client):
        client.headers["X-CSRF-Token"] = _csrf(client)

    def test_login_sets_session_cookie(self, client, world):
        resp = client.post(LOGIN_URL, json=_login_body())
        assert resp.status_code == 204
        assert resp.headers["cache-control"] == "no-store"

        header = _set_cookie(resp, "sid")
        attrs = _attributes(header)
        assert {"httponly", "secure", "path", "max-age"} <= attrs
        assert "samesite=lax" in header.lower()
        assert "max-age=43200" in header.lower()

        raw_sid = header.split(";")[0].split("=", 1)[1]
        record = asyncio.run(world.runtime.sessions.load(raw_sid))
        assert record.subject_id == "u1"
        assert record.tenant_id == TENANT_ID

    def test_login_via_client(self, client, world):
        resp = client.post(LOGIN_URL, json={"client_id": "c1", "email": USER_EMAIL, "password": USER_PASSWORD})
        assert resp.status_code == 204

    def test_cookie_policy_settings(self, client, world):
        world.runtime.settings.session_secure = SecureCookieMode.NEVER
        world.runtime.settings.session_cookie_domain = "example.test"
        header = _set_cookie(client.post(LOGIN_URL, json=_login_body()), "sid")
        assert "secure" not in _attributes(header)
        assert "domain=example.test" in header.lower()

    def test_wrong_password(self, client, world):
        resp = client.post(LOGIN_URL, json=_login_body(password="nope"))
        assert resp.status_code == 401
        assert resp.json()["error"] == "invalid_credentials"
        assert not [h for h in resp.headers.get_list("set-cookie") if h.startswith("sid=")]

    def test_tenant_or_client_required(self, client, world):
        resp = client.post(LOGIN_URL, json={"email": USER_EMAIL, "password": USER_PASSWORD})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"

    def test_unknown_tenant(self, client, world):
        assert client.post(LOGIN_URL, json=_login_body(tenant_id="nowhere")).status_code == 400

    def test_malformed_body(self, client, world):
        resp = client.post(LOGIN_URL, json={"tenant_id": TENANT_SLUG, "email": "not-an-email", "password": "x"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"


class TestLogout:
    def _seed_session(self, world, raw_sid="R"):
        record = SessionRecord.new(subject_id="u1", tenant_id=TENANT_ID, ttl_seconds=3600)
        asyncio.run(world.runtime.sessions.save(raw_sid, record))

    def test_allowlisted_return_to_redirects(self, client, world):
        world.runtime.redirect_allowlist = RedirectAllowlist(["app.example.com"])
        self._seed_session(world)
        client.cookies.set("sid", "R")
        resp = client.post(
            LOGOUT_URL,
            params={"return_to": "https://app.example.com/home"},
            follow_redirects=False,
        )
        assert resp.status_code == 303
        assert resp.headers["location"] == "https://app.example.com/home"
        deletion = _set_cookie(resp, "sid")
        assert "max-age=0" in deletion.lower()
        assert "1970" in deletion
        assert asyncio.run(world.runtime.cache.get(session_key("R"))) is None

    def test_foreign_return_to_is_ignored(self, client, world):
        world.runtime.redirect_allowlist = RedirectAllowlist(["app.example.com"])
        self._seed_session(world)
        client.cookies.set("sid", "R")
        resp = client.post(
            LOGOUT_URL, params={"return_to": "https://evil.example.net/"}, follow_redirects=False
        )
        assert resp.status_code == 204
        assert "max-age=0" in _set_cookie(resp, "sid").lower()
        assert asyncio.run(world.runtime.cache.get(session_key("R"))) is None

    def test_logout_is_idempotent(self, client, world):
        for _ in range(2):
            resp = client.post(LOGOUT_URL, follow_redirects=False)
            assert resp.status_code == 204
            assert resp.headers["cache-control"] == "no-store"
            _set_cookie(resp, "sid")

    def test_login_then_logout_ends_session(self, client, world):
        client.headers["X-CSRF-Token"] = _csrf(client)
        login = client.post(LOGIN_URL, json=_login_body())
        raw_sid = _set_cookie(login, "sid").split(";")[0].split("=", 1)[1]
        assert client.post(LOGOUT_URL, follow_redirects=False).status_code == 204
        assert asyncio.run(world.runtime.sessions.load(raw_sid)) is None
