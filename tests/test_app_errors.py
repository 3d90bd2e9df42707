"""Error body shape, health checks, discovery documents and middleware headers."""

import pytest
from fastapi.testclient import TestClient

from tenantauth import app as app_module
from tenantauth.api.error_handling import NO_STORE_HEADERS, error_response, service_error_response
from tenantauth.service.errors import (
    ErrorCode,
    InvalidClientError,
    NotSupportedError,
    TenantDBMissingError,
    UnauthorizedError,
)

from support import TENANT_SLUG


class TestErrorBody:
    """Every failure answers ``{error, error_description, code}`` with no-store."""

    def test_error_response_shape(self):
        resp = error_response(400, "invalid_request", "bad", ErrorCode.MALFORMED_REQUEST)
        assert resp.status_code == 400
        assert resp.body == b'{"error":"invalid_request","error_description":"bad","code":1001}'
        for name, value in NO_STORE_HEADERS.items():
            assert resp.headers[name] == value

    @pytest.mark.parametrize(
        "exc,status,error",
        [
            (TenantDBMissingError("no db"), 503, "tenant_db_missing"),
            (NotSupportedError("nope"), 501, "not_supported"),
            (UnauthorizedError("who"), 401, "unauthorized"),
        ],
    )
    def test_service_errors_keep_their_status(self, exc, status, error):
        resp = service_error_response(exc)
        assert resp.status_code == status
        assert error in resp.body.decode()

    def test_invalid_client_challenges_basic(self):
        resp = service_error_response(InvalidClientError("bad secret"))
        assert resp.headers["www-authenticate"].startswith("Basic")

    def test_unknown_route(self, client):
        resp = client.get("/v1/nothing-here")
        assert resp.status_code == 404
        body = resp.json()
        assert body["error"] == "not_found"
        assert set(body) == {"error", "error_description", "code"}

    def test_wrong_method(self, client):
        resp = client.get("/v1/oauth/token")
        assert resp.status_code == 405
        assert resp.json()["error"] == "invalid_request"

    def test_unexpected_exception_is_internal(self, client, world, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("boom with secret details")

        monkeypatch.setattr(world.runtime.signer, "jwks", explode)
        resp = TestClient(app_module.app, raise_server_exceptions=False).get("/.well-known/jwks.json")
        assert resp.status_code == 500
        assert resp.json() == {
            "error": "internal",
            "error_description": "internal server error",
            "code": ErrorCode.INTERNAL,
        }


class TestHealth:
    def test_healthy(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["cache"]["status"] == "healthy"
        assert body["checks"]["control_plane"]["status"] == "healthy"
        assert resp.headers["cache-control"] == "no-store"

    def test_failing_cache_is_reported(self, client, world, monkeypatch):
        async def broken_ping():
            raise ConnectionError("redis down")

        monkeypatch.setattr(world.runtime.cache, "ping", broken_ping)
        body = client.get("/healthz").json()
        assert body["status"] == "unhealthy"
        assert body["checks"]["cache"]["status"] == "unhealthy"


class TestDiscovery:
    def test_global_and_tenant_keys_differ(self, client):
        global_keys = client.get("/.well-known/jwks.json").json()["keys"]
        tenant_keys = client.get(f"/t/{TENANT_SLUG}/.well-known/jwks.json").json()["keys"]
        assert global_keys[0]["kid"] != tenant_keys[0]["kid"]
        assert tenant_keys[0]["crv"] == "Ed25519"

    def test_unknown_tenant_jwks(self, client):
        resp = client.get("/t/ghost/.well-known/jwks.json")
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"

    def test_tenant_openid_configuration(self, client):
        doc = client.get(f"/t/{TENANT_SLUG}/.well-known/openid-configuration").json()
        assert doc["issuer"] == "https://issuer/tenantA"
        assert doc["jwks_uri"] == "https://issuer/t/tenantA/.well-known/jwks.json"
        assert doc["token_endpoint"] == "https://issuer/v1/oauth/token"
        assert doc["code_challenge_methods_supported"] == ["S256"]

    def test_global_openid_configuration(self, client):
        doc = client.get("/.well-known/openid-configuration").json()
        assert doc["issuer"] == "https://issuer"
        assert doc["id_token_signing_alg_values_supported"] == ["EdDSA"]


class TestMiddleware:
    def test_request_id_is_echoed(self, client):
        resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert resp.headers["x-request-id"] == "req-123"

    def test_request_id_generated(self, client):
        assert client.get("/healthz").headers["x-request-id"]

    def test_security_headers(self, client):
        resp = client.get("/.well-known/jwks.json")
        assert resp.headers["x-frame-options"] == "DENY"
        assert resp.headers["x-content-type-options"] == "nosniff"
        assert resp.headers["referrer-policy"] == "no-referrer"

    def test_cors_allows_local_dev_origin(self, client):
        resp = client.get("/healthz", headers={"Origin": "http://localhost:3000"})
        assert resp.headers["access-control-allow-origin"] == "http://localhost:3000"
