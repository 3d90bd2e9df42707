from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Mapping, Optional

from fastapi import APIRouter, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from tenantauth.api.cookies import clear_session_cookie, set_csrf_cookie, set_session_cookie
from tenantauth.api.error_handling import NO_STORE_HEADERS
from tenantauth.api.schemas import (
    CsrfResponse,
    IntrospectionResponse,
    JWKSResponse,
    LogoutAllRequest,
    OpenIDConfiguration,
    SessionLoginRequest,
    TokenResponse,
)
from tenantauth.logging import get_logger
from tenantauth.service.clients import extract_client_credentials
from tenantauth.service.credentials import extract_bearer
from tenantauth.service.csrf import new_csrf_token
from tenantauth.service.errors import ErrorCode, InvalidClientError, InvalidRequestError
from tenantauth.service.runtime import get_runtime
from tenantauth.service.signer import GLOBAL_SCOPE

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")
wellknown_router = APIRouter()

TOKEN_BODY_LIMIT = 64 * 1024
REVOKE_BODY_LIMIT = 32 * 1024
INTROSPECT_BODY_LIMIT = 32 * 1024

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
JSON_CONTENT_TYPE = "application/json"


def _content_type(request: Request) -> str:
    return request.headers.get("content-type", "").split(";")[0].strip().lower()


def _raw_tenant_ref(request: Request) -> Optional[str]:
    for header in ("X-Tenant-ID", "X-Tenant-Slug"):
        value = request.headers.get(header)
        if value and value.strip():
            return value.strip()
    for param in ("tenant", "tenant_id"):
        value = request.query_params.get(param)
        if value and value.strip():
            return value.strip()
    return None


async def tenant_hint(request: Request) -> Optional[str]:
    """Tenant named by the request, as a slug: headers first, then query parameters.

    Ids and slugs are both accepted; a ref no tenant answers to is passed on unchanged.
    """
    ref = _raw_tenant_ref(request)
    if ref is None:
        return None
    tenant = await asyncio.to_thread(get_runtime().control_plane.resolve_tenant, ref)
    return tenant.slug if tenant is not None else ref


async def _read_body(request: Request, limit: int) -> bytes:
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise InvalidRequestError("request body too large", code=ErrorCode.BODY_TOO_LARGE)
    # Chunked bodies carry no length header; count while reading
    chunks = []
    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if received > limit:
            raise InvalidRequestError("request body too large", code=ErrorCode.BODY_TOO_LARGE)
        chunks.append(chunk)
    body = b"".join(chunks)
    # Later request.body() and request.form() calls reuse what was read here
    request._body = body
    return body


async def _read_form(request: Request) -> Dict[str, str]:
    """Parse a form body, rejecting repeated parameters (RFC 6749 §3.2)."""
    form = await request.form()
    parsed: Dict[str, str] = {}
    for key in form.keys():
        values = form.getlist(key)
        if len(values) > 1:
            raise InvalidRequestError(
                f"parameter {key!r} must not be repeated", code=ErrorCode.MALFORMED_REQUEST
            )
        value = values[0]
        if not isinstance(value, str):
            raise InvalidRequestError("file uploads are not accepted", code=ErrorCode.MALFORMED_REQUEST)
        parsed[key] = value
    return parsed


def _no_store(response: Response) -> None:
    for name, value in NO_STORE_HEADERS.items():
        response.headers[name] = value


# -- CSRF ----------------------------------------------------------------------


@router.get("/csrf", response_model=CsrfResponse, tags=["session"])
async def issue_csrf(request: Request):
    """Issue a double-submit CSRF token as both a cookie and a JSON body."""
    runtime = get_runtime()
    token = new_csrf_token()
    response = JSONResponse(CsrfResponse(csrf_token=token).model_dump(), headers=NO_STORE_HEADERS)
    set_csrf_cookie(response, request, runtime.settings, token)
    return response


# -- OAuth ---------------------------------------------------------------------


@router.post("/oauth/token", response_model=TokenResponse, tags=["oauth"])
async def token(request: Request, authorization: Optional[str] = Header(default=None)):
    """RFC 6749 token endpoint for authorization_code, refresh_token and client_credentials."""
    runtime = get_runtime()
    if _content_type(request) != FORM_CONTENT_TYPE:
        raise InvalidRequestError(
            "token requests must be application/x-www-form-urlencoded",
            code=ErrorCode.UNSUPPORTED_MEDIA_TYPE,
        )
    await _read_body(request, TOKEN_BODY_LIMIT)
    form = await _read_form(request)
    result = await runtime.tokens.exchange(
        form, authorization=authorization, tenant_hint=await tenant_hint(request)
    )
    return JSONResponse(result.to_dict(), headers=NO_STORE_HEADERS)


def _revoke_token_from(
    content_type: str, form: Mapping[str, str], body: bytes, authorization: Optional[str]
) -> Optional[str]:
    token_value = form.get("token")
    if token_value:
        return token_value
    bearer = extract_bearer(authorization)
    if bearer:
        return bearer
    if content_type == JSON_CONTENT_TYPE and body:
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise InvalidRequestError("malformed JSON body", code=ErrorCode.MALFORMED_REQUEST)
        if isinstance(payload, dict) and isinstance(payload.get("token"), str):
            return payload["token"]
    return None


@router.post("/oauth/revoke", tags=["oauth"])
async def revoke(request: Request, authorization: Optional[str] = Header(default=None)):
    """RFC 7009 revocation; unknown and foreign tokens still answer 200."""
    runtime = get_runtime()
    body = await _read_body(request, REVOKE_BODY_LIMIT)
    content_type = _content_type(request)
    form: Dict[str, str] = {}
    if content_type == FORM_CONTENT_TYPE:
        form = await _read_form(request)
    token_value = _revoke_token_from(content_type, form, body, authorization)
    credentials = extract_client_credentials(authorization, form)
    await runtime.revocation.revoke(
        token_value,
        tenant_hint=await tenant_hint(request),
        credentials=credentials if credentials.client_id else None,
    )
    return Response(status_code=200, headers=NO_STORE_HEADERS)


@router.post("/oauth/introspect", response_model=IntrospectionResponse, tags=["oauth"])
async def introspect(request: Request, authorization: Optional[str] = Header(default=None)):
    """RFC 7662 introspection for confidential clients."""
    runtime = get_runtime()
    if _content_type(request) != FORM_CONTENT_TYPE:
        raise InvalidRequestError(
            "introspection requests must be form encoded",
            code=ErrorCode.UNSUPPORTED_MEDIA_TYPE,
        )
    await _read_body(request, INTROSPECT_BODY_LIMIT)
    form = await _read_form(request)
    credentials = extract_client_credentials(authorization, form)
    if not credentials.client_id:
        raise InvalidClientError("client authentication required", code=ErrorCode.CLIENT_AUTH_FAILED)
    include_sys = (form.get("include_sys") or request.query_params.get("include_sys") or "") in (
        "1",
        "true",
    )
    result = await runtime.introspection.introspect(
        form.get("token") or "",
        credentials,
        include_sys=include_sys,
        tenant_hint=await tenant_hint(request),
    )
    return JSONResponse(result, headers=NO_STORE_HEADERS)


@router.get("/oauth/authorize", tags=["oauth"])
async def authorize(request: Request):
    """Authorization code issuance for a browser holding a session cookie."""
    runtime = get_runtime()
    session = await runtime.sessions.load(request.cookies.get(runtime.settings.session_cookie_name))
    target = await runtime.tokens.authorize(
        dict(request.query_params), session, tenant_hint=await tenant_hint(request)
    )
    return RedirectResponse(target, status_code=302, headers=NO_STORE_HEADERS)


# -- browser session -------------------------------------------------------------


@router.post("/session/login", status_code=204, tags=["session"])
async def session_login(body: SessionLoginRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.sessions.login(
        email=body.email,
        password=body.password,
        tenant_ref=body.tenant_id,
        client_id=body.client_id,
    )
    response = Response(status_code=204, headers=NO_STORE_HEADERS)
    set_session_cookie(response, request, runtime.settings, result.raw_sid)
    return response


@router.post("/session/logout", tags=["session"])
async def session_logout(request: Request, return_to: Optional[str] = None):
    """Drop the server-side session and always send the deletion cookie."""
    runtime = get_runtime()
    raw_sid = request.cookies.get(runtime.settings.session_cookie_name)
    await runtime.sessions.destroy(raw_sid)
    if return_to and runtime.redirect_allowlist.allows(return_to):
        response: Response = RedirectResponse(return_to, status_code=303)
    else:
        if return_to:
            logger.info("logout_return_to_rejected")
        response = Response(status_code=204)
    _no_store(response)
    clear_session_cookie(response, request, runtime.settings)
    if raw_sid:
        logger.info("session_destroyed")
    return response


@router.post("/auth/logout-all", status_code=204, tags=["session"])
async def logout_all(
    body: LogoutAllRequest,
    request: Request,
    authorization: Optional[str] = Header(default=None),
):
    """Revoke every refresh token of a user; access tokens run to expiry."""
    runtime = get_runtime()
    if not (body.user_id or "").strip():
        raise InvalidRequestError("user_id is required", code=ErrorCode.MISSING_PARAMETER)
    caller = await asyncio.to_thread(runtime.verifier.authenticate, extract_bearer(authorization))
    await runtime.revocation.logout_all(
        user_id=body.user_id,
        client_id=body.client_id,
        caller=caller,
        tenant_hint=await tenant_hint(request),
    )
    return Response(status_code=204, headers=NO_STORE_HEADERS)


# -- discovery -------------------------------------------------------------------


def _tenant_or_404(slug: str):
    tenant = get_runtime().control_plane.get_tenant_by_slug(slug)
    if tenant is None:
        raise HTTPException(status_code=404, detail="unknown tenant")
    return tenant


def _openid_configuration(issuer: str, jwks_path: str) -> Dict[str, Any]:
    base = get_runtime().settings.issuer_base
    return OpenIDConfiguration(
        issuer=issuer,
        authorization_endpoint=f"{base}/v1/oauth/authorize",
        token_endpoint=f"{base}/v1/oauth/token",
        revocation_endpoint=f"{base}/v1/oauth/revoke",
        introspection_endpoint=f"{base}/v1/oauth/introspect",
        jwks_uri=f"{base}{jwks_path}",
    ).model_dump()


@wellknown_router.get("/.well-known/jwks.json", response_model=JWKSResponse, tags=["discovery"])
async def global_jwks():
    runtime = get_runtime()
    return await asyncio.to_thread(runtime.signer.jwks, GLOBAL_SCOPE)


@wellknown_router.get(
    "/t/{slug}/.well-known/jwks.json", response_model=JWKSResponse, tags=["discovery"]
)
async def tenant_jwks(slug: str):
    runtime = get_runtime()
    tenant = await asyncio.to_thread(_tenant_or_404, slug)
    return await asyncio.to_thread(runtime.signer.jwks, tenant.slug)


@wellknown_router.get(
    "/.well-known/openid-configuration", response_model=OpenIDConfiguration, tags=["discovery"]
)
async def global_openid_configuration():
    runtime = get_runtime()
    return _openid_configuration(runtime.issuers.global_issuer, "/.well-known/jwks.json")


@wellknown_router.get(
    "/t/{slug}/.well-known/openid-configuration",
    response_model=OpenIDConfiguration,
    tags=["discovery"],
)
async def tenant_openid_configuration(slug: str):
    runtime = get_runtime()
    tenant = await asyncio.to_thread(_tenant_or_404, slug)
    return _openid_configuration(
        runtime.issuers.for_tenant(tenant), f"/t/{tenant.slug}/.well-known/jwks.json"
    )
