from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi import Request, Response

from tenantauth.config import SecureCookieMode, Settings

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def is_https(request: Request) -> bool:
    """True when the request reached us over TLS, directly or behind a proxy."""
    if request.url.scheme == "https":
        return True
    forwarded = request.headers.get("X-Forwarded-Proto", "")
    return forwarded.split(",")[0].strip().lower() == "https"


def _session_secure(request: Request, settings: Settings) -> bool:
    if settings.session_secure == SecureCookieMode.ALWAYS:
        return True
    if settings.session_secure == SecureCookieMode.NEVER:
        return False
    return is_https(request)


def set_csrf_cookie(response: Response, request: Request, settings: Settings, value: str) -> None:
    # Readable by scripts so the page can echo it back in the header
    response.set_cookie(
        settings.csrf_cookie_name,
        value,
        httponly=False,
        secure=is_https(request),
        samesite="lax",
        expires=datetime.now(timezone.utc) + timedelta(seconds=settings.csrf_ttl),
        path="/",
    )


def set_session_cookie(
    response: Response, request: Request, settings: Settings, raw_sid: str
) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        raw_sid,
        httponly=True,
        secure=_session_secure(request, settings),
        samesite=settings.session_samesite.value,
        max_age=settings.session_ttl,
        expires=datetime.now(timezone.utc) + timedelta(seconds=settings.session_ttl),
        domain=settings.session_cookie_domain,
        path="/",
    )


def clear_session_cookie(response: Response, request: Request, settings: Settings) -> None:
    """Emit the deletion cookie with the same attributes the session cookie used."""
    response.set_cookie(
        settings.session_cookie_name,
        "",
        httponly=True,
        secure=_session_secure(request, settings),
        samesite=settings.session_samesite.value,
        max_age=0,
        expires=_EPOCH,
        domain=settings.session_cookie_domain,
        path="/",
    )
