from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from tenantauth.api.error_handling import error_response, register_exception_handlers
from tenantauth.api.routes import router, wellknown_router
from tenantauth.config import Settings
from tenantauth.logging import bind_request_context, get_logger
from tenantauth.service.credentials import extract_bearer
from tenantauth.service.csrf import csrf_tokens_match
from tenantauth.service.errors import ErrorCode

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

# State-changing browser endpoints that require the double-submit CSRF token
CSRF_PROTECTED_PATHS = {"/v1/session/login"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime at startup and release pools on shutdown."""
    from tenantauth.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", issuer=runtime.issuers.global_issuer, version=__version__)

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Local dev hosts only; no wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    app = FastAPI(title="tenantauth", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Authorization",
            "X-Tenant-ID",
            "X-Tenant-Slug",
            settings.csrf_header_name,
            "X-Request-ID",
        ],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def enforce_csrf_token(request: Request, call_next):
        """Double-submit check: header and cookie must both be present and equal.

        Requests authenticated with a Bearer token carry no ambient
        credentials and are exempt.
        """
        if request.method.upper() != "POST" or request.url.path not in CSRF_PROTECTED_PATHS:
            return await call_next(request)
        from tenantauth.service.runtime import get_runtime

        current = get_runtime().settings
        if not current.csrf_cookie_enforced:
            return await call_next(request)
        if extract_bearer(request.headers.get("Authorization")):
            return await call_next(request)
        header_token = request.headers.get(current.csrf_header_name)
        cookie_token = request.cookies.get(current.csrf_cookie_name)
        if not csrf_tokens_match(cookie_token, header_token):
            logger.warning(
                "csrf_check_failed",
                path=request.url.path,
                header_present=bool(header_token),
                cookie_present=bool(cookie_token),
            )
            return error_response(
                403, "forbidden", "missing or invalid CSRF token", ErrorCode.CSRF_MISMATCH
            )
        return await call_next(request)

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    @app.middleware("http")
    async def add_request_context(request: Request, call_next):
        """Tag logs with ``X-Request-ID`` (or a fresh id) and echo it back."""
        request_id = bind_request_context(
            request.headers.get("X-Request-ID"), method=request.method, path=request.url.path
        )
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    register_exception_handlers(app)
    app.include_router(router)
    app.include_router(wellknown_router)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        """Probe the user store, the cache and the control-plane root under a timeout."""
        from tenantauth.service.runtime import get_runtime

        runtime = get_runtime()
        checks: Dict[str, Dict[str, Any]] = {}

        async def _run_bounded(label: str, check) -> bool:
            try:
                await asyncio.wait_for(check(), HEALTH_CHECK_TIMEOUT_SECONDS)
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
                )
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        if runtime.store is not None:
            db_ok = await _run_bounded("database", lambda: asyncio.to_thread(runtime.store.ping))
            checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
        else:
            db_ok = True
            checks["database"] = {"status": "not_configured"}

        cache_ok = await _run_bounded("cache", runtime.cache.ping)
        checks["cache"] = {"status": "healthy" if cache_ok else "unhealthy"}

        data_root = Path(runtime.settings.data_root)

        def _fs_check() -> None:
            if not data_root.is_dir():
                raise FileNotFoundError(data_root)

        fs_ok = await _run_bounded("control_plane", lambda: asyncio.to_thread(_fs_check))
        checks["control_plane"] = {"status": "healthy" if fs_ok else "unhealthy"}

        healthy = db_ok and cache_ok and fs_ok
        return {
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()
