from __future__ import annotations

import os
import re
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenantauth.logging import get_logger

logger = get_logger(__name__)

# Authorization codes must never outlive this bound, whatever the environment says.
MAX_AUTH_CODE_TTL_SECONDS = 60

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


class IssuerMode(str, Enum):
    """How the `iss` claim is derived for a tenant."""

    GLOBAL = "global"
    PATH = "path"
    DOMAIN = "domain"


class SameSitePolicy(str, Enum):
    LAX = "lax"
    STRICT = "strict"
    NONE = "none"


class SecureCookieMode(str, Enum):
    """Whether the session cookie carries `Secure`.

    - AUTO: derived per request from TLS or `X-Forwarded-Proto`
    - ALWAYS / NEVER: fixed regardless of the request
    """

    AUTO = "auto"
    ALWAYS = "true"
    NEVER = "false"


def parse_duration(value: Any) -> int:
    """Parse `600`, `"600s"`, `"10m"`, `"720h"` or `"30d"` into whole seconds."""

    if isinstance(value, bool):
        raise ValueError("duration must be a number of seconds or a suffixed string")
    if isinstance(value, (int, float)):
        seconds = int(value)
    else:
        match = _DURATION_RE.match(str(value))
        if not match:
            raise ValueError(f"invalid duration: {value!r}")
        seconds = int(match.group(1)) * _DURATION_UNITS[match.group(2).lower()]
    if seconds < 0:
        raise ValueError("duration must be non-negative")
    return seconds


def parse_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        items = list(value)
    else:
        items = str(value).split(",")
    return [str(item).strip() for item in items if str(item).strip()]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the token and session core."""

    # Issuer
    issuer_mode: IssuerMode = env_field(IssuerMode.PATH, "ISSUER_MODE")
    issuer_base: str = env_field("http://localhost:8080", "ISSUER_BASE")

    # Token lifetimes (seconds)
    access_token_ttl: int = env_field(600, "ACCESS_TOKEN_TTL")
    refresh_token_ttl: int = env_field(30 * 86400, "REFRESH_TOKEN_TTL")
    auth_code_ttl: int = env_field(
        MAX_AUTH_CODE_TTL_SECONDS,
        "AUTH_CODE_TTL",
        description="Authorization code lifetime; values above 60s are clamped",
    )
    token_deadline: float = env_field(
        3.0,
        "TOKEN_DEADLINE",
        description="Upper bound in seconds for a whole token exchange",
    )

    # CSRF
    csrf_cookie_name: str = env_field("csrf_token", "CSRF_COOKIE_NAME")
    csrf_header_name: str = env_field("X-CSRF-Token", "CSRF_HEADER_NAME")
    csrf_cookie_enforced: bool = env_field(True, "CSRF_COOKIE_ENFORCED")
    csrf_ttl: int = env_field(30 * 60, "CSRF_TTL")

    # Browser session
    session_cookie_name: str = env_field("sid", "SESSION_COOKIE_NAME")
    session_cookie_domain: str | None = env_field(None, "SESSION_COOKIE_DOMAIN")
    session_samesite: SameSitePolicy = env_field(SameSitePolicy.LAX, "SESSION_SAMESITE")
    session_secure: SecureCookieMode = env_field(SecureCookieMode.AUTO, "SESSION_SECURE")
    session_ttl: int = env_field(12 * 3600, "SESSION_TTL")
    session_idle_ttl: int = env_field(
        0,
        "SESSION_IDLE_TTL",
        description="Sliding idle expiry for sessions; 0 disables it",
    )
    redirect_host_allowlist: list[str] = env_field(
        [],
        "REDIRECT_HOST_ALLOWLIST",
        description="Comma separated hosts accepted as logout return_to targets",
    )

    # Control plane and storage
    data_root: str = env_field("/srv/tenantauth", "DATA_ROOT")
    database_url: str | None = env_field(None, "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic test behaviors and in-process fallbacks",
    )

    # Policy toggles
    fs_admin_enable: bool = env_field(
        False,
        "FS_ADMIN_ENABLE",
        description="Accept stateless admin refresh JWTs signed by the global key",
    )
    revoke_require_client_auth: bool = env_field(False, "REVOKE_REQUIRE_CLIENT_AUTH")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("issuer_mode", mode="before")
    @classmethod
    def _validate_issuer_mode(cls, value: Any) -> IssuerMode:
        if isinstance(value, str):
            value = value.strip().lower() or IssuerMode.PATH.value
        return IssuerMode(value)

    @field_validator("issuer_base")
    @classmethod
    def _strip_issuer_base(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value:
            raise ValueError("ISSUER_BASE must not be empty")
        return value

    @field_validator(
        "access_token_ttl",
        "refresh_token_ttl",
        "auth_code_ttl",
        "csrf_ttl",
        "session_ttl",
        "session_idle_ttl",
        mode="before",
    )
    @classmethod
    def _parse_durations(cls, value: Any) -> int:
        return parse_duration(value)

    @field_validator("auth_code_ttl")
    @classmethod
    def _clamp_auth_code_ttl(cls, value: int) -> int:
        if value <= 0:
            return MAX_AUTH_CODE_TTL_SECONDS
        if value > MAX_AUTH_CODE_TTL_SECONDS:
            logger.warning(
                "auth_code_ttl_clamped",
                requested=value,
                applied=MAX_AUTH_CODE_TTL_SECONDS,
            )
            return MAX_AUTH_CODE_TTL_SECONDS
        return value

    @field_validator("access_token_ttl", "refresh_token_ttl", "session_ttl")
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("lifetime must be positive")
        return value

    @field_validator("session_samesite", mode="before")
    @classmethod
    def _parse_samesite(cls, value: Any) -> SameSitePolicy:
        if isinstance(value, SameSitePolicy):
            return value
        raw = str(value or "").strip().lower()
        if not raw:
            return SameSitePolicy.LAX
        try:
            return SameSitePolicy(raw)
        except ValueError:
            logger.warning("session_samesite_unknown", value=raw, applied="lax")
            return SameSitePolicy.LAX

    @field_validator("session_secure", mode="before")
    @classmethod
    def _parse_secure(cls, value: Any) -> SecureCookieMode:
        if isinstance(value, SecureCookieMode):
            return value
        if isinstance(value, bool):
            return SecureCookieMode.ALWAYS if value else SecureCookieMode.NEVER
        raw = str(value or "").strip().lower()
        if raw in {"", "auto"}:
            return SecureCookieMode.AUTO
        if raw in {"1", "true", "yes", "on"}:
            return SecureCookieMode.ALWAYS
        if raw in {"0", "false", "no", "off"}:
            return SecureCookieMode.NEVER
        raise ValueError(f"invalid SESSION_SECURE value: {value!r}")

    @field_validator("session_cookie_domain", "database_url", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("redirect_host_allowlist", "cors_allow_origins", mode="before")
    @classmethod
    def _parse_lists(cls, value: Any) -> list[str]:
        return parse_csv(value)

    @field_validator("token_deadline")
    @classmethod
    def _validate_deadline(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("TOKEN_DEADLINE must be positive")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        if (
            _settings_cache.session_samesite == SameSitePolicy.NONE
            and _settings_cache.session_secure == SecureCookieMode.NEVER
        ):
            logger.warning(
                "session_samesite_none_without_secure",
                message="browsers reject SameSite=None cookies that are not Secure",
            )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
