from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

CLIENT_PUBLIC = "public"
CLIENT_CONFIDENTIAL = "confidential"

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"
GRANT_CLIENT_CREDENTIALS = "client_credentials"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class TenantSettings:
    issuer_mode: Optional[str] = None
    issuer_override: Optional[str] = None
    user_db_dsn: Optional[str] = None
    mfa_enabled: bool = False
    social_login_enabled: bool = False
    smtp_configured: bool = False
    brand: Dict[str, Any] = field(default_factory=dict)
    user_fields: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any] | None) -> "TenantSettings":
        raw = raw or {}
        user_db = raw.get("user_db") or {}
        return cls(
            issuer_mode=raw.get("issuer_mode") or None,
            issuer_override=raw.get("issuer_override") or None,
            user_db_dsn=user_db.get("dsn") or None,
            mfa_enabled=bool(raw.get("mfa_enabled", False)),
            social_login_enabled=bool(raw.get("social_login_enabled", False)),
            smtp_configured=bool(raw.get("smtp_configured", False)),
            brand=dict(raw.get("brand") or {}),
            user_fields=list(raw.get("user_fields") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "issuer_mode": self.issuer_mode,
            "issuer_override": self.issuer_override,
            "mfa_enabled": self.mfa_enabled,
            "social_login_enabled": self.social_login_enabled,
            "smtp_configured": self.smtp_configured,
            "brand": self.brand,
            "user_fields": self.user_fields,
        }
        if self.user_db_dsn:
            data["user_db"] = {"dsn": self.user_db_dsn}
        return data


@dataclass
class Tenant:
    id: str
    slug: str
    name: str = ""
    settings: TenantSettings = field(default_factory=TenantSettings)
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Tenant":
        return cls(
            id=str(raw["id"]),
            slug=str(raw["slug"]),
            name=str(raw.get("name") or raw["slug"]),
            settings=TenantSettings.from_dict(raw.get("settings")),
            created_at=_parse_dt(raw.get("created_at")) or utcnow(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "slug": self.slug,
            "name": self.name,
            "settings": self.settings.to_dict(),
            "created_at": _iso(self.created_at),
        }


@dataclass
class Client:
    id: str
    client_id: str
    tenant_id: str
    name: str = ""
    client_type: str = CLIENT_PUBLIC
    redirect_uris: List[str] = field(default_factory=list)
    post_logout_redirect_uris: List[str] = field(default_factory=list)
    scopes_allowed: List[str] = field(default_factory=list)
    grant_types: List[str] = field(default_factory=list)
    providers: List[str] = field(default_factory=lambda: ["password"])
    secret_hash: Optional[str] = None
    require_email_verification: bool = False
    reset_password_url: Optional[str] = None
    verify_email_url: Optional[str] = None

    def __post_init__(self) -> None:
        if self.client_type not in (CLIENT_PUBLIC, CLIENT_CONFIDENTIAL):
            raise ValueError(f"unknown client_type {self.client_type!r}")
        if not self.grant_types:
            self.grant_types = [GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN]
            if self.client_type == CLIENT_CONFIDENTIAL:
                self.grant_types.append(GRANT_CLIENT_CREDENTIALS)

    @property
    def is_public(self) -> bool:
        return self.client_type == CLIENT_PUBLIC

    @property
    def is_confidential(self) -> bool:
        return self.client_type == CLIENT_CONFIDENTIAL

    def allows_grant(self, grant_type: str) -> bool:
        return grant_type in self.grant_types

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], *, tenant_id: str | None = None) -> "Client":
        return cls(
            id=str(raw.get("id") or raw["client_id"]),
            client_id=str(raw["client_id"]),
            tenant_id=str(raw.get("tenant_id") or tenant_id or ""),
            name=str(raw.get("name") or raw["client_id"]),
            client_type=str(raw.get("client_type") or raw.get("type") or CLIENT_PUBLIC),
            redirect_uris=list(raw.get("redirect_uris") or []),
            post_logout_redirect_uris=list(raw.get("post_logout_redirect_uris") or []),
            scopes_allowed=list(raw.get("scopes_allowed") or raw.get("scopes") or []),
            grant_types=list(raw.get("grant_types") or []),
            providers=list(raw.get("providers") or ["password"]),
            secret_hash=raw.get("secret_hash") or None,
            require_email_verification=bool(raw.get("require_email_verification", False)),
            reset_password_url=raw.get("reset_password_url") or None,
            verify_email_url=raw.get("verify_email_url") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class User:
    id: str
    tenant_id: str
    email: str
    email_verified: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    disabled_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.disabled_at is None


@dataclass
class RefreshToken:
    """Persisted refresh token row. Only the hash of the raw token is kept."""

    id: str
    tenant_id: str
    client_id: str
    subject_id: str
    token_hash: str
    scope: List[str]
    issued_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    parent_id: Optional[str] = None

    @classmethod
    def new(
        cls,
        *,
        tenant_id: str,
        client_id: str,
        subject_id: str,
        token_hash: str,
        scope: List[str],
        ttl_seconds: int,
        parent_id: str | None = None,
    ) -> "RefreshToken":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            client_id=client_id,
            subject_id=subject_id,
            token_hash=token_hash,
            scope=list(scope),
            issued_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            parent_id=parent_id,
        )

    @property
    def revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_active(self, now: datetime | None = None) -> bool:
        return not self.revoked and not self.is_expired(now)


@dataclass
class AuthorizationCode:
    """Single-use authorization grant, serialized into the shared cache."""

    client_id: str
    tenant_id: str
    subject_id: str
    redirect_uri: str
    scope: List[str]
    issued_at: datetime
    expires_at: datetime
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    nonce: Optional[str] = None
    amr: List[str] = field(default_factory=lambda: ["pwd"])

    @classmethod
    def new(
        cls,
        *,
        client_id: str,
        tenant_id: str,
        subject_id: str,
        redirect_uri: str,
        scope: List[str],
        ttl_seconds: int,
        code_challenge: str | None = None,
        code_challenge_method: str | None = None,
        nonce: str | None = None,
        amr: List[str] | None = None,
    ) -> "AuthorizationCode":
        now = utcnow()
        return cls(
            client_id=client_id,
            tenant_id=tenant_id,
            subject_id=subject_id,
            redirect_uri=redirect_uri,
            scope=list(scope),
            issued_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            code_challenge=code_challenge or None,
            code_challenge_method=code_challenge_method or None,
            nonce=nonce or None,
            amr=list(amr or ["pwd"]),
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def to_payload(self) -> Dict[str, Any]:
        data = asdict(self)
        data["issued_at"] = _iso(self.issued_at)
        data["expires_at"] = _iso(self.expires_at)
        return data

    @classmethod
    def from_payload(cls, raw: Dict[str, Any]) -> "AuthorizationCode":
        return cls(
            client_id=str(raw["client_id"]),
            tenant_id=str(raw["tenant_id"]),
            subject_id=str(raw["subject_id"]),
            redirect_uri=str(raw["redirect_uri"]),
            scope=list(raw.get("scope") or []),
            issued_at=_parse_dt(raw["issued_at"]),
            expires_at=_parse_dt(raw["expires_at"]),
            code_challenge=raw.get("code_challenge"),
            code_challenge_method=raw.get("code_challenge_method"),
            nonce=raw.get("nonce"),
            amr=list(raw.get("amr") or ["pwd"]),
        )


@dataclass
class SessionRecord:
    """Server side half of a browser session, stored under ``sid:<hash>``."""

    subject_id: str
    tenant_id: str
    issued_at: datetime
    expires_at: datetime
    client_id: Optional[str] = None
    amr: List[str] = field(default_factory=lambda: ["pwd"])
    acr: Optional[str] = None
    idle_expires_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        *,
        subject_id: str,
        tenant_id: str,
        ttl_seconds: int,
        client_id: str | None = None,
        amr: List[str] | None = None,
        idle_ttl_seconds: int = 0,
    ) -> "SessionRecord":
        now = utcnow()
        return cls(
            subject_id=subject_id,
            tenant_id=tenant_id,
            issued_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            client_id=client_id,
            amr=list(amr or ["pwd"]),
            idle_expires_at=now + timedelta(seconds=idle_ttl_seconds) if idle_ttl_seconds else None,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        if now >= self.expires_at:
            return True
        return self.idle_expires_at is not None and now >= self.idle_expires_at

    def to_payload(self) -> Dict[str, Any]:
        data = asdict(self)
        data["issued_at"] = _iso(self.issued_at)
        data["expires_at"] = _iso(self.expires_at)
        data["idle_expires_at"] = _iso(self.idle_expires_at)
        return data

    @classmethod
    def from_payload(cls, raw: Dict[str, Any]) -> "SessionRecord":
        return cls(
            subject_id=str(raw["subject_id"]),
            tenant_id=str(raw["tenant_id"]),
            issued_at=_parse_dt(raw["issued_at"]),
            expires_at=_parse_dt(raw["expires_at"]),
            client_id=raw.get("client_id"),
            amr=list(raw.get("amr") or ["pwd"]),
            acr=raw.get("acr"),
            idle_expires_at=_parse_dt(raw.get("idle_expires_at")),
        )
