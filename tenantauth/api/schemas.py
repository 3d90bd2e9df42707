from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Upper bounds for JSON string fields; the body size limits already cap totals
MAX_EMAIL_LENGTH = 320
MAX_PASSWORD_LENGTH = 1024
MAX_ID_LENGTH = 256


class ErrorBody(BaseModel):
    error: str
    error_description: str
    code: int


class CsrfResponse(BaseModel):
    csrf_token: str


class SessionLoginRequest(BaseModel):
    """Body of ``POST /v1/session/login``; one of tenant_id or client_id is required."""

    model_config = ConfigDict(extra="ignore")

    tenant_id: Optional[str] = Field(default=None, max_length=MAX_ID_LENGTH)
    client_id: Optional[str] = Field(default=None, max_length=MAX_ID_LENGTH)
    email: str = Field(min_length=3, max_length=MAX_EMAIL_LENGTH)
    password: str = Field(min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        value = value.strip().lower()
        if "@" not in value:
            raise ValueError("invalid email address")
        return value

    @field_validator("tenant_id", "client_id")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value.strip() if value else value


class LogoutAllRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: Optional[str] = Field(default=None, max_length=MAX_ID_LENGTH)
    client_id: Optional[str] = Field(default=None, max_length=MAX_ID_LENGTH)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    scope: Optional[str] = None
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None


class IntrospectionResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    active: bool
    token_type: Optional[str] = None
    sub: Optional[str] = None
    client_id: Optional[str] = None
    scope: Optional[str] = None
    exp: Optional[int] = None
    iat: Optional[int] = None
    tid: Optional[str] = None
    iss: Optional[str] = None
    amr: Optional[List[str]] = None
    acr: Optional[str] = None


class JWKSResponse(BaseModel):
    keys: List[dict]


class OpenIDConfiguration(BaseModel):
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    revocation_endpoint: str
    introspection_endpoint: str
    jwks_uri: str
    response_types_supported: List[str] = ["code"]
    grant_types_supported: List[str] = [
        "authorization_code",
        "refresh_token",
        "client_credentials",
    ]
    subject_types_supported: List[str] = ["public"]
    id_token_signing_alg_values_supported: List[str] = ["EdDSA"]
    code_challenge_methods_supported: List[str] = ["S256"]
    token_endpoint_auth_methods_supported: List[str] = [
        "client_secret_basic",
        "client_secret_post",
        "none",
    ]
    scopes_supported: List[str] = ["openid", "profile", "email", "offline_access"]
