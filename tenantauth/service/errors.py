from __future__ import annotations

from enum import IntEnum
from typing import Optional


class ErrorCode(IntEnum):
    """Stable numeric codes carried in every error body.

    Codes are grouped by the OAuth error kind they accompany; once published a
    value is never reused for a different condition.
    """

    # invalid_request
    MALFORMED_REQUEST = 1001
    BODY_TOO_LARGE = 1002
    UNSUPPORTED_MEDIA_TYPE = 1003
    MISSING_PARAMETER = 1004
    MISSING_CODE_VERIFIER = 1005
    MISSING_TOKEN = 1006
    UNKNOWN_TENANT = 1007
    INVALID_REDIRECT_URI = 1008
    UNSUPPORTED_RESPONSE_TYPE = 1009
    PKCE_REQUIRED = 1010
    # invalid_grant
    CODE_NOT_FOUND = 1101
    CODE_CLIENT_MISMATCH = 1102
    REDIRECT_URI_MISMATCH = 1103
    PKCE_MISMATCH = 1104
    USER_NOT_FOUND = 1105
    REFRESH_NOT_FOUND = 1106
    REFRESH_EXPIRED = 1107
    REFRESH_REVOKED = 1108
    REFRESH_CLIENT_MISMATCH = 1109
    REFRESH_REUSED = 1110
    ADMIN_REFRESH_INVALID = 1111
    # invalid_client
    CLIENT_NOT_FOUND = 1201
    CLIENT_AUTH_FAILED = 1202
    # invalid_scope
    SCOPE_NOT_ALLOWED = 1301
    SCOPE_WIDENED = 1302
    # unauthorized_client / unsupported_grant_type
    GRANT_NOT_ALLOWED = 1401
    CLIENT_NOT_CONFIDENTIAL = 1402
    UNSUPPORTED_GRANT = 1403
    # session / credentials
    INVALID_CREDENTIALS = 1501
    CSRF_MISMATCH = 1502
    LOGIN_REQUIRED = 1503
    BEARER_REQUIRED = 1504
    FORBIDDEN_SUBJECT = 1505
    # infrastructure
    TENANT_DB_MISSING = 1601
    TENANT_DB_UNAVAILABLE = 1602
    SESSION_STORE_UNAVAILABLE = 1603
    ENTROPY_UNAVAILABLE = 1604
    DEADLINE_EXCEEDED = 1605
    SIGNING_FAILED = 1606
    STORE_FAILURE = 1607
    NOT_SUPPORTED = 1701
    CONFLICT = 1801
    INTERNAL = 1999


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins the HTTP ``status_code`` and the OAuth ``error`` kind;
    ``code`` is the stable numeric identifier of the precise condition. The
    message becomes ``error_description`` and must never echo secrets.
    """

    status_code: int = 400
    error: str = "invalid_request"
    code: int = ErrorCode.MALFORMED_REQUEST

    def __init__(
        self,
        message: str,
        *,
        code: Optional[int] = None,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = int(code)
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail or {}


class InvalidRequestError(ServiceError):
    status_code = 400
    error = "invalid_request"
    code = ErrorCode.MALFORMED_REQUEST


class InvalidGrantError(ServiceError):
    status_code = 400
    error = "invalid_grant"
    code = ErrorCode.CODE_NOT_FOUND


class InvalidClientError(ServiceError):
    status_code = 401
    error = "invalid_client"
    code = ErrorCode.CLIENT_AUTH_FAILED


class InvalidScopeError(ServiceError):
    status_code = 400
    error = "invalid_scope"
    code = ErrorCode.SCOPE_NOT_ALLOWED


class UnauthorizedClientError(ServiceError):
    status_code = 400
    error = "unauthorized_client"
    code = ErrorCode.GRANT_NOT_ALLOWED


class UnsupportedGrantTypeError(ServiceError):
    status_code = 400
    error = "unsupported_grant_type"
    code = ErrorCode.UNSUPPORTED_GRANT


class InvalidCredentialsError(ServiceError):
    """Login failed; never says which half of the credential was wrong."""

    status_code = 401
    error = "invalid_credentials"
    code = ErrorCode.INVALID_CREDENTIALS


class UnauthorizedError(ServiceError):
    status_code = 401
    error = "unauthorized"
    code = ErrorCode.BEARER_REQUIRED


class ForbiddenError(ServiceError):
    status_code = 403
    error = "forbidden"
    code = ErrorCode.CSRF_MISMATCH


class ConflictError(ServiceError):
    status_code = 409
    error = "conflict"
    code = ErrorCode.CONFLICT


class TenantDBMissingError(ServiceError):
    """The tenant has no usable database and no fallback was permitted (503)."""

    status_code = 503
    error = "tenant_db_missing"
    code = ErrorCode.TENANT_DB_MISSING


class InternalError(ServiceError):
    status_code = 500
    error = "internal"
    code = ErrorCode.INTERNAL


class SessionStoreUnavailableError(InternalError):
    """Writing a session to the cache failed."""

    code = ErrorCode.SESSION_STORE_UNAVAILABLE


class NotSupportedError(ServiceError):
    status_code = 501
    error = "not_supported"
    code = ErrorCode.NOT_SUPPORTED


__all__ = [
    "ErrorCode",
    "ServiceError",
    "InvalidRequestError",
    "InvalidGrantError",
    "InvalidClientError",
    "InvalidScopeError",
    "UnauthorizedClientError",
    "UnsupportedGrantTypeError",
    "InvalidCredentialsError",
    "UnauthorizedError",
    "ForbiddenError",
    "ConflictError",
    "TenantDBMissingError",
    "InternalError",
    "SessionStoreUnavailableError",
    "NotSupportedError",
]
