from __future__ import annotations

import secrets
from typing import Callable, Optional

from tenantauth.logging import get_logger
from tenantauth.service.errors import ErrorCode, InternalError
from tenantauth.service.tokens import constant_time_equals

logger = get_logger(__name__)

CSRF_TOKEN_BYTES = 32


def new_csrf_token(entropy: Callable[[int], bytes] = secrets.token_bytes) -> str:
    """32 random bytes as hex. Any entropy failure aborts the request."""
    try:
        raw = entropy(CSRF_TOKEN_BYTES)
    except Exception as exc:
        logger.error("csrf_entropy_failed", error_type=type(exc).__name__)
        raise InternalError("could not generate csrf token", code=ErrorCode.ENTROPY_UNAVAILABLE) from exc
    if not raw or len(raw) != CSRF_TOKEN_BYTES:
        logger.error("csrf_entropy_short", length=len(raw or b""))
        raise InternalError("could not generate csrf token", code=ErrorCode.ENTROPY_UNAVAILABLE)
    return raw.hex()


def csrf_tokens_match(cookie_value: Optional[str], header_value: Optional[str]) -> bool:
    """Double-submit check: both present, non-empty and equal."""
    if not cookie_value or not header_value:
        return False
    return constant_time_equals(cookie_value.strip(), header_value.strip())
