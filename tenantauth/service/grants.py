from __future__ import annotations

import json
from typing import Any, Optional

from tenantauth.logging import get_logger
from tenantauth.service.errors import ErrorCode, InternalError
from tenantauth.service.tokens import generate_opaque_token, sha256_b64url
from tenantauth.storage.models import AuthorizationCode, utcnow
from tenantauth.storage.redis_cache import ttl_seconds

logger = get_logger(__name__)

CODE_KEY_PREFIX = "oidc:code:"
MAX_PUT_ATTEMPTS = 3


def code_key(raw_code: str) -> str:
    return CODE_KEY_PREFIX + sha256_b64url(raw_code)


class AuthCodeStore:
    """Single-use authorization codes kept in the shared cache.

    Only the hash of the raw code is used as key. ``consume`` relies on the
    cache's atomic get-and-delete, so of any number of concurrent callers
    exactly one receives the record.
    """

    def __init__(self, cache: Any) -> None:
        self.cache = cache

    async def put(self, code: AuthorizationCode) -> str:
        payload = json.dumps(code.to_payload())
        for _ in range(MAX_PUT_ATTEMPTS):
            raw = generate_opaque_token(32)
            try:
                written = await self.cache.set_nx(
                    code_key(raw), payload, ttl_seconds(code.expires_at)
                )
            except Exception as exc:
                logger.error("auth_code_store_failed", error=str(exc), client_id=code.client_id)
                raise InternalError(
                    "authorization code could not be stored", code=ErrorCode.STORE_FAILURE
                ) from exc
            if written:
                return raw
            logger.warning("auth_code_key_collision", client_id=code.client_id)
        raise InternalError("authorization code could not be stored", code=ErrorCode.STORE_FAILURE)

    async def consume(self, raw_code: str) -> Optional[AuthorizationCode]:
        if not raw_code:
            return None
        try:
            cached = await self.cache.pop(code_key(raw_code))
        except Exception as exc:
            logger.error("auth_code_consume_failed", error=str(exc))
            raise InternalError(
                "authorization code store unavailable", code=ErrorCode.STORE_FAILURE
            ) from exc
        if cached is None:
            return None
        try:
            code = AuthorizationCode.from_payload(json.loads(cached))
        except (json.JSONDecodeError, TypeError, KeyError, ValueError):
            logger.warning("auth_code_payload_corrupt")
            return None
        if code.is_expired(utcnow()):
            return None
        return code
