from __future__ import annotations

import base64
import hashlib
import hmac
import secrets


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def sha256_b64url(raw: str) -> str:
    """Hash an opaque secret for storage or cache keys.

    base64url without padding of SHA-256 over the UTF-8 bytes. Every stored
    refresh token, session id and authorization code key goes through here,
    so equal inputs always produce equal keys across processes.
    """
    return b64url(hashlib.sha256(raw.encode("utf-8")).digest())


def generate_opaque_token(nbytes: int = 32) -> str:
    """Random URL-safe token; raises if the OS entropy source fails."""
    return b64url(secrets.token_bytes(nbytes))


def pkce_s256(verifier: str) -> str:
    return sha256_b64url(verifier)


def verify_pkce(verifier: str, challenge: str, method: str | None = "S256") -> bool:
    """Check an RFC 7636 verifier. Only S256 is accepted."""
    if (method or "S256") != "S256":
        return False
    if not verifier or not challenge:
        return False
    return hmac.compare_digest(pkce_s256(verifier), challenge)


def at_hash(access_token: str) -> str:
    """OIDC ``at_hash``: left half of SHA-256 over the access token."""
    digest = hashlib.sha256(access_token.encode("ascii")).digest()
    return b64url(digest[: len(digest) // 2])


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
