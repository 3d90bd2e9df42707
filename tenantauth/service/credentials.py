from __future__ import annotations

import base64
import binascii
from typing import Optional, Tuple
from urllib.parse import unquote

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantauth.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"

_hasher = PasswordHasher(type=Type.ID)

# Verified against when the account does not exist, so lookups of unknown
# emails cost the same as a wrong password.
_DUMMY_HASH = _hasher.hash("tenantauth-timing-equalizer")


def hash_secret(secret: str) -> Tuple[str, str]:
    """Hash a password or client secret; returns ``(digest, algo)``."""
    return _hasher.hash(secret), PASSWORD_ALGO


def verify_secret(stored_hash: Optional[str], secret: str, *, algo: str = PASSWORD_ALGO) -> bool:
    if not stored_hash:
        burn_verification(secret)
        return False
    if algo != PASSWORD_ALGO:
        logger.warning("secret_algo_mismatch", algo=algo)
        return False
    try:
        return _hasher.verify(stored_hash, secret)
    except (InvalidHash, VerifyMismatchError, VerificationError):
        return False


def burn_verification(secret: str) -> None:
    try:
        _hasher.verify(_DUMMY_HASH, secret)
    except (InvalidHash, VerifyMismatchError, VerificationError):
        pass


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


def parse_basic_auth(header: Optional[str]) -> Optional[Tuple[str, str]]:
    """Decode ``Authorization: Basic`` into ``(client_id, secret)``.

    Components are form-urlencoded per RFC 6749 §2.3.1. Malformed headers
    return ``None`` and are treated like absent credentials by callers that
    then fail client authentication.
    """
    if not header or not header.lower().startswith("basic "):
        return None
    encoded = header.split(" ", 1)[1].strip()
    try:
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    if ":" not in decoded:
        return None
    client_id, secret = decoded.split(":", 1)
    return unquote(client_id), unquote(secret)
