from __future__ import annotations

import hashlib
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from tenantauth.logging import get_logger
from tenantauth.service.tokens import b64url
from tenantauth.storage.controlplane import is_valid_slug

logger = get_logger(__name__)

ALGORITHM = "EdDSA"
GLOBAL_SCOPE = "global"
KEY_FILENAME = "ed25519.pem"


@dataclass
class SigningKey:
    kid: str
    scope: str
    private_key: Ed25519PrivateKey

    @property
    def public_key(self) -> Ed25519PublicKey:
        return self.private_key.public_key()

    def public_jwk(self) -> Dict[str, str]:
        raw = self.public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return {
            "kty": "OKP",
            "crv": "Ed25519",
            "x": b64url(raw),
            "kid": self.kid,
            "alg": ALGORITHM,
            "use": "sig",
        }


def _kid_for(public_key: Ed25519PublicKey) -> str:
    raw = public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return b64url(hashlib.sha256(raw).digest())[:16]


class KeyStore:
    """Ed25519 signing keys persisted under ``<data_root>/keys/<scope>/``.

    ``scope`` is ``global`` or a tenant slug. Missing keys are generated on
    first use and written atomically with 0600 permissions.
    """

    def __init__(self, data_root: str | Path) -> None:
        self.keys_dir = Path(data_root) / "keys"
        self._by_scope: Dict[str, SigningKey] = {}
        self._by_kid: Dict[str, SigningKey] = {}
        self._lock = threading.Lock()

    def _key_path(self, scope: str) -> Path:
        if scope != GLOBAL_SCOPE and not is_valid_slug(scope):
            raise ValueError(f"invalid key scope {scope!r}")
        return self.keys_dir / scope / KEY_FILENAME

    def _remember(self, key: SigningKey) -> SigningKey:
        self._by_scope[key.scope] = key
        self._by_kid[key.kid] = key
        return key

    def _load(self, scope: str) -> Optional[SigningKey]:
        path = self._key_path(scope)
        if not path.is_file() or path.is_symlink():
            return None
        private_key = serialization.load_pem_private_key(path.read_bytes(), password=None)
        if not isinstance(private_key, Ed25519PrivateKey):
            raise RuntimeError(f"signing key for {scope!r} is not Ed25519")
        return SigningKey(kid=_kid_for(private_key.public_key()), scope=scope, private_key=private_key)

    def _generate(self, scope: str) -> SigningKey:
        path = self._key_path(scope)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.chmod(path.parent, 0o700)
        except PermissionError:
            pass
        private_key = Ed25519PrivateKey.generate()
        pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".key_", suffix=".tmp")
        try:
            try:
                os.write(fd, pem)
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.replace(tmp_path, path)
        except Exception as exc:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("signing_key_persist_failed", scope=scope, error=str(exc))
            raise RuntimeError(
                "Unable to persist signing key; make DATA_ROOT writable"
            ) from exc
        key = SigningKey(kid=_kid_for(private_key.public_key()), scope=scope, private_key=private_key)
        logger.info("signing_key_generated", scope=scope, kid=key.kid)
        return key

    def active(self, scope: str = GLOBAL_SCOPE) -> SigningKey:
        with self._lock:
            key = self._by_scope.get(scope)
            if key is not None:
                return key
            key = self._load(scope) or self._generate(scope)
            return self._remember(key)

    def by_kid(self, kid: str) -> Optional[SigningKey]:
        with self._lock:
            key = self._by_kid.get(kid)
            if key is not None:
                return key
            if not self.keys_dir.is_dir():
                return None
            for entry in self.keys_dir.iterdir():
                if entry.name in self._by_scope or not entry.is_dir():
                    continue
                try:
                    loaded = self._load(entry.name)
                except (ValueError, RuntimeError) as exc:
                    logger.warning("signing_key_unreadable", scope=entry.name, error=str(exc))
                    continue
                if loaded is not None:
                    self._remember(loaded)
            return self._by_kid.get(kid)


class Signer:
    """Signs and verifies JWTs with per-tenant Ed25519 keys."""

    def __init__(self, keystore: KeyStore, *, leeway: int = 30) -> None:
        self.keystore = keystore
        self.leeway = leeway

    def sign(self, payload: Dict[str, Any], *, scope: str = GLOBAL_SCOPE) -> str:
        key = self.keystore.active(scope)
        return jwt.encode(
            payload,
            key.private_key,
            algorithm=ALGORITHM,
            headers={"kid": key.kid, "typ": "JWT"},
        )

    def verify(
        self,
        token: str,
        *,
        audience: Optional[str] = None,
        scope: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Verify signature, lifetime and (optionally) audience and key scope.

        Raises ``jwt.InvalidTokenError`` for anything that is not a valid token.
        """
        header = jwt.get_unverified_header(token)
        if header.get("alg") != ALGORITHM:
            raise jwt.InvalidAlgorithmError("unexpected algorithm")
        kid = header.get("kid")
        if not kid:
            raise jwt.InvalidTokenError("missing kid")
        key = self.keystore.by_kid(str(kid))
        if key is None:
            raise jwt.InvalidTokenError("unknown kid")
        if scope is not None and key.scope != scope:
            raise jwt.InvalidTokenError("token signed by a different key scope")
        options = {"require": ["exp", "iat", "iss", "sub"], "verify_aud": audience is not None}
        claims = jwt.decode(
            token,
            key.public_key,
            algorithms=[ALGORITHM],
            audience=audience,
            options=options,
            leeway=self.leeway,
        )
        claims["_key_scope"] = key.scope
        return claims

    def jwks(self, scope: str = GLOBAL_SCOPE) -> Dict[str, List[Dict[str, str]]]:
        return {"keys": [self.keystore.active(scope).public_jwk()]}
