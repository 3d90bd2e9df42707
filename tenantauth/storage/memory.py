from __future__ import annotations

import json
import os
import tempfile
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation, RotationConflict, check_deadline
from tenantauth.storage.models import RefreshToken, User, utcnow


class MemoryStore:
    """In-process user and refresh-token store.

    Backs development runs, tests and ``memory://`` tenant databases. All
    reads and writes go through one re-entrant lock, which also makes
    ``rotate_refresh_token`` atomic. When ``state_path`` is given the state is
    written to disk after every mutation and reloaded on construction.
    """

    def __init__(self, state_path: str | Path | None = None, *, name: str = "global") -> None:
        self.logger = get_logger(__name__)
        self.name = name
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self._refresh_by_hash: Dict[str, str] = {}
        self.user_roles: Dict[str, Set[str]] = {}
        self.role_permissions: Dict[str, Set[str]] = {}
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        if self.state_path:
            self._load_state()

    # -- users ---------------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        tenant_id: str,
        email_verified: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(
                u.tenant_id == tenant_id and u.email == normalized for u in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            uid = user_id or str(uuid.uuid4())
            if uid in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            user = User(
                id=uid,
                tenant_id=tenant_id,
                email=normalized,
                email_verified=email_verified,
                metadata=dict(metadata or {}),
            )
            self.users[uid] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, tenant_id: str, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.tenant_id == tenant_id and u.email == normalized
                ),
                None,
            )

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- RBAC ----------------------------------------------------------------

    def assign_role(self, user_id: str, role: str) -> None:
        with self._data_lock:
            self.user_roles.setdefault(user_id, set()).add(role)
            self._persist_state()

    def grant_permission(self, role: str, permission: str) -> None:
        with self._data_lock:
            self.role_permissions.setdefault(role, set()).add(permission)
            self._persist_state()

    def get_user_roles(self, user_id: str) -> List[str]:
        with self._data_lock:
            return sorted(self.user_roles.get(user_id, set()))

    def get_user_permissions(self, user_id: str) -> List[str]:
        with self._data_lock:
            perms: Set[str] = set()
            for role in self.user_roles.get(user_id, set()):
                perms.update(self.role_permissions.get(role, set()))
            return sorted(perms)

    # -- refresh tokens ------------------------------------------------------

    def create_refresh_token(
        self, token: RefreshToken, *, deadline: Optional[float] = None
    ) -> RefreshToken:
        with self._data_lock:
            check_deadline(deadline)
            self._insert_refresh_token(token)
            self._persist_state()
            return replace(token)

    def _insert_refresh_token(self, token: RefreshToken) -> None:
        if token.token_hash in self._refresh_by_hash:
            raise ConstraintViolation("refresh token hash collision", {"field": "token_hash"})
        if token.id in self.refresh_tokens:
            raise ConstraintViolation("refresh token id already exists", {"field": "id"})
        stored = replace(token, scope=list(token.scope))
        self.refresh_tokens[stored.id] = stored
        self._refresh_by_hash[stored.token_hash] = stored.id

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token_id = self._refresh_by_hash.get(token_hash)
            if token_id is None:
                return None
            # Callers get a snapshot; later revocations do not mutate it.
            return replace(self.refresh_tokens[token_id])

    def revoke_refresh_token(self, token_id: str) -> None:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if token is None or token.revoked_at is not None:
                return
            token.revoked_at = utcnow()
            self._persist_state()

    def revoke_all_refresh_tokens(self, subject_id: str, client_id: Optional[str] = None) -> int:
        now = utcnow()
        revoked = 0
        with self._data_lock:
            for token in self.refresh_tokens.values():
                if token.subject_id != subject_id or token.revoked_at is not None:
                    continue
                if client_id and token.client_id != client_id:
                    continue
                token.revoked_at = now
                revoked += 1
            if revoked:
                self._persist_state()
        return revoked

    def rotate_refresh_token(
        self, old_hash: str, new_token: RefreshToken, *, deadline: Optional[float] = None
    ) -> RefreshToken:
        """Revoke the active token at ``old_hash`` and insert ``new_token`` as its child.

        Nothing changes when ``deadline`` has passed by the time the lock is held.
        """
        with self._data_lock:
            check_deadline(deadline)
            old_id = self._refresh_by_hash.get(old_hash)
            if old_id is None:
                raise RotationConflict("refresh token not found")
            old = self.refresh_tokens[old_id]
            now = utcnow()
            if old.revoked_at is not None:
                raise RotationConflict("refresh token already revoked", replace(old))
            if old.is_expired(now):
                raise RotationConflict("refresh token expired", replace(old))
            child = replace(new_token, parent_id=old.id)
            self._insert_refresh_token(child)
            old.revoked_at = now
            self._persist_state()
            return replace(child)

    def has_child_refresh_token(self, token_id: str) -> bool:
        with self._data_lock:
            return any(t.parent_id == token_id for t in self.refresh_tokens.values())

    def list_refresh_tokens(
        self, subject_id: str, client_id: Optional[str] = None
    ) -> List[RefreshToken]:
        with self._data_lock:
            return sorted(
                (
                    replace(t)
                    for t in self.refresh_tokens.values()
                    if t.subject_id == subject_id and (not client_id or t.client_id == client_id)
                ),
                key=lambda t: t.issued_at,
            )

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None

    # -- persistence ---------------------------------------------------------

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        if not self.state_path:
            return
        state = {
            "users": [
                {
                    "id": u.id,
                    "tenant_id": u.tenant_id,
                    "email": u.email,
                    "email_verified": u.email_verified,
                    "metadata": u.metadata,
                    "created_at": self._serialize_datetime(u.created_at),
                    "disabled_at": self._serialize_datetime(u.disabled_at),
                }
                for u in self.users.values()
            ],
            "credentials": {uid: list(rec) for uid, rec in self.credentials.items()},
            "refresh_tokens": [
                {
                    "id": t.id,
                    "tenant_id": t.tenant_id,
                    "client_id": t.client_id,
                    "subject_id": t.subject_id,
                    "token_hash": t.token_hash,
                    "scope": t.scope,
                    "issued_at": self._serialize_datetime(t.issued_at),
                    "expires_at": self._serialize_datetime(t.expires_at),
                    "revoked_at": self._serialize_datetime(t.revoked_at),
                    "parent_id": t.parent_id,
                }
                for t in self.refresh_tokens.values()
            ],
            "user_roles": {uid: sorted(roles) for uid, roles in self.user_roles.items()},
            "role_permissions": {
                role: sorted(perms) for role, perms in self.role_permissions.items()
            },
        }
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.state_path.parent), prefix=".memory_store_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(state, handle)
            os.replace(tmp_path, self.state_path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _load_state(self) -> bool:
        if not self.state_path or not self.state_path.exists():
            return False
        try:
            state = json.loads(self.state_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.error("memory_store_load_failed", error=str(exc), store=self.name)
            return False
        for raw in state.get("users", []):
            user = User(
                id=raw["id"],
                tenant_id=raw["tenant_id"],
                email=raw["email"],
                email_verified=bool(raw.get("email_verified")),
                metadata=raw.get("metadata") or {},
                created_at=self._deserialize_datetime(raw.get("created_at")) or utcnow(),
                disabled_at=self._deserialize_datetime(raw.get("disabled_at")),
            )
            self.users[user.id] = user
        self.credentials = {
            uid: (rec[0], rec[1]) for uid, rec in (state.get("credentials") or {}).items()
        }
        for raw in state.get("refresh_tokens", []):
            token = RefreshToken(
                id=raw["id"],
                tenant_id=raw["tenant_id"],
                client_id=raw["client_id"],
                subject_id=raw["subject_id"],
                token_hash=raw["token_hash"],
                scope=list(raw.get("scope") or []),
                issued_at=self._deserialize_datetime(raw["issued_at"]),
                expires_at=self._deserialize_datetime(raw["expires_at"]),
                revoked_at=self._deserialize_datetime(raw.get("revoked_at")),
                parent_id=raw.get("parent_id"),
            )
            self.refresh_tokens[token.id] = token
            self._refresh_by_hash[token.token_hash] = token.id
        self.user_roles = {uid: set(r) for uid, r in (state.get("user_roles") or {}).items()}
        self.role_permissions = {
            role: set(p) for role, p in (state.get("role_permissions") or {}).items()
        }
        return True
