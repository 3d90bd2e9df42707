from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from tenantauth.service.issuer import system_namespace

LOA_1 = "urn:tenantauth:loa:1"
LOA_2 = "urn:tenantauth:loa:2"

ADMIN_ROLE = "sys:admin"


def acr_for(amr: List[str]) -> str:
    return LOA_2 if "mfa" in amr else LOA_1


def parse_scope(raw: Optional[str]) -> List[str]:
    """Split a space separated scope string, dropping duplicates but keeping order."""
    seen: List[str] = []
    for item in (raw or "").split():
        if item not in seen:
            seen.append(item)
    return seen


@dataclass
class SystemClaims:
    """Roles and permissions published under the issuer's system namespace."""

    roles: List[str] = field(default_factory=list)
    perms: List[str] = field(default_factory=list)
    is_admin: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"roles": list(self.roles), "perms": list(self.perms)}
        if self.is_admin:
            data["is_admin"] = True
        return data

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "SystemClaims":
        raw = raw or {}
        return cls(
            roles=[str(r) for r in raw.get("roles") or []],
            perms=[str(p) for p in raw.get("perms") or []],
            is_admin=bool(raw.get("is_admin", False)),
        )

    @property
    def empty(self) -> bool:
        return not (self.roles or self.perms or self.is_admin)


@dataclass
class Claims:
    """Typed claim set for access and ID tokens.

    Built once per grant and rendered into JWT payloads; reserved claim names
    cannot be smuggled in through ``extra``.
    """

    sub: str
    tid: str
    iss: str
    aud: str
    scope: List[str] = field(default_factory=list)
    amr: List[str] = field(default_factory=lambda: ["pwd"])
    acr: Optional[str] = None
    nonce: Optional[str] = None
    system: SystemClaims = field(default_factory=SystemClaims)
    extra: Dict[str, Any] = field(default_factory=dict)

    RESERVED = frozenset(
        {"iss", "sub", "aud", "iat", "nbf", "exp", "jti", "tid", "scope", "amr", "acr", "nonce", "custom", "azp", "at_hash", "token_use"}
    )

    def __post_init__(self) -> None:
        for name in ("sub", "tid", "iss", "aud"):
            if not getattr(self, name):
                raise ValueError(f"claim {name!r} must not be empty")
        if any(not s or " " in s for s in self.scope):
            raise ValueError("scope entries must be non-empty and contain no spaces")
        if not self.amr:
            raise ValueError("amr must list at least one method")
        clash = self.RESERVED.intersection(self.extra)
        if clash:
            raise ValueError(f"extra claims shadow reserved names: {sorted(clash)}")
        if self.acr is None:
            self.acr = acr_for(self.amr)

    @property
    def scope_string(self) -> str:
        return " ".join(self.scope)

    @property
    def has_openid(self) -> bool:
        return "openid" in self.scope

    def _custom(self) -> Dict[str, Any]:
        if self.system.empty:
            return {}
        return {system_namespace(self.iss): self.system.to_dict()}

    def access_payload(self, *, iat: int, exp: int, jti: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "iss": self.iss,
            "sub": self.sub,
            "aud": self.aud,
            "iat": iat,
            "nbf": iat,
            "exp": exp,
            "jti": jti,
            "tid": self.tid,
            "scope": self.scope_string,
            "amr": list(self.amr),
            "acr": self.acr,
        }
        payload.update(self.extra)
        custom = self._custom()
        if custom:
            payload["custom"] = custom
        return payload

    def id_payload(self, *, iat: int, exp: int, at_hash: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "iss": self.iss,
            "sub": self.sub,
            "aud": self.aud,
            "azp": self.aud,
            "iat": iat,
            "nbf": iat,
            "exp": exp,
            "tid": self.tid,
            "at_hash": at_hash,
            "amr": list(self.amr),
            "acr": self.acr,
        }
        if self.nonce:
            payload["nonce"] = self.nonce
        return payload

    @classmethod
    def from_access_payload(cls, payload: Dict[str, Any]) -> "Claims":
        iss = str(payload.get("iss") or "")
        custom = payload.get("custom") or {}
        system = SystemClaims.from_dict(custom.get(system_namespace(iss)) if iss else None)
        aud = payload.get("aud")
        if isinstance(aud, list):
            aud = aud[0] if aud else ""
        return cls(
            sub=str(payload.get("sub") or ""),
            tid=str(payload.get("tid") or ""),
            iss=iss,
            aud=str(aud or ""),
            scope=parse_scope(payload.get("scope")),
            amr=[str(m) for m in payload.get("amr") or []] or ["pwd"],
            acr=payload.get("acr"),
            system=system,
        )
