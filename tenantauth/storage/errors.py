from __future__ import annotations

import time
from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class RotationConflict(Exception):
    """The refresh token being rotated is no longer active.

    Raised when another rotation won the race, or the row was revoked, expired
    or never existed. ``token`` carries the row when one was found.
    """

    def __init__(self, message: str, token: Any = None):
        super().__init__(message)
        self.message = message
        self.token = token


class DeadlineExceeded(Exception):
    """The caller's deadline passed before a write could commit; nothing was written."""


def check_deadline(deadline: Optional[float]) -> Optional[int]:
    """Milliseconds left before ``deadline`` (a ``time.monotonic()`` value).

    Raises ``DeadlineExceeded`` once it has passed; ``None`` means unbounded.
    """
    if deadline is None:
        return None
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise DeadlineExceeded("deadline exceeded before write")
    return max(int(remaining * 1000), 1)


class TenantDBMissing(Exception):
    """The tenant exists but has no user database configured."""

    def __init__(self, slug: str):
        super().__init__(f"no database configured for tenant {slug!r}")
        self.slug = slug


class TenantNotFound(Exception):
    """No tenant is registered under the requested slug."""

    def __init__(self, slug: str):
        super().__init__(f"unknown tenant {slug!r}")
        self.slug = slug


__all__ = [
    "ConstraintViolation",
    "DeadlineExceeded",
    "RotationConflict",
    "TenantDBMissing",
    "TenantNotFound",
    "check_deadline",
]
