from __future__ import annotations

import logging
import os
import re
import uuid
from typing import Any, Dict, Iterable, Optional

import structlog

# Values under these keys are bearer material and are never partially shown.
_SECRET_KEYS = ("password", "secret", "token", "authorization", "code_verifier", "sid", "cookie")
_PII_KEYS = ("email",)

_TRUTHY = {"1", "true", "yes", "on"}


def bind_request_context(request_id: Optional[str] = None, **fields: Any) -> str:
    """Start a fresh per-request log context and return its request id.

    Everything bound here is merged into each event logged while the request runs.
    """
    rid = request_id or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=rid, **fields)
    return rid


def get_request_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get("request_id")


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Scrub credentials and mask addresses before rendering."""
    for key, value in list(event_dict.items()):
        if key == "event" or not isinstance(value, str):
            continue
        lower_key = key.lower()
        if any(marker in lower_key for marker in _SECRET_KEYS):
            event_dict[key] = "[redacted]"
        elif any(marker in lower_key for marker in _PII_KEYS) and len(value) > 4:
            event_dict[key] = value[:2] + "***" + value[-2:]
    return event_dict


def configure_logging(level: Optional[str] = None, *, json_output: Optional[bool] = None) -> None:
    """Install the structlog pipeline.

    Defaults come from ``LOG_LEVEL``, ``LOG_JSON`` and ``LOG_DEV_MODE``; dev mode
    forces the colored console renderer regardless of ``LOG_JSON``.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = os.getenv("LOG_JSON", "true").lower() in _TRUTHY
        if os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY:
            json_output = False

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level, logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_token_issued(
    grant_type: str,
    *,
    tenant: str,
    client_id: str,
    user_id: Optional[str] = None,
    scope: Iterable[str] = (),
    logger: Optional[Any] = None,
) -> None:
    """Audit line for every successful token response."""
    log = logger or get_logger("tenantauth.audit")
    fields: Dict[str, Any] = {
        "grant_type": grant_type,
        "tenant": tenant,
        "client_id": client_id,
        "scope": " ".join(scope),
    }
    if user_id:
        fields["user_id"] = user_id
    log.info("token_issued", **fields)


# Fragments that must not survive into logs or client-facing messages
_SENSITIVE_ERROR_PATTERNS = [
    r"(?i)(postgres(?:ql)?|redis|rediss)://[^\s]+",
    r"(?i)\b(bearer|basic)\s+[A-Za-z0-9._~+/=-]+",
    r"\$argon2(?:id|i|d)\$[^\s]+",
    r"(?i)(select|insert|update|delete)\s+.{0,50}",
    r"(?i)(password|secret|token|code_verifier)\s*[:=]\s*[^\s]+",
    r"(?i)/(?:home|var|etc|srv|tmp)/[^\s]+",
]

_SENSITIVE_PATTERNS_COMPILED = [re.compile(p) for p in _SENSITIVE_ERROR_PATTERNS]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]", limit: int = 300) -> str:
    """Strip DSNs, credentials, SQL and paths from an exception message."""
    if not error or not isinstance(error, str):
        return "unknown error"
    for pattern in _SENSITIVE_PATTERNS_COMPILED:
        error = pattern.sub(replacement, error)
    return error if len(error) <= limit else error[: limit - 3] + "..."
