from __future__ import annotations

import hashlib
import logging
import os
import uuid
from typing import Any, MutableMapping, Optional

import structlog

_TRUTHY = {"1", "true", "yes", "on"}

# Substrings that mark a field as carrying a credential or an address
_SENSITIVE_PARTS = ("password", "secret", "token", "authorization", "email", "code")
_SAFE_KEYS = {"token_type", "token_types", "error_code", "status_code"}


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def _is_sensitive(key: str) -> bool:
    key = key.lower()
    if key in _SAFE_KEYS or key.endswith("_hash"):
        return False
    return any(part in key for part in _SENSITIVE_PARTS)


def _mask(value: Any) -> Any:
    if not isinstance(value, str) or len(value) <= 4:
        return value
    return f"{value[:2]}***{value[-2:]}"


def _scrub_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key, value in event_dict.items():
        if key != "event" and _is_sensitive(key):
            event_dict[key] = _mask(value)
    return event_dict


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a request correlation ID to every log line in the current context."""
    cid = correlation_id or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(correlation_id=cid)
    return cid


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    dev_mode: Optional[bool] = None,
) -> None:
    """Set up structlog output.

    Unset arguments fall back to ``LOG_LEVEL``, ``LOG_JSON`` and
    ``LOG_DEV_MODE``. Credential-looking fields are masked before rendering.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", "true")
    if dev_mode is None:
        dev_mode = _env_flag("LOG_DEV_MODE", "false")

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _scrub_secrets,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def email_fingerprint(email: str) -> str:
    """Stable, non-reversible handle for an address so logs can be correlated."""
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()[:16]
