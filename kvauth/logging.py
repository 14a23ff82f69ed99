"""structlog setup shared by every kvauth module.

Each request carries a correlation id (``X-Request-ID`` or a fresh UUID) that
is stamped on every log line and echoed in the response envelope. Values
under credential-like keys are never written out; email addresses keep
only their first character and domain.
"""

from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Values under these keys are dropped outright
_CREDENTIAL_SUBSTRINGS = ("token", "secret", "password", "authorization", "cookie")
_OAUTH_PARAMETER_KEYS = frozenset({"code", "state"})
_REDACTED = "[redacted]"


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation id for the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def bind_request_context(correlation_id: Optional[str] = None, **fields: Any) -> str:
    """Start a fresh log context for one request.

    ``fields`` (method, path, ...) ride along on every entry logged while the
    request is handled.
    """
    structlog.contextvars.clear_contextvars()
    cid = set_correlation_id(correlation_id)
    structlog.contextvars.bind_contextvars(**fields)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return _REDACTED
    return f"{local[:1]}***@{domain}"


def _is_credential_key(key: str) -> bool:
    lower_key = key.lower()
    if lower_key in _OAUTH_PARAMETER_KEYS:
        return True
    return any(part in lower_key for part in _CREDENTIAL_SUBSTRINGS)


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if key == "event" or value is None:
            continue
        if _is_credential_key(key):
            event_dict[key] = _REDACTED
        elif "email" in key.lower() and isinstance(value, str):
            event_dict[key] = mask_email(value)
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: one JSON object per line when true
        development_mode: colourised console output, overrides json_output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
