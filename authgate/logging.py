from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request ID of the request being served, attached to every log entry
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Fields whose value is a credential; never logged in any form
_CREDENTIAL_KEYS = frozenset({
    "password",
    "password_hash",
    "jwt_secret",
    "authorization",
    "access_token",
    "refresh_token",
    "token",
})

# Fields that identify a person; only the domain survives
_IDENTITY_KEYS = frozenset({"email"})

# Exception text from the codec or the revocation store can embed these
_FREE_TEXT_PATTERNS = [
    (re.compile(r"eyJ[\w-]*\.[\w-]+\.[\w-]+"), "[jwt]"),
    (re.compile(r"(?i)bearer\s+\S+"), "Bearer [redacted]"),
    (re.compile(r"(rediss?://[^:/@\s]*:)[^@\s]+@"), r"\1***@"),
]


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add correlation_id to all log entries."""
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask_email(value: str) -> str:
    local, sep, domain = value.rpartition("@")
    if not sep or not local:
        return "***"
    return f"{local[0]}***@{domain}"


def scrub_text(text: str) -> str:
    """Remove bearer credentials, JWTs and store passwords from free text."""
    for pattern, replacement in _FREE_TEXT_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop credentials, mask emails and scrub token material from other strings.

    Keys match exactly, so identifiers such as ``token_id`` and ``subject_id``
    stay readable for correlating a session across entries.
    """
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key in _CREDENTIAL_KEYS:
            event_dict[key] = "[redacted]"
        elif lower_key in _IDENTITY_KEYS and isinstance(value, str):
            event_dict[key] = _mask_email(value)
        elif isinstance(value, str) and key != "event":
            event_dict[key] = scrub_text(value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors and renderer.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
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


# Initialize logging on module import
_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_json_output = os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"}
_dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=_log_level,
    json_output=_json_output,
    development_mode=_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)
