"""Structured logging for the login pipeline.

Every line passes through the same processor chain: correlation id, the audit
channel shaper, then field masking. Audit events are ordinary log lines bound
to ``channel="audit"`` so a collector can route them without a second sink.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Iterable, Optional

import structlog

AUDIT_CHANNEL = "audit"

# One id per login attempt, shared by its log lines and its audit event
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    if "correlation_id" not in event_dict:
        cid = get_correlation_id()
        if cid:
            event_dict["correlation_id"] = cid
    return event_dict


def _shape_audit_event(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Normalize audit lines: explicit outcome, deduplicated flags, no empty metadata."""
    if event_dict.get("channel") != AUDIT_CHANNEL:
        return event_dict
    success = event_dict.get("success")
    if isinstance(success, bool):
        event_dict["outcome"] = "success" if success else "failure"
    flags = event_dict.get("security_flags")
    if isinstance(flags, (list, tuple)):
        event_dict["security_flags"] = list(dict.fromkeys(flags))
    metadata = event_dict.get("metadata")
    if isinstance(metadata, dict):
        event_dict["metadata"] = {k: v for k, v in metadata.items() if v is not None}
    return event_dict


# Values under these keys are never logged
_SECRET_KEYS = ("password", "secret", "token", "api_key", "authorization", "cookie")
# Values under these keys are logged in a shortened, still-correlatable form
_IDENTIFYING_KEYS = ("email", "fingerprint", "client_ip")


def mask_email(value: str) -> str:
    """``user@example.com`` -> ``u***@example.com``; the domain stays visible."""
    local, sep, domain = value.partition("@")
    if not sep:
        return mask_identifier(value)
    return f"{local[:1]}***@{domain}"


def mask_identifier(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def mask_field(key: str, value: Any) -> Any:
    """Mask ``value`` according to what ``key`` says it holds."""
    lower_key = key.lower()
    if any(secret in lower_key for secret in _SECRET_KEYS):
        return "[redacted]" if value else value
    if not isinstance(value, str) or not value:
        return value
    if "email" in lower_key:
        return mask_email(value)
    if any(ident in lower_key for ident in _IDENTIFYING_KEYS):
        return mask_identifier(value)
    return value


def _mask_sensitive_fields(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if key == "event":
            continue
        if isinstance(value, dict):
            event_dict[key] = {k: mask_field(k, v) for k, v in value.items()}
        else:
            event_dict[key] = mask_field(key, value)
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the processor chain; safe to call again to change the output.

    Args:
        log_level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        json_output: Render JSON lines; otherwise render for a console
        development_mode: Force colored console output regardless of ``json_output``
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", key="logged_at"),
        _add_correlation_id,
        _shape_audit_event,
        _mask_sensitive_fields,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

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
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def get_audit_logger(name: str = "loginguard.audit") -> structlog.stdlib.BoundLogger:
    """Logger whose lines are tagged for the audit channel."""
    return structlog.get_logger(name).bind(channel=AUDIT_CHANNEL)


# Internals that must not reach a log consumer or an API caller
_SENSITIVE_ERROR_PATTERNS: Iterable[str] = (
    r"(?i)\b(password|passwd|secret|token|api[_-]?key|credential)s?\s*[:=]\s*\S+",
    r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*",
    r"(?i)\b(postgres(ql)?|mysql|redis|rediss|amqp|mongodb)://\S+",
    r"(?<![\w/])/(?:home|var|etc|usr|opt|tmp|root|srv)/\S+",
    r"(?i)\b[a-z]:\\\S+",
    r"(?i)\btraceback \(most recent call last\)",
)

_SENSITIVE_PATTERNS_COMPILED = [re.compile(p) for p in _SENSITIVE_ERROR_PATTERNS]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Redact secrets, connection strings and filesystem paths from ``error``.

    Ordinary prose is left alone; only the patterns above are replaced. The
    result is capped at 500 characters.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_PATTERNS_COMPILED:
        result = pattern.sub(replacement, result)

    if len(result) > 500:
        result = result[:497] + "..."

    return result
