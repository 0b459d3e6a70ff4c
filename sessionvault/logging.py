from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Raw credential material; logged only as a short fingerprint
_CREDENTIAL_KEYS = ("password", "secret", "authorization", "access_token", "refresh_token")
# Identifiers that look sensitive by name but are safe and useful to log
_SAFE_KEYS = frozenset({"token_version", "token_id", "jti"})


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def bind_request_context(**values: Any) -> None:
    """Reset per-request log context and bind ``values`` (method, path) to it."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**values)


def fingerprint(value: str) -> str:
    """Stable short digest so log lines about one credential can be correlated."""
    return "fp:" + hashlib.sha256(value.encode()).hexdigest()[:12]


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Replace credential values with fingerprints and mask email addresses."""
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        value = event_dict[key]
        if lower_key in _SAFE_KEYS or not isinstance(value, str):
            continue
        if any(marker in lower_key for marker in _CREDENTIAL_KEYS) or lower_key == "token":
            event_dict[key] = fingerprint(value)
        elif "email" in lower_key and "@" in value:
            local, _, domain = value.partition("@")
            event_dict[key] = f"{local[:1]}***@{domain}"
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: Emit one JSON object per event when True
        development_mode: Colored console output, overrides ``json_output``
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
    ]

    if development_mode or not json_output:
        renderer = [structlog.dev.ConsoleRenderer(colors=development_mode)]
    else:
        renderer = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ]

    structlog.configure(
        processors=shared_processors + renderer,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
