from __future__ import annotations

import logging
import os
import uuid
from typing import Any, Dict, Optional

import structlog

# Substrings of event keys whose values must never reach a log sink in the clear
_FULLY_REDACTED_KEYS = ("password", "hash")
_PARTIALLY_REDACTED_KEYS = ("secret", "token", "authorization", "cookie")

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get("correlation_id")


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Start a fresh log context for one request, bound to ``correlation_id``.

    A new ID is generated when none is supplied. Every entry logged from the
    same context carries it through ``merge_contextvars``.
    """
    cid = correlation_id or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(correlation_id=cid)
    return cid


def _mask(key: str, value: Any) -> Any:
    lower_key = key.lower()
    if any(marker in lower_key for marker in _FULLY_REDACTED_KEYS):
        return "[REDACTED]"
    if any(marker in lower_key for marker in _PARTIALLY_REDACTED_KEYS):
        if isinstance(value, str) and len(value) > 4:
            return value[:2] + "***" + value[-2:]
        return value
    if isinstance(value, dict):
        return {k: _mask(str(k), v) for k, v in value.items()}
    return value


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor that masks credential material before rendering.

    Password and hash values are replaced entirely. Token-like values keep
    their first and last two characters so operators can correlate entries.
    Nested dicts are masked by the same rules.
    """
    for key in list(event_dict.keys()):
        if key == "event":
            continue
        event_dict[key] = _mask(key, event_dict[key])
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog for the service.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: Render JSON lines when True
        development_mode: Pretty console output, overrides ``json_output``
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _redact_credentials,
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
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


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
