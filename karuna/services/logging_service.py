"""Structured logging configuration with redaction support."""

import logging
import re
import sys
from contextlib import contextmanager
from typing import Any, Dict, Iterator

import structlog

SENSITIVE_KEYS = (
    "api_key",
    "authorization",
    "token",
    "secret",
    "password",
)

_BEARER_VALUE = re.compile(r"(Bearer\s+)\S+", re.IGNORECASE)


def redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Redact sensitive information from log entries.

    Redacts:
    - api_key, token, secret and password fields (any key containing them)
    - Authorization headers
    - Bearer credentials embedded in string values (e.g. error messages)
    """
    for key in list(event_dict.keys()):
        key_lower = key.lower()
        if any(sensitive in key_lower for sensitive in SENSITIVE_KEYS):
            event_dict[key] = "REDACTED"
        elif isinstance(event_dict[key], str):
            event_dict[key] = _BEARER_VALUE.sub(r"\1REDACTED", event_dict[key])

    return event_dict


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structlog with correlation ID support.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "json" for machine-readable output, "console" for local runs
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    renderer = (
        structlog.dev.ConsoleRenderer()
        if log_format == "console"
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            redact_sensitive,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a configured logger instance.

    Args:
        name: Optional logger name for context
    """
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(logger_name=name)
    return logger


@contextmanager
def engine_log_context(user_id: str, **fields: Any) -> Iterator[None]:
    """Bind ``user_id`` (and extra fields) to every log event emitted inside.

    Used around background ticks, which run outside any request context.
    """
    with structlog.contextvars.bound_contextvars(user_id=user_id, **fields):
        yield
