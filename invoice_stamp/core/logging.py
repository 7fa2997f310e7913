"""
Structured logging configuration using structlog.

Stamping events are emitted as snake_case event names with keyword context.
``bind_entity_context`` attaches the issuing entity to every event logged
while one invoice is processed, and secret-bearing keys are masked before
rendering so key material never reaches a log sink.
"""

import logging
import sys
from collections.abc import MutableMapping
from contextlib import AbstractContextManager
from typing import Any, cast

import structlog
from structlog.types import Processor

from invoice_stamp.core.config import get_settings

REDACTED = "[redacted]"

SENSITIVE_KEYS = frozenset(
    {
        "private_key",
        "private_key_pem",
        "certificate_pem",
        "client_secret",
        "authorization",
        "signature",
    }
)


def redact_sensitive_fields(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask values of keys that may carry key material or credentials."""
    for key in event_dict.keys() & SENSITIVE_KEYS:
        event_dict[key] = REDACTED
    return event_dict


def configure_logging() -> None:
    """
    Configure structured logging for stamping.

    Development renders colored console lines; staging and production
    render one JSON object per event.
    """
    settings = get_settings()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_sensitive_fields,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.environment == "development":
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level),
    )


def bind_entity_context(entity_id: str) -> AbstractContextManager[Any]:
    """Attach ``entity_id`` to every event logged inside the ``with`` block."""
    return structlog.contextvars.bound_contextvars(entity_id=entity_id)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance with the given name."""
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))
