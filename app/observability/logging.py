"""
Structured Logging with Structlog.

Every ledger, webhook and admin event is a snake_case event name plus typed
keyword fields, rendered as one JSON object per line:

    {"event": "credit_deducted", "level": "info", "user_id": "...", "amount": 5,
     "service": "credit-ledger-api", "request_id": "...", "timestamp": "..."}

Bearer tokens, webhook signatures and API keys never reach the output; see
redact_secrets.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from app.config import settings

REDACTED = "[redacted]"
SECRET_FIELDS = frozenset(
    {"authorization", "token", "api_key", "apikey", "stripe_signature", "webhook_secret"}
)


def add_service_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp every entry with the service name and version."""
    event_dict.setdefault("service", settings.service_name)
    event_dict.setdefault("version", settings.api_version)
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Replace credential-bearing fields before rendering."""
    for key in event_dict.keys() & SECRET_FIELDS:
        event_dict[key] = REDACTED
    return event_dict


def build_processors(log_format: str, debug: bool) -> list[Processor]:
    """Processor chain shared by the JSON and console renderers."""
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service_context,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.ExceptionRenderer() if debug else structlog.processors.format_exc_info,
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return processors


def setup_logging() -> None:
    """Configure stdlib logging and structlog from settings."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    structlog.configure(
        processors=build_processors(settings.log_format, debug=level == logging.DEBUG),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """
    Bind fields to every log entry emitted inside the block.

    Usage:
        with log_context(request_id=request_id, client_ip=client_ip):
            await call_next(request)
    """
    structlog.contextvars.bind_contextvars(**fields)
    try:
        yield
    finally:
        structlog.contextvars.unbind_contextvars(*fields)
