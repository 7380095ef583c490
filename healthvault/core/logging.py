"""
Structured logging for the record pipeline, built on structlog.

Console output in development, JSON everywhere else. Secret-bearing keys are
masked before rendering, and pipeline operations bind their record id into
context variables so every log line emitted underneath carries it.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, cast

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from healthvault.core.config import get_settings

# Keys whose values must never reach a log sink.
SENSITIVE_KEYS = frozenset(
    {"plaintext", "payload", "dek", "share", "shares", "private_key", "master_secret"}
)
REDACTED = "[redacted]"


def redact_sensitive(_logger: WrappedLogger, _method: str, event_dict: EventDict) -> EventDict:
    for key in SENSITIVE_KEYS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def configure_logging() -> None:
    """
    Configure structlog and the stdlib root logger from settings.

    ``log_level`` applies to both; the renderer follows ``environment``.
    """
    settings = get_settings()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    renderer: list[Processor]
    if settings.environment == "development":
        renderer = [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]
    else:
        renderer = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=shared_processors + renderer,
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


@contextmanager
def pipeline_context(operation: str, **bindings: Any) -> Iterator[None]:
    """Bind ``operation`` and ``bindings`` to every log line in the block."""
    values = {key: value for key, value in bindings.items() if value is not None}
    with structlog.contextvars.bound_contextvars(operation=operation, **values):
        yield


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance with the given name."""
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))
