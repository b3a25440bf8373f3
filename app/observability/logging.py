"""
Structured Logging with Structlog.

Every service logs named events (usage_event, payment_confirmed,
auto_confirm_tick, registration_blocked) with keyword context. The HTTP
middleware binds request_id for the lifetime of a request, so everything a
route, a dependency or a service logs while serving it carries the id.

Passwords, bearer tokens and the configured secrets never reach the output:
the redact_secrets processor masks them wherever they appear as keys.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from app.config import settings

REDACTED = "***"

SENSITIVE_KEYS = frozenset(
    {
        "password",
        "password_hash",
        "token",
        "authorization",
        "jwt_secret",
        "admin_secret",
    }
)

# Third-party loggers that are chatty at INFO
QUIET_LOGGERS = ("apscheduler", "aiosqlite", "httpx")


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp service name and version on every entry."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    for key in SENSITIVE_KEYS.intersection(event_dict):
        if event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def _renderer() -> Processor:
    if settings.log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def setup_logging() -> None:
    """
    Configure stdlib logging and structlog for the whole process.

    JSON output (LOG_FORMAT=json) looks like:
    {
        "event": "usage_event",
        "level": "info",
        "timestamp": "2026-10-19T12:00:00.123456Z",
        "logger": "app.services.ledger",
        "service": "pokerwizard-entitlements",
        "version": "0.1.0",
        "request_id": "3f1c...",
        "user_id": "...", "feature": "trainer", "remaining": 6, "premium": false
    }
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper()),
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _renderer(),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("payment_confirmed", payment_id=str(payment_id), source="webhook")
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


@contextmanager
def log_context(**context: Any) -> Iterator[None]:
    """
    Bind context to every log entry emitted inside the block.

    Values bound by an enclosing block are restored on exit, so a nested
    log_context(request_id=...) does not clear the outer one.

    Usage:
        with log_context(request_id=request_id):
            response = await call_next(request)
    """
    with structlog.contextvars.bound_contextvars(**context):
        yield
