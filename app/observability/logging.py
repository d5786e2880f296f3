"""
Structured Logging with Structlog.

Every reconciliation pass binds its correlation ids (checkout session,
webhook event, user, product) so a single purchase can be followed from
ingestion to the persisted access state. Stripe credentials never reach the
log stream: a processor masks them wherever they appear.
"""

import logging
import re
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from app.config import settings

_SECRET_PATTERN = re.compile(r"\b(sk|rk|whsec)_(live_|test_)?[A-Za-z0-9]+")
_SECRET_FIELDS = frozenset({"api_key", "secret", "signature", "token", "admin_key"})


def _mask(value: str) -> str:
    return _SECRET_PATTERN.sub(lambda m: f"{m.group(1)}_***{m.group(0)[-4:]}", value)


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask Stripe keys, webhook secrets and access tokens in log fields."""
    for key, value in event_dict.items():
        if key in _SECRET_FIELDS and value is not None:
            event_dict[key] = "***"
        elif isinstance(value, str):
            event_dict[key] = _mask(value)
    return event_dict


def add_service_fields(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", settings.service_name)
    event_dict.setdefault("version", settings.api_version)
    return event_dict


def _renderer() -> Processor:
    if settings.log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def setup_logging() -> None:
    """
    Route stdlib and structlog output through one JSON pipeline.

    A webhook application looks like:
    {
        "event": "webhook_event_applied",
        "level": "info",
        "timestamp": "2026-10-19T12:00:00.123456Z",
        "logger": "app.services.webhooks",
        "service": "access-reconciler",
        "event_id": "evt_123",
        "user_id": 42,
        "scopes_changed": 1
    }
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    # Request lines are logged by our own middleware.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service_fields,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        redact_secrets,
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
    """Module logger; call once at import time with ``__name__``."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]


@contextmanager
def log_context(**kwargs: Any) -> Iterator[None]:
    """
    Bind correlation fields for everything logged inside the block.

    None values are skipped so optional ids (a sync run without a user yet)
    do not show up as nulls.

        with log_context(session_id="cs_123", user_id=42):
            logger.info("checkout_ingested")
    """
    fields = {key: value for key, value in kwargs.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**fields):
        yield
