"""
Structured logging for the sync engine.

Every event is stamped with the Intuit environment it ran against, and OAuth
credentials are masked before any renderer sees them. Request, account and
realm ids arrive through structlog contextvars bound by the middleware and
the auth dependency.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from syncengine.config import get_settings

# Keys whose values must never reach a log sink
SECRET_KEYS = frozenset(
    {"access_token", "refresh_token", "client_secret", "auth_code", "authorization"}
)


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask OAuth credentials that slip into log context."""
    for key in SECRET_KEYS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, str) and value:
            event_dict[key] = value[:4] + "***"
    return event_dict


def add_intuit_env(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("intuit_env", get_settings().intuit_env)
    return event_dict


def configure_logging() -> None:
    """
    Configure structlog once per process.

    JSON lines in production, colored console output in dev mode.
    """
    settings = get_settings()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
    )
    # httpx logs every request line at INFO, including OAuth query strings
    logging.getLogger("httpx").setLevel(logging.WARNING)

    if settings.log_format == "json" and not settings.dev_mode:
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_intuit_env,
            redact_secrets,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    return structlog.get_logger(name)
