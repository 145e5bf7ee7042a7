"""
Structured Logging with Structlog.

Every log line carries the service identity, the request id bound by the HTTP
middleware and any ledger context bound with `log_context`. Redemption codes
and keys are bearer secrets and are masked before rendering.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from app.config import settings

# Event keys whose values can be spent or replayed by whoever reads the log
SECRET_KEYS = frozenset({"code", "api_key", "admin_key", "webhook_key", "stripe_signature"})

# Chatty libraries that drown out ledger events at INFO
QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "stripe")


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add service identity to all log entries."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    event_dict["environment"] = settings.environment
    return event_dict


def mask_secret(value: str) -> str:
    """Keep the last four characters, enough to correlate with a support ticket."""
    if len(value) <= 4:
        return "****"
    return f"****{value[-4:]}"


def mask_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    for key in SECRET_KEYS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, str):
            event_dict[key] = mask_secret(value)
    return event_dict


def build_processors(log_format: str, log_level: str) -> list[Processor]:
    """
    Processor chain shared by the API and the scripts.

    JSON output looks like:
    {
        "event": "debit_authorized",
        "level": "info",
        "timestamp": "2026-10-18T12:00:00.123456Z",
        "logger": "app.services.debit",
        "service": "credit-ledger-api",
        "request_id": "4f1c...",
        "user_id": "user-1",
        "cost_minor": 400
    }
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        mask_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if log_level.upper() == "DEBUG":
        processors.append(structlog.processors.ExceptionRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return processors


def setup_logging() -> None:
    """Configure stdlib logging and structlog from settings."""
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    if level > logging.DEBUG:
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=build_processors(settings.log_format, settings.log_level),
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
        logger.info("debit_authorized", user_id=user_id, cost_minor=400)
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Bind structured logging context for the duration of a block.

    Nested blocks restore the outer values on exit instead of dropping them:

        with log_context(request_id="req-123"):
            with log_context(user_id="user-1"):
                logger.info("debit_authorized")  # request_id and user_id
            logger.info("request_finished")  # request_id only
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs
        self._tokens: dict[str, Any] = {}

    def __enter__(self) -> None:
        self._tokens = structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)
