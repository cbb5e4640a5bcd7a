"""
Structured Logging with Structlog.

Provides JSON-formatted logs with correlation IDs and context. Sweep ticks and
Socket.IO pings run every second, so chatty library loggers are held at
WARNING unless LOG_LEVEL is DEBUG.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from psychic_metering.config import settings

# Library loggers that log per request, per ping or per query at INFO
NOISY_LOGGERS = ("engineio.server", "socketio.server", "httpx", "httpcore", "uvicorn.access")


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application-level context to all log entries."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def add_sweep_marker(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mark entries emitted inside a sweep as background work."""
    if "sweep" in event_dict:
        event_dict["background"] = True
    return event_dict


def quiet_library_loggers(level: int = logging.WARNING) -> None:
    """Raise the threshold of high-frequency library loggers."""
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level)


def setup_logging() -> None:
    """
    Configure structured logging with structlog.

    Logs are formatted as JSON for machine parsing with the following structure:
    {
        "event": "paid_credit_deducted",
        "level": "info",
        "timestamp": "2025-01-08T12:00:00.123456Z",
        "logger": "psychic_metering.services.scheduler",
        "service": "psychic-metering-api",
        "version": "0.1.0",
        "user_id": "...",
        ...additional context
    }
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper()),
    )
    if settings.log_level.upper() != "DEBUG":
        quiet_library_loggers()

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        add_sweep_marker,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.log_level.upper() == "DEBUG":
        processors.append(structlog.processors.ExceptionRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

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
        logger.info("availability_checked", user_id=user_id, available=True)
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Context manager for adding structured logging context.

    Usage:
        with log_context(sweep="paid_deduction", session_id="..."):
            logger.info("session_processed")
            # All logs within this context include sweep and session_id
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs

    def __enter__(self) -> None:
        """Enter context - bind context variables."""
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit context - clear context variables."""
        structlog.contextvars.unbind_contextvars(*self.context.keys())
