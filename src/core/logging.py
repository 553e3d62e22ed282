"""
Structured logging configuration using structlog.

Development renders colored console lines, production renders JSON.
Personalization calls run on request threads and on session-timeout
timer threads, so user/session identifiers are carried through
structlog contextvars rather than passed to every log call.

Usage:
    from core.logging import configure_logging, get_logger, log_context

    configure_logging(json_logs=False)

    logger = get_logger(__name__)
    with log_context(user_id="u1", session_id="s_1"):
        logger.info("event ingested", event_type="wore")
"""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog
from structlog.types import Processor


def configure_logging(
    json_logs: bool = False,
    log_level: str = "INFO",
    include_timestamp: bool = True,
) -> None:
    """
    Configure structured logging for the process.

    Args:
        json_logs: JSON output when True, colored console output otherwise
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        include_timestamp: Whether to include an ISO timestamp
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if include_timestamp:
        processors.insert(0, structlog.processors.TimeStamper(fmt="iso", utc=True))

    if json_logs:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(
            colors=True,
            exception_formatter=structlog.dev.plain_traceback,
        ))

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
        level=getattr(logging, log_level.upper()),
        force=True,
    )

    # Redis client logs every reconnect at INFO
    logging.getLogger("redis").setLevel(logging.WARNING)


def configure_from_settings(settings: Any) -> None:
    """Configure logging from a config.Settings instance."""
    configure_logging(
        json_logs=settings.log_json or settings.is_production,
        log_level="DEBUG" if settings.debug else settings.log_level,
    )


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)
    """
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind key-values to all subsequent logs in the current context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()


def unbind_context(*keys: str) -> None:
    """Unbind specific context variables."""
    structlog.contextvars.unbind_contextvars(*keys)


@contextmanager
def log_context(**kwargs: Any) -> Iterator[None]:
    """
    Bind context for the duration of a block, restoring the previous
    values afterwards.

    None values are skipped so optional identifiers can be passed as-is.
    """
    values = {k: v for k, v in kwargs.items() if v is not None}
    with structlog.contextvars.bound_contextvars(**values):
        yield


class LoggerMixin:
    """
    Mixin class that provides a logger property named after the class.

    Usage:
        class BlocklistManager(LoggerMixin):
            def add_hard(self, ...):
                self.logger.info("hard block added", ...)
    """

    @property
    def logger(self) -> structlog.stdlib.BoundLogger:
        return get_logger(self.__class__.__name__)
