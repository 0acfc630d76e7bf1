"""Structured logging configuration for taskvault.

Uses structlog for structured, context-rich logging that supports
both human-readable console output and machine-readable JSON format.
"""

import logging
import sys
from typing import TYPE_CHECKING

import structlog
from structlog.types import Processor

if TYPE_CHECKING:
    from taskvault.config import TaskvaultSettings


def configure_logging(settings: "TaskvaultSettings | None" = None) -> None:
    """Configure structured logging based on settings.

    Args:
        settings: Application settings. If None, uses defaults.
    """
    log_level = logging.WARNING
    log_format = "console"

    if settings is not None:
        log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
        log_format = settings.log_format

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        # JSON lines for automated callers
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(
                colors=False,
                exception_formatter=structlog.dev.plain_traceback,
            ),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        # reconfigured per engine, so bound loggers are not cached
        cache_logger_on_first_use=False,
    )

    logging.basicConfig(
        format="%(message)s",
        level=log_level,
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    logging.getLogger("filelock").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name (typically __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name) if name else structlog.get_logger()


def bind_context(**kwargs: object) -> None:
    """Bind context variables to all subsequent log calls in the current context.

    Example:
        bind_context(session_id="session_20250101", actor="agent")
        logger.info("commit_succeeded")  # includes session_id and actor

    Args:
        **kwargs: Key-value pairs to bind to logging context
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()


class Loggers:
    """Pre-configured logger instances for taskvault components."""

    @staticmethod
    def engine() -> structlog.stdlib.BoundLogger:
        """Logger for the engine facade."""
        return get_logger("taskvault.engine")

    @staticmethod
    def pipeline() -> structlog.stdlib.BoundLogger:
        """Logger for the atomic write pipeline and locks."""
        return get_logger("taskvault.pipeline")

    @staticmethod
    def archive() -> structlog.stdlib.BoundLogger:
        """Logger for the retention engine."""
        return get_logger("taskvault.archive")

    @staticmethod
    def backup() -> structlog.stdlib.BoundLogger:
        """Logger for backups."""
        return get_logger("taskvault.backup")

    @staticmethod
    def migration() -> structlog.stdlib.BoundLogger:
        """Logger for schema migrations."""
        return get_logger("taskvault.migration")
