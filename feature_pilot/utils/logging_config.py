"""
Logging configuration using structlog for structured, JSON-based logging.

Every module obtains its logger with ``structlog.get_logger(__name__)`` and
logs snake_case events with keyword context. Session identity can be bound
for the duration of a workflow continuation with ``bind_session``.
"""

from typing import Any

import structlog


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging with JSON output.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level.upper()),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_session(project_id: str, feature_id: str, **extra: Any) -> None:
    """Bind session identity to the current async context.

    Values are merged into every log event emitted from the same task until
    ``clear_session`` is called.
    """
    structlog.contextvars.bind_contextvars(project_id=project_id, feature_id=feature_id, **extra)


def clear_session() -> None:
    """Remove all context bound with ``bind_session``."""
    structlog.contextvars.clear_contextvars()

