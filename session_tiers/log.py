"""structlog setup shared by the scheduled jobs and the collaborator facade."""

import logging

import structlog

from session_tiers.config import Settings

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def configure_logging(settings: Settings) -> None:
    """Configure structlog once at startup: ISO timestamps, level filter, JSON or console output."""
    level = _LEVELS.get(settings.log_level.lower(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.dict_tracebacks if settings.log_json else structlog.processors.StackInfoRenderer(),
            structlog.processors.JSONRenderer() if settings.log_json else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )
