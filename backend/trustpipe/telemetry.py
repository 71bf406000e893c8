"""Logging and error reporting setup for worker processes."""

import logging
import sys
from typing import Optional

import sentry_sdk
import structlog

from trustpipe.config import Settings, get_settings

logger = structlog.get_logger()


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Route stdlib and structlog output through one renderer.

    JSON lines in production, coloured console output otherwise.
    """
    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(
        level=level,
        format="%(message)s",
        stream=sys.stdout,
        force=True,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.is_production
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def init_sentry(settings: Optional[Settings] = None) -> bool:
    """Initialize Sentry when a DSN is configured."""
    settings = settings or get_settings()
    if not settings.sentry_dsn:
        return False
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        traces_sample_rate=0.1 if settings.is_production else 1.0,
    )
    logger.info("Sentry initialized", environment=settings.environment)
    return True
