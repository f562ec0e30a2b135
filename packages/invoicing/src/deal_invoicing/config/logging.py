"""structlog setup for the reconciliation service."""

import logging
import sys

import structlog

from deal_invoicing.config.settings import Settings, get_settings

# Request lines from the HTTP clients are noise next to the engine's own events
_QUIET_LOGGERS = ("httpx", "httpcore")


def configure_logging(
    settings: Settings | None = None,
    *,
    level: str | None = None,
    format: str | None = None,
) -> None:
    """Route structlog through stdlib logging, rendered as JSON or for a console."""
    settings = settings or get_settings()
    log_level = getattr(logging, (level or settings.log_level).upper())

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    if (format or settings.log_format) == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(exception_formatter=structlog.dev.plain_traceback)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
