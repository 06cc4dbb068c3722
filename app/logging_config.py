from __future__ import annotations

import logging
import sys

import structlog

from app.config import Settings


def configure_logging(config: Settings) -> None:
    level = logging.getLevelName(config.LOG_LEVEL.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(format='%(message)s', stream=sys.stdout, level=level, force=True)

    renderer: structlog.types.Processor
    if config.LOG_FORMAT == 'json':
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt='iso', utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # aiohttp access logs are noisy at INFO
    logging.getLogger('aiohttp.access').setLevel(logging.WARNING)
