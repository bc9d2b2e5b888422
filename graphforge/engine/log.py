"""Logging configuration using loguru.

Everything ends up in loguru: the registry and compiler modules log through
it directly, while the execution modules, the docker SDK and urllib3 use
stdlib ``logging`` and are forwarded by ``_InterceptHandler``.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from graphforge.engine.settings import GraphForgeSettings

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

# Chatty below WARNING even when graphforge itself runs at DEBUG.
QUIET_LOGGERS = ("docker", "urllib3", "asyncio")


class _InterceptHandler(logging.Handler):
    """Forward stdlib records to loguru, keeping the original call-site."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(
    level: str = "INFO",
    *,
    log_file: str | None = None,
    serialize: bool = False,
) -> None:
    """Make loguru the only sink.

    *log_file* adds a rotating file sink next to stderr; *serialize* switches
    both sinks to loguru's JSON lines.  Call once at process startup.
    """
    level = level.upper()

    logger.remove()
    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT, serialize=serialize)
    if log_file:
        logger.add(log_file, level=level, rotation="20 MB", retention=5, enqueue=True, serialize=serialize)

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug("Logging ready (level={}, file={})", level, log_file or "-")


def setup_logging_from_settings(settings: GraphForgeSettings) -> None:
    setup_logging(settings.log_level, log_file=settings.log_file, serialize=settings.log_json)
