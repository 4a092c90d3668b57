"""Loguru sinks for the API and CLI."""
from __future__ import annotations

import sys

from loguru import logger

from config import Settings, get_settings

CONSOLE_FORMAT = "<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | {message}"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}"


def configure_logging(settings: Settings | None = None, level: str | None = None) -> None:
    """
    Replace the default loguru sink.

    Args:
        settings: Settings override.
        level: Console level override (e.g. WARNING for quiet CLI output).
    """
    settings = settings or get_settings()

    logger.remove()
    logger.add(
        sys.stderr,
        level=(level or settings.log_level).upper(),
        format=CONSOLE_FORMAT,
    )

    if settings.log_file:
        logger.add(
            settings.log_file,
            level=settings.log_level.upper(),
            format=FILE_FORMAT,
            rotation="10 MB",
            retention=5,
            enqueue=True,
        )
