"""Logging configuration for the bookmark engine."""

import sys
from pathlib import Path

from loguru import logger


def configure_logging(*, verbose: bool = False, log_file: Path | None = None) -> None:
    """Configure loguru with appropriate level.

    With ``log_file`` set, a rotating debug log is written next to the
    stderr sink.
    """
    logger.remove()
    level = "DEBUG" if verbose else "INFO"
    logger.add(sys.stderr, level=level, format="{level.icon} {message}")
    if log_file is not None:
        logger.add(
            log_file,
            level="DEBUG",
            rotation="5 MB",
            retention=3,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{line} | {message}",
        )
