"""
loguru setup for cohort processes.

Library code just does ``from loguru import logger``. Entry points (the CLI,
a worker process) call :func:`setup_logging` once. The file sink records the
thread name so lines from the ``recompute`` pool threads can be told apart.
"""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from cohort.core.config import Config

CONSOLE_FORMAT = "<level>[{level.name}]</level> {message}"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {thread.name} | {name} | {message}"


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    fmt: str = CONSOLE_FORMAT,
    rotation: str = "10 MB",
    retention: str = "7 days",
) -> None:
    """
    Replace loguru's default sink with a stderr sink and an optional rotating file.

    Args:
        level: Minimum level for both sinks.
        log_file: File sink path; stderr only when None.
        fmt: Console format string.
        rotation: When the file sink rolls over.
        retention: How long rolled files are kept.
    """
    level = level.upper()
    logger.remove()
    logger.add(sys.stderr, level=level, format=fmt)
    if log_file:
        logger.add(log_file, level=level, format=FILE_FORMAT, rotation=rotation, retention=retention)


def setup_logging_from_config(config: Config) -> None:
    """Apply the validated ``logging`` section."""
    settings = config.validated().logging
    setup_logging(level=settings.level, log_file=settings.file)
