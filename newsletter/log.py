"""
Loguru sink configuration.
"""

import sys
from pathlib import Path

from loguru import logger

from newsletter.settings import Settings

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> "
    "[<level>{level}</level>] <cyan>{name}</cyan>: {message}"
)


def setup_logging(settings: Settings) -> None:
    """Replace the default sink with stderr plus optional error/combined files."""
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level.upper(), format=LOG_FORMAT)

    if settings.log_dir:
        log_dir = Path(settings.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_dir / "error.log",
            level="ERROR",
            format=LOG_FORMAT,
            colorize=False,
            rotation="10 MB",
        )
        logger.add(
            log_dir / "combined.log",
            level=settings.log_level.upper(),
            format=LOG_FORMAT,
            colorize=False,
            rotation="10 MB",
        )
