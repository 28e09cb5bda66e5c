"""
Logging setup.

All modules log through the loguru 'logger' directly. 'configure_logging'
replaces loguru's default stderr sink with one at the configured level so an
application embedding the gateway can control verbosity from 'LOG_LEVEL'.
"""

import sys

from loguru import logger

LOG_FORMAT = "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> - <level>{message}</level>"


def configure_logging(level: str = "INFO") -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)
    logger.debug(f"Logging configured at level {level.upper()}")


def preview(text: str, limit: int = 50) -> str:
    """Shorten 'text' for log lines."""
    return text if len(text) <= limit else f"{text[:limit]}..."
