"""
Logging configuration for the supervisor.
"""
import sys

from loguru import logger

_FORMAT = "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}"


def configure_logging(level: str = "INFO") -> None:
    """
    Replaces loguru's default sink with a single stderr sink at ``level``.
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=_FORMAT)
