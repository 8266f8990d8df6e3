import sys

from loguru import logger


def setup_logging(level: str = "INFO") -> None:
    """Route loguru output to stderr at the configured level."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
    logger.info(f"Logging level set to {level.upper()}")
