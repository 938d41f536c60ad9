"""Logging setup."""

import logging

from .config import LOG_LEVEL


def setup_logging(level: str = LOG_LEVEL) -> None:
    """Configure the root logger for the API process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )
