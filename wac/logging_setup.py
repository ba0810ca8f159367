from __future__ import annotations

import logging

from .settings import settings

LOGGER_NAME = "wac"

logger = logging.getLogger(LOGGER_NAME)


def configure_logging(level: str | None = None) -> logging.Logger:
    """Attach a stream handler to the ``wac`` logger (idempotent)."""
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[%(asctime)s] [%(name)s] %(levelname)s %(message)s"))
        logger.addHandler(handler)
    logger.setLevel((level or settings.log_level).upper())
    return logger
