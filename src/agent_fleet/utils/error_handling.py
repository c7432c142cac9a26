"""Standardized error handling utilities."""

import logging
from typing import Optional

logger = logging.getLogger(__name__)


def log_and_reraise(
    error: Exception,
    message: str,
    *,
    logger_instance: Optional[logging.Logger] = None,
    level: int = logging.ERROR,
) -> None:
    """
    Log an error with context and re-raise it.

    Must be called from inside the ``except`` block handling ``error``.
    """
    log = logger_instance or logger
    log.log(level, f"{message}: {error}")
    raise


def log_and_ignore(
    error: Exception,
    message: str,
    *,
    logger_instance: Optional[logging.Logger] = None,
    level: int = logging.WARNING,
) -> None:
    """
    Log an error and ignore it (don't re-raise).

    Use for boundary errors that must not interrupt task progress.
    """
    log = logger_instance or logger
    log.log(level, f"{message}: {error}")
