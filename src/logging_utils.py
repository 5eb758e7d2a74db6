"""Runtime logging helpers."""

from __future__ import annotations

import os
import sys
from typing import Optional

from loguru import logger

LOG_LEVELS = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")
DEFAULT_LEVEL = "WARNING"
LOG_FORMAT = "{time:HH:mm:ss.SSS} | {level:<7} | {name}:{function}:{line} | {message}"


def resolve_level(level: Optional[str] = None) -> str:
    candidate = (level or os.getenv("LISH_LOG_LEVEL") or DEFAULT_LEVEL).upper()
    return candidate if candidate in LOG_LEVELS else DEFAULT_LEVEL


def configure_logging(level: Optional[str] = None) -> str:
    """Route log records to stderr at the requested level.

    Replaces loguru's default handler, so calling it again just reconfigures.
    Returns the level in effect.
    """
    effective = resolve_level(level)
    logger.remove()
    logger.add(
        sys.stderr,
        level=effective,
        format=LOG_FORMAT,
        backtrace=False,
        diagnose=False,
    )
    return effective
