"""
Logging setup.

Library modules only emit through loguru's `logger`; the CLI (or an
embedding application) decides where records go by calling setup_logging.
"""

from __future__ import annotations

import sys
from typing import Any

from loguru import logger

LOG_FORMAT = "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {name}:{line} - {message}"


def setup_logging(level: str = "WARNING", sink: Any = None, colorize: bool | None = None) -> int:
    """
    Replace loguru's default handler with a single sink at `level`.

    Returns the handler id so callers can remove it again.
    """
    logger.remove()
    return logger.add(
        sink if sink is not None else sys.stderr,
        level=level.upper(),
        format=LOG_FORMAT,
        colorize=colorize,
    )
