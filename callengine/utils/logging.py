"""
Logging helpers for the call engine.

Every module logs through its own ``logging.getLogger(__name__)``; this module
only decides how the root logger is wired when the engine runs as a process.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"

# aiortc and aioice are chatty at INFO during ICE gathering.
NOISY_LOGGERS = ("aioice", "aiortc")


def configure_logging(level: int = logging.INFO, format: Optional[str] = None) -> None:
    """
    Ensure the root logger is configured exactly once.
    """

    if logging.getLogger().handlers:
        # Respect any user provided configuration.
        return

    logging.basicConfig(
        level=level,
        format=format or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def call_logger(base: logging.Logger, call_id: Optional[str]) -> logging.Logger:
    """Child logger tagged with a shortened call id."""

    if not call_id:
        return base
    return base.getChild(f"call.{call_id[:8]}")
