"""Utility helpers for the engine."""

from .logging import call_logger, configure_logging
from .timers import OneShotTimer, PeriodicTimer

__all__ = ["call_logger", "configure_logging", "OneShotTimer", "PeriodicTimer"]
