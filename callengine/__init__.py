"""
Call negotiation engine for the chat client.

The engine owns the lifecycle of 1:1 and group voice/video calls: the call
state machine, offer/answer exchange over the chat signaling channel, local
capture and the tracks flowing over each peer connection.
"""

from __future__ import annotations

from .config import EngineConfig, load_config
from .errors import (
    Busy,
    CallEngineError,
    Closed,
    CommandRejected,
    DeviceBusy,
    DeviceNotFound,
    MediaError,
    NoAnswer,
    PermissionDenied,
    RenegotiationFailed,
    SignalingRace,
    Unsupported,
)
from .session import CallEngine, CallRecord, CallSnapshot, CallState, Notice

__all__ = [
    "Busy",
    "CallEngine",
    "CallEngineError",
    "CallRecord",
    "CallSnapshot",
    "CallState",
    "Closed",
    "CommandRejected",
    "DeviceBusy",
    "DeviceNotFound",
    "EngineConfig",
    "MediaError",
    "NoAnswer",
    "Notice",
    "PermissionDenied",
    "RenegotiationFailed",
    "SignalingRace",
    "Unsupported",
    "load_config",
]
