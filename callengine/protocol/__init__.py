"""
Signaling contract: event names, payload schemas and the transport capability.
"""

from __future__ import annotations

from . import events
from .schemas import ParticipantInfo, parse_inbound
from .transport import LoopbackHub, LoopbackTransport, SignalingTransport

__all__ = [
    "events",
    "LoopbackHub",
    "LoopbackTransport",
    "ParticipantInfo",
    "SignalingTransport",
    "parse_inbound",
]
