"""
Peer connection helpers: ICE ladder, links, signaling and track negotiation.
"""

from __future__ import annotations

from .factory import PeerConnectionFactory
from .group import GroupCall
from .ice import IceServer, IceStrategy
from .negotiation import LocalMedia, TrackNegotiator
from .peer_link import PeerLink, SignalingState
from .signaling import DirectOutbox, GroupOutbox, SignalingHandler

__all__ = [
    "DirectOutbox",
    "GroupCall",
    "GroupOutbox",
    "IceServer",
    "IceStrategy",
    "LocalMedia",
    "PeerConnectionFactory",
    "PeerLink",
    "SignalingHandler",
    "SignalingState",
    "TrackNegotiator",
]
