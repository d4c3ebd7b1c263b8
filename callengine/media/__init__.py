"""
Local media: capture, track wrappers and track-state monitoring.
"""

from __future__ import annotations

from .acquisition import MediaAcquirer, MediaConstraints
from .settings import MediaSettings
from .tracks import ControllableTrack, LocalStream, TrackEvent, TrackKind, TrackMonitor, TrackSignal

__all__ = [
    "ControllableTrack",
    "LocalStream",
    "MediaAcquirer",
    "MediaConstraints",
    "MediaSettings",
    "TrackEvent",
    "TrackKind",
    "TrackMonitor",
    "TrackSignal",
]
