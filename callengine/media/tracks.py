"""
Local media track handles.

``ControllableTrack`` gives aiortc tracks the ``enabled`` switch browsers
have: a disabled track keeps its sender and keeps producing frames, but the
frames are black (video) or silent (audio), so toggling never needs a new
offer.  The camera/screen state of a call is one ``LocalVideoSource`` value
instead of several independent flags.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from aiortc.mediastreams import MediaStreamTrack
from av import AudioFrame, VideoFrame

from ..utils.timers import PeriodicTimer

LOG = logging.getLogger(__name__)


class TrackKind(str, Enum):
    AUDIO = "audio"
    VIDEO = "video"
    SCREEN = "screen"

    @property
    def media_kind(self) -> str:
        """Kind as seen by the peer connection (screen capture is video)."""

        return "audio" if self is TrackKind.AUDIO else "video"


def _silence_like(frame: AudioFrame) -> AudioFrame:
    blank = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
    for plane in blank.planes:
        plane.update(bytes(plane.buffer_size))
    blank.sample_rate = frame.sample_rate
    return blank


def _black_like(frame: VideoFrame) -> VideoFrame:
    blank = VideoFrame(width=frame.width, height=frame.height, format="yuv420p")
    luma, *chroma = blank.planes
    luma.update(bytes(luma.buffer_size))
    for plane in chroma:
        plane.update(b"\x80" * plane.buffer_size)
    return blank


class ControllableTrack(MediaStreamTrack):
    """
    Wrap a source track and add an ``enabled`` switch.

    Stopping the wrapper stops the source as well.
    """

    def __init__(self, source: MediaStreamTrack, *, source_kind: TrackKind, label: str = "") -> None:
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.source_kind = source_kind
        self.label = label or f"{source_kind.value}:{self.id[:8]}"
        self.enabled = True

    @property
    def is_live(self) -> bool:
        if self.readyState != "live":
            return False
        return getattr(self.source, "readyState", "live") == "live"

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        if isinstance(frame, AudioFrame):
            blank = _silence_like(frame)
        elif isinstance(frame, VideoFrame):
            blank = _black_like(frame)
        else:  # pragma: no cover - encoded packets pass through untouched
            return frame
        blank.pts = frame.pts
        blank.time_base = frame.time_base
        return blank

    def stop(self) -> None:
        if self.readyState == "live":
            super().stop()
        try:
            self.source.stop()
        except Exception:  # pragma: no cover - defensive
            LOG.debug("Source track %s failed to stop cleanly", self.label, exc_info=True)


@dataclass
class LocalStream:
    """
    A captured stream: the tracks plus whatever device handles produced them.
    """

    tracks: List[ControllableTrack] = field(default_factory=list)
    origin: str = "user"
    handles: List[Any] = field(default_factory=list)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def audio_tracks(self) -> List[ControllableTrack]:
        return [track for track in self.tracks if track.source_kind is TrackKind.AUDIO]

    def video_tracks(self) -> List[ControllableTrack]:
        return [track for track in self.tracks if track.source_kind is not TrackKind.AUDIO]

    def live_video_track(self) -> Optional[ControllableTrack]:
        for track in self.video_tracks():
            if track.is_live:
                return track
        return None

    def add_track(self, track: ControllableTrack) -> None:
        if track not in self.tracks:
            self.tracks.append(track)

    def remove_track(self, track: ControllableTrack) -> None:
        if track in self.tracks:
            self.tracks.remove(track)

    @property
    def live(self) -> bool:
        return any(track.is_live for track in self.tracks)

    def stop(self) -> None:
        for track in list(self.tracks):
            track.stop()
        # A MediaPlayer stops its decoding thread once all of its tracks stop.
        self.handles.clear()


# ---------------------------------------------------------------- video source


@dataclass(frozen=True, slots=True)
class NoVideo:
    """Nothing is sent on the video sender."""


@dataclass(frozen=True, slots=True)
class CameraVideo:
    track: ControllableTrack

    @property
    def enabled(self) -> bool:
        return self.track.enabled and self.track.is_live


@dataclass(frozen=True, slots=True)
class ScreenShareVideo:
    track: ControllableTrack
    camera: Optional[ControllableTrack] = None
    camera_enabled: bool = False


LocalVideoSource = Union[NoVideo, CameraVideo, ScreenShareVideo]


def video_enabled(source: LocalVideoSource) -> bool:
    if isinstance(source, CameraVideo):
        return source.enabled
    if isinstance(source, ScreenShareVideo):
        return source.camera_enabled
    return False


def is_screen_sharing(source: LocalVideoSource) -> bool:
    return isinstance(source, ScreenShareVideo)


@dataclass(frozen=True, slots=True)
class MediaTrackRef:
    """A track the engine is sending, and the sender slot that carries it."""

    kind: TrackKind
    track: Any
    stream_id: Optional[str] = None
    sender_index: int = 0


# --------------------------------------------------------------- track events


class TrackEvent(str, Enum):
    MUTED = "muted"
    UNMUTED = "unmuted"
    ENDED = "ended"


@dataclass(frozen=True, slots=True)
class TrackSignal:
    event: TrackEvent
    track_id: str
    kind: str
    owner: str


def _track_state(track: Any) -> Dict[str, object]:
    if isinstance(track, ControllableTrack):
        # The wrapper stays "live" when only its source ends.
        ready = "live" if track.is_live else "ended"
    else:
        ready = str(getattr(track, "readyState", "live"))
    return {
        "enabled": bool(getattr(track, "enabled", True)),
        "muted": bool(getattr(track, "muted", False)),
        "ready": ready,
    }


class TrackMonitor:
    """
    Poll tracks that expose no change events and publish ``TrackSignal``s.

    One monitor per owner (a peer link or a local stream); all monitors write
    into the same channel so a single consumer sees the events in order.
    """

    _counter = itertools.count(1)

    def __init__(self, owner: str, channel: "asyncio.Queue[TrackSignal]", *, interval: float = 0.25) -> None:
        self.owner = owner
        self.channel = channel
        self.interval = interval
        self._tracks: Dict[str, Any] = {}
        self._last: Dict[str, Dict[str, object]] = {}
        self._timer = PeriodicTimer(f"track-monitor:{owner}:{next(self._counter)}")

    @property
    def running(self) -> bool:
        return self._timer.pending

    def watch(self, track: Any) -> None:
        if track is None:
            return
        self._tracks[track.id] = track
        self._last[track.id] = _track_state(track)
        if not self._timer.pending:
            self._timer.start(self.interval, self.check)

    def forget(self, track: Any) -> None:
        if track is None:
            return
        self._tracks.pop(track.id, None)
        self._last.pop(track.id, None)
        if not self._tracks:
            self._timer.cancel()

    def check(self) -> List[TrackSignal]:
        emitted: List[TrackSignal] = []
        for track_id, track in list(self._tracks.items()):
            previous = self._last.get(track_id) or {}
            current = _track_state(track)
            self._last[track_id] = current
            if current["ready"] == "ended" and previous.get("ready") != "ended":
                emitted.append(TrackSignal(TrackEvent.ENDED, track_id, track.kind, self.owner))
                self._tracks.pop(track_id, None)
                continue
            was_silent = bool(previous.get("muted")) or not previous.get("enabled", True)
            is_silent = bool(current["muted"]) or not current["enabled"]
            if is_silent != was_silent:
                event = TrackEvent.MUTED if is_silent else TrackEvent.UNMUTED
                emitted.append(TrackSignal(event, track_id, track.kind, self.owner))
        for signal in emitted:
            self.channel.put_nowait(signal)
        if not self._tracks:
            self._timer.cancel()
        return emitted

    def cancel(self) -> None:
        self._timer.cancel()
        self._tracks.clear()
        self._last.clear()


__all__ = [
    "CameraVideo",
    "ControllableTrack",
    "LocalStream",
    "LocalVideoSource",
    "MediaTrackRef",
    "NoVideo",
    "ScreenShareVideo",
    "TrackEvent",
    "TrackKind",
    "TrackMonitor",
    "TrackSignal",
    "is_screen_sharing",
    "video_enabled",
]
