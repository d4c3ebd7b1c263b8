"""
Negotiated connection plus the bookkeeping the signaling handler needs.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from ..errors import Closed
from ..media.tracks import LocalStream, MediaTrackRef, TrackKind

LOG = logging.getLogger(__name__)


class SignalingState(str, Enum):
    STABLE = "stable"
    HAVE_LOCAL_OFFER = "have-local-offer"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    CLOSED = "closed"

    @classmethod
    def parse(cls, value: Optional[str]) -> "SignalingState":
        try:
            return cls(str(value or "stable"))
        except ValueError:
            # pranswer states are never produced by this engine.
            return cls.STABLE


@dataclass
class RemoteStream:
    """Tracks received from the remote participant."""

    tracks: List[Any] = field(default_factory=list)

    def add(self, track: Any) -> None:
        if track not in self.tracks:
            self.tracks.append(track)

    def discard(self, track: Any) -> None:
        if track in self.tracks:
            self.tracks.remove(track)

    def video_tracks(self) -> List[Any]:
        return [track for track in self.tracks if track.kind == "video"]

    def live_video(self) -> bool:
        return any(getattr(track, "readyState", "live") == "live" for track in self.video_tracks())

    def stop(self) -> None:
        for track in self.tracks:
            try:
                track.stop()
            except Exception:  # pragma: no cover - defensive
                LOG.debug("Remote track failed to stop", exc_info=True)
        self.tracks.clear()


class PeerLink:
    """
    One peer connection and its negotiation bookkeeping.

    ``signaling_state`` is read from the connection itself; the link only
    records what the connection does not: buffered answers, queued
    candidates and which half of the handshake has already happened.
    """

    def __init__(
        self,
        connection: Any,
        *,
        remote_id: str,
        strategy: str = "",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.connection = connection
        self.remote_id = remote_id
        self.strategy = strategy
        self.logger = logger or LOG.getChild(f"link.{remote_id[:8]}")

        self.local_stream: Optional[LocalStream] = None
        self.remote_stream = RemoteStream()
        self.screen_share_stream: Optional[LocalStream] = None
        self.senders: Dict[str, Any] = {}

        self.pending_remote_answer: Optional[Any] = None
        self.ice_candidate_queue: List[Any] = []
        self.offer_in_flight = False
        self.answer_applied = False
        self.answer_sent = False
        self.offer_epoch = 0
        self.answered_epoch = 0
        self.last_remote_offer_sdp: Optional[str] = None

        self.offer_task: Optional[asyncio.Task] = None
        self.draining = False
        self._seen_candidates: Set[tuple] = set()
        self._changed = asyncio.Event()
        self._closed = False
        self._close_task: Optional[asyncio.Task] = None
        self._listeners: List[Callable[["PeerLink", str], None]] = []
        self._track_listeners: List[Callable[["PeerLink", Any], None]] = []

        self._bind_connection_events()

    # ------------------------------------------------------------------ state

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def signaling_state(self) -> SignalingState:
        if self._closed:
            return SignalingState.CLOSED
        return SignalingState.parse(getattr(self.connection, "signalingState", "stable"))

    @property
    def connection_state(self) -> str:
        if self._closed:
            return "closed"
        return str(getattr(self.connection, "connectionState", "new"))

    @property
    def local_description(self) -> Optional[Any]:
        return getattr(self.connection, "localDescription", None)

    @property
    def remote_description(self) -> Optional[Any]:
        return getattr(self.connection, "remoteDescription", None)

    @property
    def offer_pending(self) -> bool:
        return self.offer_task is not None and not self.offer_task.done()

    def notify(self) -> None:
        """Wake everything blocked in :meth:`wait_for_state`."""

        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    async def wait_for_state(self, *states: SignalingState) -> SignalingState:
        while True:
            if self._closed:
                raise Closed(f"Link to {self.remote_id} closed while waiting for {[s.value for s in states]}")
            current = self.signaling_state
            if current in states:
                return current
            await self._changed.wait()

    # ----------------------------------------------------------- connection hooks

    def add_listener(self, listener: Callable[["PeerLink", str], None]) -> None:
        """Receive ``(link, connection_state)`` whenever the connection state changes."""

        self._listeners.append(listener)

    def add_track_listener(self, listener: Callable[["PeerLink", Any], None]) -> None:
        self._track_listeners.append(listener)

    def _bind_connection_events(self) -> None:
        register = getattr(self.connection, "on", None)
        if register is None:
            return
        register("track", self._on_track)
        register("connectionstatechange", self._on_connection_state)
        register("signalingstatechange", self.notify)

    def _on_track(self, track: Any) -> None:
        self.logger.info("Remote %s track received from %s", track.kind, self.remote_id)
        self.remote_stream.add(track)
        register = getattr(track, "on", None)
        if register is not None:
            register("ended", lambda: self.remote_stream.discard(track))
        self.notify()
        for listener in list(self._track_listeners):
            try:
                listener(self, track)
            except Exception:  # pragma: no cover - defensive
                self.logger.exception("Track listener failed")

    def _on_connection_state(self) -> None:
        state = self.connection_state
        self.logger.info("Connection to %s is %s", self.remote_id, state)
        for listener in list(self._listeners):
            try:
                listener(self, state)
            except Exception:  # pragma: no cover - listener failures must not break the connection
                self.logger.exception("Connection state listener failed")

    # ------------------------------------------------------------- candidates

    def accept_candidate(self, key: tuple) -> bool:
        """Record a candidate key; ``False`` for duplicates or after close."""

        if self._closed or key in self._seen_candidates:
            return False
        self._seen_candidates.add(key)
        return True

    # ---------------------------------------------------------------- senders

    def track_refs(self) -> List[MediaTrackRef]:
        """Tracks currently attached to this link's senders, in sender order."""

        refs: List[MediaTrackRef] = []
        for index, (slot, sender) in enumerate(self.senders.items()):
            track = getattr(sender, "track", None)
            if track is None:
                continue
            # Relay proxies carry no source kind; the slot names it then.
            kind = getattr(track, "source_kind", None) or TrackKind(slot)
            stream = self.screen_share_stream if kind is TrackKind.SCREEN else self.local_stream
            stream_id = stream.id if stream is not None else None
            refs.append(MediaTrackRef(kind=kind, track=track, stream_id=stream_id, sender_index=index))
        return refs

    # ------------------------------------------------------------------ close

    async def close(self) -> None:
        """Close the connection once; concurrent callers await the same close."""

        if self._close_task is None:
            self._close_task = asyncio.ensure_future(self._close())
        await asyncio.shield(self._close_task)

    async def _close(self) -> None:
        self._closed = True
        task, self.offer_task = self.offer_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self.pending_remote_answer = None
        self.ice_candidate_queue.clear()
        self.offer_in_flight = False
        self.notify()
        self.remote_stream.stop()
        try:
            await self.connection.close()
        except Exception:
            self.logger.exception("Closing connection to %s failed", self.remote_id)
        self.senders.clear()
        self.local_stream = None
        self.screen_share_stream = None
        self.logger.info("Link to %s closed", self.remote_id)


__all__ = ["PeerLink", "RemoteStream", "SignalingState"]
