"""
Track negotiation: decide between a track swap and a fresh offer.

A sender that already exists for a slot only needs ``replaceTrack``; adding
a sender changes the session description and needs a full offer/answer
round.  Disabling never removes anything, it only gates the track.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, List, Optional, Tuple

from aiortc.contrib.media import MediaRelay

from ..errors import Closed, CommandRejected, MediaError
from ..media.acquisition import MediaAcquirer
from ..media.tracks import (
    CameraVideo,
    ControllableTrack,
    LocalStream,
    LocalVideoSource,
    NoVideo,
    ScreenShareVideo,
    TrackMonitor,
    is_screen_sharing,
    video_enabled,
)
from .peer_link import PeerLink
from .signaling import SignalingHandler

LOG = logging.getLogger(__name__)

AUDIO_SLOT = "audio"
VIDEO_SLOT = "video"
SCREEN_SLOT = "screen"

Target = Tuple[PeerLink, SignalingHandler]
NoticeSink = Callable[[str, str, str], None]


async def replace_track(sender: Any, track: Optional[Any]) -> None:
    # aiortc's replaceTrack is synchronous; browsers-style shims return a future.
    result = sender.replaceTrack(track)
    if inspect.isawaitable(result):
        await result


@dataclass
class LocalMedia:
    """Everything the local side is capturing for the current call."""

    stream: Optional[LocalStream] = None
    video: LocalVideoSource = field(default_factory=NoVideo)
    screen_stream: Optional[LocalStream] = None

    @property
    def muted(self) -> bool:
        tracks = self.stream.audio_tracks() if self.stream else []
        return bool(tracks) and not any(track.enabled for track in tracks)

    @property
    def video_enabled(self) -> bool:
        return video_enabled(self.video)

    @property
    def screen_sharing(self) -> bool:
        return is_screen_sharing(self.video)

    def camera_track(self) -> Optional[ControllableTrack]:
        if isinstance(self.video, CameraVideo):
            return self.video.track
        if isinstance(self.video, ScreenShareVideo):
            return self.video.camera
        return None

    def audio_track(self) -> Optional[ControllableTrack]:
        tracks = self.stream.audio_tracks() if self.stream else []
        return tracks[0] if tracks else None

    def live_tracks(self) -> List[ControllableTrack]:
        tracks: List[ControllableTrack] = []
        for stream in (self.stream, self.screen_stream):
            if stream is not None:
                tracks.extend(track for track in stream.tracks if track.is_live)
        return tracks

    def stop(self) -> None:
        for stream in (self.screen_stream, self.stream):
            if stream is not None:
                stream.stop()
        self.screen_stream = None
        self.video = NoVideo()


class TrackNegotiator:
    """
    Mutate the tracks flowing over the current links.

    In a 1:1 call there is exactly one link and screen share replaces the
    camera on the video sender.  In a group call every link gets the same
    local media through a ``MediaRelay`` and screen share is an extra sender
    on each link; links negotiate independently.
    """

    def __init__(
        self,
        media: LocalMedia,
        acquirer: MediaAcquirer,
        targets: Callable[[], List[Target]],
        *,
        group: bool = False,
        monitor: Optional[TrackMonitor] = None,
        notice: Optional[NoticeSink] = None,
    ) -> None:
        self.media = media
        self.acquirer = acquirer
        self.targets = targets
        self.group = group
        self.monitor = monitor
        self._notice = notice
        self._relay = MediaRelay() if group else None
        self._lock = asyncio.Lock()
        self.renegotiations = 0

    def _outgoing(self, track: Optional[Any]) -> Optional[Any]:
        if track is None or self._relay is None:
            return track
        return self._relay.subscribe(track)

    def _publish(self, level: str, code: str, message: str) -> None:
        if self._notice is not None:
            self._notice(level, code, message)

    # -------------------------------------------------------- link setup

    def attach(self, link: PeerLink) -> None:
        """Add the current local media to a fresh link (before its first offer/answer)."""

        media = self.media
        link.local_stream = media.stream
        audio = media.audio_track()
        if audio is not None and AUDIO_SLOT not in link.senders:
            link.senders[AUDIO_SLOT] = link.connection.addTrack(self._outgoing(audio))
        video = media.video
        camera = media.camera_track()
        if isinstance(video, ScreenShareVideo) and not self.group:
            link.senders[VIDEO_SLOT] = link.connection.addTrack(video.track)
            link.screen_share_stream = media.screen_stream
            return
        if camera is not None and camera.is_live and VIDEO_SLOT not in link.senders:
            link.senders[VIDEO_SLOT] = link.connection.addTrack(self._outgoing(camera))
        if isinstance(video, ScreenShareVideo) and SCREEN_SLOT not in link.senders:
            link.senders[SCREEN_SLOT] = link.connection.addTrack(self._outgoing(video.track))
            link.screen_share_stream = media.screen_stream

    # ------------------------------------------------------------- helpers

    async def _renegotiate_all(self, pending: List[Target], what: str) -> int:
        """Renegotiate each link on its own; returns how many failed."""

        if not pending:
            return 0
        results = await asyncio.gather(
            *(self._renegotiate(link, handler, what) for link, handler in pending),
            return_exceptions=True,
        )
        failed = 0
        for (link, _handler), result in zip(pending, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                failed += 1
                link.logger.warning("Renegotiation (%s) with %s failed", what, link.remote_id, exc_info=result)
        if failed:
            self._publish(
                "warning",
                "renegotiation-failed",
                "Could not update the call media. The call continues with the previous setup.",
            )
        return failed

    async def _renegotiate(self, link: PeerLink, handler: SignalingHandler, what: str) -> None:
        self.renegotiations += 1
        link.logger.info("Renegotiating with %s: %s", link.remote_id, what)
        try:
            await handler.renegotiate()
        except Closed:
            link.logger.info("Link to %s closed during renegotiation", link.remote_id)

    async def _put_on_senders(self, slot: str, track: Optional[Any]) -> List[Target]:
        """Swap ``track`` onto ``slot`` of every link; return links that needed a new sender."""

        added: List[Target] = []
        for link, handler in self.targets():
            if link.closed:
                continue
            sender = link.senders.get(slot)
            if sender is not None:
                await replace_track(sender, self._outgoing(track))
            elif track is not None:
                link.senders[slot] = link.connection.addTrack(self._outgoing(track))
                added.append((link, handler))
        return added

    # ----------------------------------------------------------------- audio

    def toggle_mute(self) -> bool:
        """Flip the local audio tracks; returns the new muted flag."""

        tracks = self.media.stream.audio_tracks() if self.media.stream else []
        if not tracks:
            raise CommandRejected("There is no microphone track to mute.")
        muted = not self.media.muted
        for track in tracks:
            track.enabled = not muted
        LOG.info("Microphone %s", "muted" if muted else "unmuted")
        return muted

    # ----------------------------------------------------------------- video

    async def enable_video(self) -> bool:
        """Returns ``True`` when a renegotiation round was needed."""

        async with self._lock:
            media = self.media
            if media.screen_sharing and not self.group:
                raise CommandRejected("Stop screen sharing before turning the camera on.")
            camera = media.camera_track()
            if camera is not None and camera.is_live:
                camera.enabled = True
                self._set_camera(camera)
                LOG.info("Camera re-enabled without renegotiation")
                return False

            stream = await self.acquirer.acquire_camera()
            track = stream.tracks[0]
            if media.stream is None:
                media.stream = LocalStream(origin="user")
            if camera is not None:
                media.stream.remove_track(camera)
            media.stream.add_track(track)
            media.stream.handles.extend(stream.handles)
            self._set_camera(track)
            if self.monitor is not None:
                self.monitor.watch(track)

            added = await self._put_on_senders(VIDEO_SLOT, track)
            await self._renegotiate_all(added, "camera added")
            return bool(added)

    def _set_camera(self, camera: ControllableTrack) -> None:
        video = self.media.video
        if isinstance(video, ScreenShareVideo):
            self.media.video = replace(video, camera=camera, camera_enabled=camera.enabled)
        else:
            self.media.video = CameraVideo(camera)

    async def disable_video(self) -> None:
        # Waits for an enable still acquiring the camera, so the last command wins.
        async with self._lock:
            video = self.media.video
            camera = self.media.camera_track()
            if camera is not None:
                camera.enabled = False
            if isinstance(video, ScreenShareVideo):
                self.media.video = replace(video, camera_enabled=False)
            LOG.info("Camera disabled")

    # ---------------------------------------------------------- screen share

    async def start_screen_share(self) -> bool:
        """Returns ``False`` when the user cancelled the picker."""

        async with self._lock:
            media = self.media
            if media.screen_sharing:
                return True
            display = await self.acquirer.acquire_display()
            if display is None:
                return False
            screen = display.tracks[0]
            camera = media.camera_track()
            previous = media.video
            media.screen_stream = display
            media.video = ScreenShareVideo(
                track=screen,
                camera=camera,
                camera_enabled=video_enabled(previous),
            )
            if self.monitor is not None:
                self.monitor.watch(screen)
            for link, _handler in self.targets():
                link.screen_share_stream = display

            slot = SCREEN_SLOT if self.group else VIDEO_SLOT
            added = await self._put_on_senders(slot, screen)
            await self._renegotiate_all(added, "screen share added")
            LOG.info("Screen sharing started")
            return True

    async def stop_screen_share(self) -> None:
        async with self._lock:
            media = self.media
            video = media.video
            if not isinstance(video, ScreenShareVideo):
                return
            display, media.screen_stream = media.screen_stream, None
            if self.monitor is not None:
                self.monitor.forget(video.track)

            if self.group:
                # The emptied screen sender stays; the next share reuses it.
                await self._put_on_senders(SCREEN_SLOT, None)
                media.video = CameraVideo(video.camera) if video.camera is not None else NoVideo()
            else:
                await self._restore_camera(video)

            for link, _handler in self.targets():
                link.screen_share_stream = None
            if display is not None:
                display.stop()
            LOG.info("Screen sharing stopped")

    async def _restore_camera(self, video: ScreenShareVideo) -> None:
        media = self.media
        camera = video.camera if video.camera is not None and video.camera.is_live else None
        if camera is None and video.camera_enabled:
            try:
                stream = await self.acquirer.acquire_camera()
            except MediaError as exc:
                LOG.warning("Camera unavailable after screen share: %s", exc)
                self._publish("warning", "camera-unavailable", exc.remediation)
                camera = None
            else:
                camera = stream.tracks[0]
                if media.stream is None:
                    media.stream = LocalStream(origin="user")
                if video.camera is not None:
                    media.stream.remove_track(video.camera)
                media.stream.add_track(camera)
                media.stream.handles.extend(stream.handles)
                if self.monitor is not None:
                    self.monitor.watch(camera)

        if camera is None:
            await self._put_on_senders(VIDEO_SLOT, None)
            media.video = NoVideo()
            return
        camera.enabled = video.camera_enabled
        added = await self._put_on_senders(VIDEO_SLOT, camera)
        media.video = CameraVideo(camera)
        await self._renegotiate_all(added, "camera restored")

    # ----------------------------------------------------------- snapshot

    def describe_tracks(self) -> dict:
        media = self.media
        return {
            "audio": not media.muted and media.audio_track() is not None,
            "video": media.video_enabled,
            "screen": media.screen_sharing,
        }


__all__ = ["LocalMedia", "TrackNegotiator", "replace_track"]
