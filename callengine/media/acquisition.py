"""
Local capture with constraint fallback.

Devices are opened through ``aiortc.contrib.media.MediaPlayer`` (FFmpeg input
devices).  Opening a device blocks, so it runs in a worker thread.  Each call
type has a ladder of constraint sets; when the preferred set is refused the
next, more relaxed set is tried before giving up with a typed error.
"""

from __future__ import annotations

import asyncio
import errno
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiortc.contrib.media import MediaPlayer

from ..errors import DeviceBusy, DeviceNotFound, MediaError, PermissionDenied, Unsupported
from .settings import MediaSettings
from .tracks import ControllableTrack, LocalStream, TrackKind

LOG = logging.getLogger(__name__)

PlayerFactory = Callable[[str, Optional[str], Dict[str, str]], Any]
DisplayChooser = Callable[[], Awaitable[Optional[str]]]


def _default_player_factory(device: str, format: Optional[str], options: Dict[str, str]) -> Any:
    return MediaPlayer(device, format=format, options=options or None)


def release_player(player: Any) -> None:
    """Stop every track of a player; a MediaPlayer closes its device after that."""

    for track in (getattr(player, "audio", None), getattr(player, "video", None)):
        if track is not None:
            track.stop()


@dataclass
class MediaConstraints:
    """
    One constraint set.  ``None`` means "let the device pick".

    ``device`` overrides the configured capture device for this rung only.
    """

    name: str
    width: Optional[int] = None
    height: Optional[int] = None
    framerate: Optional[int] = None
    sample_rate: Optional[int] = None
    channels: Optional[int] = None
    device: Optional[str] = None
    extra: Dict[str, str] = field(default_factory=dict)

    def video_options(self) -> Dict[str, str]:
        options: Dict[str, str] = {}
        if self.width and self.height:
            options["video_size"] = f"{int(self.width)}x{int(self.height)}"
        if self.framerate:
            options["framerate"] = str(int(self.framerate))
        options.update(self.extra)
        return options

    def audio_options(self) -> Dict[str, str]:
        options: Dict[str, str] = {}
        if self.sample_rate:
            options["sample_rate"] = str(int(self.sample_rate))
        if self.channels:
            options["channels"] = str(int(self.channels))
        options.update(self.extra)
        return options


def classify_media_error(exc: BaseException) -> MediaError:
    """Map a capture failure onto the error the UI must explain."""

    if isinstance(exc, MediaError):
        return exc
    if isinstance(exc, PermissionError):
        return PermissionDenied(str(exc) or None)
    if isinstance(exc, FileNotFoundError):
        return DeviceNotFound(str(exc) or None)
    code = getattr(exc, "errno", None)
    if code in (errno.EBUSY, errno.EAGAIN):
        return DeviceBusy(str(exc) or None)
    if code in (errno.ENODEV, errno.ENOENT, errno.ENXIO):
        return DeviceNotFound(str(exc) or None)
    if code in (errno.EACCES, errno.EPERM):
        return PermissionDenied(str(exc) or None)
    if isinstance(exc, (ImportError, NotImplementedError)):
        return Unsupported(str(exc) or None)
    message = str(exc).lower()
    if "format" in message and ("unknown" in message or "no container" in message):
        return Unsupported(str(exc))
    return MediaError(str(exc) or None)


class MediaAcquirer:
    """
    Obtain local microphone/camera/screen streams.
    """

    def __init__(
        self,
        settings: Optional[MediaSettings] = None,
        *,
        player_factory: Optional[PlayerFactory] = None,
        display_chooser: Optional[DisplayChooser] = None,
    ) -> None:
        self.settings = settings or MediaSettings()
        self._player_factory = player_factory or _default_player_factory
        self._display_chooser = display_chooser

    # ---------------------------------------------------------------- ladders

    def processed_audio_device(self) -> Optional[str]:
        settings = self.settings
        if settings.echo_cancellation or settings.noise_suppression:
            return settings.processed_audio_device
        return None

    def audio_ladder(self, call_type: str) -> List[MediaConstraints]:
        preferred = MediaConstraints(
            name="preferred",
            sample_rate=self.settings.sample_rate,
            channels=1 if call_type == "voice" else None,
            device=self.processed_audio_device(),
        )
        return [preferred, MediaConstraints(name="any-audio")]

    def video_ladder(self) -> List[MediaConstraints]:
        settings = self.settings
        return [
            MediaConstraints(
                name="preferred",
                width=settings.width,
                height=settings.height,
                framerate=settings.framerate,
            ),
            MediaConstraints(name="relaxed", framerate=settings.framerate),
            MediaConstraints(name="any-video"),
        ]

    # ---------------------------------------------------------------- capture

    async def _open(self, device: Optional[str], format: Optional[str], options: Dict[str, str]) -> Any:
        if not device:
            raise DeviceNotFound("No capture device configured.")
        return await asyncio.to_thread(self._player_factory, device, format, dict(options))

    async def _open_with_ladder(
        self,
        label: str,
        device: Optional[str],
        format: Optional[str],
        ladder: List[MediaConstraints],
        options_for: Callable[[MediaConstraints], Dict[str, str]],
    ) -> Any:
        last_error: Optional[MediaError] = None
        for constraints in ladder:
            try:
                player = await self._open(constraints.device or device, format, options_for(constraints))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error = classify_media_error(exc)
                LOG.info("Opening %s with %s constraints failed: %s", label, constraints.name, exc)
                if isinstance(error, PermissionDenied):
                    raise error from exc
                last_error = error
                continue
            if constraints is not ladder[0]:
                LOG.info("Opened %s with relaxed '%s' constraints", label, constraints.name)
            return player
        assert last_error is not None
        raise last_error

    async def acquire(self, call_type: str) -> LocalStream:
        """
        Microphone, plus camera for video calls.
        """

        settings = self.settings
        stream = LocalStream(origin="user")
        audio_player = await self._open_with_ladder(
            "microphone",
            settings.audio_device,
            settings.audio_format,
            self.audio_ladder(call_type),
            MediaConstraints.audio_options,
        )
        if getattr(audio_player, "audio", None) is None:
            release_player(audio_player)
            raise DeviceNotFound("The microphone produced no audio track.")
        stream.handles.append(audio_player)
        stream.add_track(ControllableTrack(audio_player.audio, source_kind=TrackKind.AUDIO, label="microphone"))

        if call_type == "video":
            try:
                camera = await self.acquire_camera()
            except MediaError:
                stream.stop()
                raise
            for track in camera.tracks:
                stream.add_track(track)
            stream.handles.extend(camera.handles)
        return stream

    async def acquire_camera(self) -> LocalStream:
        settings = self.settings
        player = await self._open_with_ladder(
            "camera",
            settings.video_device,
            settings.video_format,
            self.video_ladder(),
            MediaConstraints.video_options,
        )
        if getattr(player, "video", None) is None:
            release_player(player)
            raise DeviceNotFound("The camera produced no video track.")
        track = ControllableTrack(player.video, source_kind=TrackKind.VIDEO, label="camera")
        return LocalStream(tracks=[track], origin="user", handles=[player])

    async def acquire_display(self) -> Optional[LocalStream]:
        """
        Screen capture.  Returns ``None`` when the user cancels the picker.
        """

        settings = self.settings
        device: Optional[str] = settings.screen_device
        if self._display_chooser is not None:
            device = await self._display_chooser()
            if device is None:
                LOG.info("Screen sharing cancelled by user")
                return None

        options = {"framerate": "15", "draw_mouse": "1"}
        try:
            player = await self._open(device, settings.screen_format, options)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise classify_media_error(exc) from exc

        if getattr(player, "video", None) is None:
            release_player(player)
            raise Unsupported("Screen capture produced no video track.")
        track = ControllableTrack(player.video, source_kind=TrackKind.SCREEN, label="screen")
        return LocalStream(tracks=[track], origin="display", handles=[player])


__all__ = ["MediaAcquirer", "MediaConstraints", "classify_media_error"]
