"""
Capture device settings, with per-platform FFmpeg input defaults.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional


def _platform_devices() -> Dict[str, Optional[str]]:
    if sys.platform == "darwin":
        return {
            "audio_device": "none:0",
            "audio_format": "avfoundation",
            "video_device": "0:none",
            "video_format": "avfoundation",
            "screen_device": "1:none",
            "screen_format": "avfoundation",
        }
    if sys.platform.startswith("win"):
        return {
            "audio_device": "audio=Microphone",
            "audio_format": "dshow",
            "video_device": "video=Integrated Camera",
            "video_format": "dshow",
            "screen_device": "desktop",
            "screen_format": "gdigrab",
        }
    return {
        "audio_device": "default",
        "audio_format": "pulse",
        "video_device": "/dev/video0",
        "video_format": "v4l2",
        "screen_device": os.environ.get("DISPLAY", ":0") + ".0",
        "screen_format": "x11grab",
    }


@dataclass
class MediaSettings:
    """Capture devices and the preferred constraint set."""

    audio_device: Optional[str] = None
    audio_format: Optional[str] = None
    video_device: Optional[str] = None
    video_format: Optional[str] = None
    screen_device: Optional[str] = None
    screen_format: Optional[str] = None
    width: int = 1280
    height: int = 720
    framerate: int = 30
    sample_rate: int = 48000
    echo_cancellation: bool = True
    noise_suppression: bool = True
    # Capture source with echo cancellation and noise suppression applied,
    # e.g. the source created by PulseAudio's module-echo-cancel.
    processed_audio_device: Optional[str] = None

    def __post_init__(self) -> None:
        for key, value in _platform_devices().items():
            if getattr(self, key) is None:
                setattr(self, key, value)

    @classmethod
    def from_dict(cls, payload: Optional[Mapping[str, Any]]) -> "MediaSettings":
        payload = dict(payload or {})
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{key: value for key, value in payload.items() if key in known})


__all__ = ["MediaSettings"]
