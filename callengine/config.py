"""
Engine configuration and profile loading.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .media.settings import MediaSettings
from .rtc.ice import IceStrategy, default_ice_ladder, ladder_from_config

LOG = logging.getLogger(__name__)

CONFIG_DIR = Path(__file__).resolve().parent / "configs"
PROFILES_PATH = CONFIG_DIR / "profiles.yaml"
ENV_PROFILES_VAR = "CALLENGINE_PROFILES"
DEFAULT_PROFILE = "default"


@dataclass
class EngineConfig:
    """Top level engine configuration."""

    profile: str = DEFAULT_PROFILE
    self_id: str = ""
    display_name: str = ""
    avatar: Optional[str] = None
    no_answer_timeout: float = 60.0
    duration_tick: float = 1.0
    track_poll_interval: float = 0.25
    presence_url: Optional[str] = None
    ice_strategies: List[IceStrategy] = field(default_factory=default_ice_ladder)
    media: MediaSettings = field(default_factory=MediaSettings)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], *, profile: str = DEFAULT_PROFILE) -> "EngineConfig":
        return cls(
            profile=profile,
            self_id=str(payload.get("self_id") or ""),
            display_name=str(payload.get("display_name") or ""),
            avatar=payload.get("avatar"),
            no_answer_timeout=float(payload.get("no_answer_timeout", 60.0)),
            duration_tick=float(payload.get("duration_tick", 1.0)),
            track_poll_interval=float(payload.get("track_poll_interval", 0.25)),
            presence_url=payload.get("presence_url"),
            ice_strategies=ladder_from_config(payload.get("ice_strategies")),
            media=MediaSettings.from_dict(payload.get("media")),
        )


def profiles_path() -> Path:
    override = os.environ.get(ENV_PROFILES_VAR)
    if override:
        return Path(override).expanduser()
    return PROFILES_PATH


def read_profiles(path: Optional[Path] = None) -> Dict[str, dict]:
    target = path or profiles_path()
    try:
        with target.open("r", encoding="utf-8") as handle:
            profiles = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        LOG.info("No profiles file at %s; using built-in defaults.", target)
        return {}
    if not isinstance(profiles, dict):
        LOG.warning("Ignoring malformed profiles file %s", target)
        return {}
    return profiles


def load_config(profile: str = DEFAULT_PROFILE, *, path: Optional[Path] = None) -> EngineConfig:
    profiles = read_profiles(path)
    if profile not in profiles:
        if profiles:
            LOG.warning("Unknown profile '%s'; falling back to '%s'.", profile, DEFAULT_PROFILE)
        payload = profiles.get(DEFAULT_PROFILE) or {}
    else:
        payload = profiles.get(profile) or {}
    return EngineConfig.from_dict(payload, profile=profile)


__all__ = ["EngineConfig", "MediaSettings", "load_config", "read_profiles", "profiles_path"]
