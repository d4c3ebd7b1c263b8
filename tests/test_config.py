from pathlib import Path

from callengine.config import EngineConfig, load_config, read_profiles
from callengine.rtc.ice import IceServer, IceStrategy, default_ice_ladder

PROFILES = """
default:
  no_answer_timeout: 30
  media:
    width: 1920
    height: 1080
lan:
  no_answer_timeout: 45
  track_poll_interval: 0.5
  ice_strategies:
    - name: empty
      servers: []
  media:
    width: 640
    height: 480
    video_device: /dev/video2
"""


def write_profiles(tmp_path: Path) -> Path:
    path = tmp_path / "profiles.yaml"
    path.write_text(PROFILES, encoding="utf-8")
    return path


def test_load_named_profile(tmp_path: Path) -> None:
    config = load_config("lan", path=write_profiles(tmp_path))

    assert config.profile == "lan"
    assert config.no_answer_timeout == 45.0
    assert config.track_poll_interval == 0.5
    assert [strategy.name for strategy in config.ice_strategies] == ["empty"]
    assert config.media.width == 640
    assert config.media.video_device == "/dev/video2"


def test_unknown_profile_falls_back_to_default(tmp_path: Path) -> None:
    config = load_config("missing", path=write_profiles(tmp_path))

    assert config.no_answer_timeout == 30.0
    assert config.media.width == 1920
    assert [strategy.name for strategy in config.ice_strategies] == [s.name for s in default_ice_ladder()]


def test_missing_profiles_file_uses_builtin_defaults(tmp_path: Path) -> None:
    config = load_config(path=tmp_path / "nope.yaml")

    assert config == EngineConfig(media=config.media)
    assert [strategy.name for strategy in config.ice_strategies] == ["full", "single-stun-pooled", "single-stun", "empty"]


def test_bundled_profiles(monkeypatch) -> None:
    monkeypatch.delenv("CALLENGINE_PROFILES", raising=False)
    profiles = read_profiles()

    assert {"default", "lan"} <= set(profiles)


def test_profiles_path_override(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("CALLENGINE_PROFILES", str(write_profiles(tmp_path)))

    assert load_config("lan").no_answer_timeout == 45.0


def test_ice_strategy_from_dict() -> None:
    strategy = IceStrategy.from_dict(
        {
            "name": "turn",
            "servers": ["stun:stun.example.org", {"urls": "turn:turn.example.org", "username": "u", "credential": "c"}],
            "candidate_pool_size": 4,
            "bundlePolicy": "max-bundle",
        }
    )

    assert strategy.servers[0] == IceServer(urls=["stun:stun.example.org"])
    assert strategy.servers[1].to_dict() == {"urls": ["turn:turn.example.org"], "username": "u", "credential": "c"}
    assert strategy.iter_configuration_properties() == {"bundlePolicy": "max-bundle", "iceCandidatePoolSize": 4}
    assert strategy.describe()["name"] == "turn"
