from __future__ import annotations

from pathlib import Path

import pytest

from config import AppConfig, build_export_settings, parse_resolution
from errors import InvalidSettings

KEYFRAMES = [
    {"time": 0, "latitude": 35.0, "longitude": 139.0, "zoom": 10},
    {"time": 4, "latitude": 35.5, "longitude": 139.5, "zoom": 14, "curve": "linear"},
]


def test_parse_resolution_variants() -> None:
    assert parse_resolution("1080p") == (1920, 1080)
    assert parse_resolution("641x361") == (640, 360)
    assert parse_resolution([320, 180]) == (320, 180)
    assert parse_resolution(None) == (1280, 720)
    with pytest.raises(InvalidSettings):
        parse_resolution("huge")
    with pytest.raises(InvalidSettings):
        parse_resolution("1x1")


def test_build_export_settings_defaults_and_clamps() -> None:
    config = AppConfig(concurrency=3, frame_delay_ms=250, tile_provider="osm")
    settings = build_export_settings(
        {"keyframes": list(reversed(KEYFRAMES)), "duration": 4, "fps": 240, "concurrency": 99},
        config,
    )
    assert [k.time for k in settings.keyframes] == [0.0, 4.0]
    assert settings.fps == 60
    assert settings.concurrency == 16
    assert settings.frame_delay_ms == 250
    assert settings.provider == "osm"
    assert (settings.width, settings.height) == (1280, 720)
    assert settings.quality == "high" and settings.codec == "h264"


def test_wait_time_alias() -> None:
    settings = build_export_settings({"keyframes": KEYFRAMES, "waitTime": 1200}, AppConfig())
    assert settings.frame_delay_ms == 1200


@pytest.mark.parametrize("patch", [
    {"duration": 0},
    {"duration": 100000},
    {"fps": "fast"},
    {"quality": "ultra"},
    {"codec": "vp9"},
    {"bitrate": -5},
    {"resolution": "wide"},
    {"keyframes": [{"time": 1, "latitude": 0}]},
    {"keyframes": [{"time": -1, "latitude": 0, "longitude": 0, "zoom": 1}]},
    {"duration": "nan"},
    {"duration": float("inf")},
    {"keyframes": [{"time": "nan", "latitude": 0, "longitude": 0, "zoom": 1}]},
    {"keyframes": [{"time": 1, "latitude": 0, "longitude": "inf", "zoom": 1}]},
])
def test_invalid_requests(patch: dict) -> None:
    data = {"keyframes": KEYFRAMES, "duration": 4, **patch}
    with pytest.raises(InvalidSettings):
        build_export_settings(data, AppConfig())


def test_duplicate_keyframe_times_are_invalid() -> None:
    dup = KEYFRAMES + [{"time": 4, "latitude": 1, "longitude": 1, "zoom": 3}]
    with pytest.raises(InvalidSettings, match="already exists"):
        build_export_settings({"keyframes": dup}, AppConfig())


def test_from_env(monkeypatch) -> None:
    monkeypatch.setenv("PREVIZ_OUTPUT_DIR", "/tmp/previz-out")
    monkeypatch.setenv("PREVIZ_CONCURRENCY", "64")
    monkeypatch.setenv("PREVIZ_HEADLESS", "false")
    monkeypatch.setenv("PREVIZ_RETENTION_SEC", "30")
    config = AppConfig.from_env()
    assert config.output_dir == Path("/tmp/previz-out")
    assert config.concurrency == 16
    assert config.headless is False
    assert config.retention_sec == 30.0
    assert config.sessions_file == Path("/tmp/previz-out/sessions.json")
    assert config.frames_root == Path("/tmp/previz-out/frames")
