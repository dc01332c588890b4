from __future__ import annotations

import math
import os
import re
from dataclasses import dataclass
from pathlib import Path

from errors import DuplicateKeyframeError, InvalidSettings
from keyframe_store import KeyframeStore
from models import ExportSettings, Keyframe

RESOLUTION_PRESETS = {
    "270p": (480, 270),
    "480p": (854, 480),
    "720p": (1280, 720),
    "1080p": (1920, 1080),
    "1440p": (2560, 1440),
    "4k": (3840, 2160),
}

QUALITY_LEVELS = ("high", "medium", "low")
CODECS = ("h264", "h265")

MIN_FPS, MAX_FPS = 1, 60
MAX_CONCURRENCY = 16
MAX_DURATION_SEC = 600.0

_RESOLUTION_RE = re.compile(r"^\s*(\d+)\s*[xX×]\s*(\d+)\s*$")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off", ""}


@dataclass
class AppConfig:
    output_dir: Path = Path("output")
    retention_sec: float = 600.0
    settle_timeout_sec: float = 2.0
    settle_poll_sec: float = 0.02
    max_in_flight: int = 8
    concurrency: int = 4
    frame_delay_ms: int = 500
    tile_provider: str = "esri"
    tile_api_key: str = ""
    headless: bool = True

    @classmethod
    def from_env(cls) -> "AppConfig":
        return cls(
            output_dir=Path(os.getenv("PREVIZ_OUTPUT_DIR", "output")),
            retention_sec=float(os.getenv("PREVIZ_RETENTION_SEC", "600")),
            settle_timeout_sec=float(os.getenv("PREVIZ_SETTLE_TIMEOUT_SEC", "2.0")),
            settle_poll_sec=float(os.getenv("PREVIZ_SETTLE_POLL_SEC", "0.02")),
            max_in_flight=max(int(os.getenv("PREVIZ_MAX_IN_FLIGHT", "8")), 1),
            concurrency=min(max(int(os.getenv("PREVIZ_CONCURRENCY", "4")), 1), MAX_CONCURRENCY),
            frame_delay_ms=max(int(os.getenv("PREVIZ_FRAME_DELAY_MS", "500")), 0),
            tile_provider=os.getenv("PREVIZ_TILE_PROVIDER", "esri"),
            tile_api_key=os.getenv("PREVIZ_TILE_API_KEY", ""),
            headless=_env_bool("PREVIZ_HEADLESS", True),
        )

    @property
    def sessions_file(self) -> Path:
        return self.output_dir / "sessions.json"

    @property
    def frames_root(self) -> Path:
        return self.output_dir / "frames"

    @property
    def artifacts_root(self) -> Path:
        return self.output_dir / "videos"


def parse_resolution(value: str | tuple[int, int] | list[int] | None) -> tuple[int, int]:
    """'720p', '1280x720' or (w, h) -> even (w, h)."""
    if value is None:
        value = "720p"
    if isinstance(value, (tuple, list)):
        width, height = int(value[0]), int(value[1])
    elif value in RESOLUTION_PRESETS:
        width, height = RESOLUTION_PRESETS[value]
    else:
        match = _RESOLUTION_RE.match(str(value))
        if not match:
            raise InvalidSettings(f"unrecognised resolution: {value!r}")
        width, height = int(match.group(1)), int(match.group(2))

    # yuv420p needs even dimensions
    width -= width % 2
    height -= height % 2
    if width <= 0 or height <= 0:
        raise InvalidSettings(f"resolution must be positive, got {width}x{height}")
    return width, height


def build_export_settings(data: dict, config: AppConfig) -> ExportSettings:
    """Validate a JSON export request into ExportSettings."""
    try:
        keyframes = tuple(Keyframe.from_dict(k) for k in data.get("keyframes") or [])
        duration = float(data.get("duration", 10))
        fps = int(data.get("fps", 30))
        bitrate = data.get("bitrate")
        bitrate = int(bitrate) if bitrate not in (None, "") else None
        concurrency = int(data.get("concurrency", config.concurrency))
        frame_delay_ms = int(data.get("waitTime", data.get("frame_delay_ms", config.frame_delay_ms)))
    except (KeyError, TypeError, ValueError) as exc:
        raise InvalidSettings(f"malformed export request: {exc}") from exc

    if not math.isfinite(duration) or duration <= 0 or duration > MAX_DURATION_SEC:
        raise InvalidSettings(f"duration must be in (0, {MAX_DURATION_SEC:.0f}] seconds")
    if bitrate is not None and bitrate <= 0:
        raise InvalidSettings("bitrate must be positive")

    try:
        keyframes = KeyframeStore(keyframes).snapshot()
    except DuplicateKeyframeError as exc:
        raise InvalidSettings(str(exc)) from exc

    quality = str(data.get("quality", "high")).lower()
    if quality not in QUALITY_LEVELS:
        raise InvalidSettings(f"quality must be one of {', '.join(QUALITY_LEVELS)}")
    codec = str(data.get("codec", "h264")).lower()
    if codec not in CODECS:
        raise InvalidSettings(f"codec must be one of {', '.join(CODECS)}")

    width, height = parse_resolution(data.get("resolution"))

    return ExportSettings(
        keyframes=keyframes,
        duration=duration,
        fps=min(max(fps, MIN_FPS), MAX_FPS),
        width=width,
        height=height,
        quality=quality,
        codec=codec,
        bitrate=bitrate,
        concurrency=min(max(concurrency, 1), MAX_CONCURRENCY),
        frame_delay_ms=max(frame_delay_ms, 0),
        provider=str(data.get("provider", config.tile_provider)),
    )
