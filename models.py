from __future__ import annotations

import math
from bisect import bisect_left
from dataclasses import asdict, dataclass, field
from enum import Enum


class CurveKind(str, Enum):
    LINEAR = "linear"
    EASE_IN = "easeIn"
    EASE_OUT = "easeOut"
    EASE_IN_OUT = "easeInOut"
    BEZIER = "bezier"


DEFAULT_BEZIER_POINTS = (0.42, 0.0, 0.58, 1.0)


@dataclass(frozen=True)
class Curve:
    kind: CurveKind = CurveKind.EASE_IN_OUT
    points: tuple[float, float, float, float] = DEFAULT_BEZIER_POINTS

    @classmethod
    def parse(cls, value) -> "Curve":
        """Accept a Curve, a curve name, or {"kind": ..., "points": [...]}.

        Unknown names fall back to linear.
        """
        if isinstance(value, Curve):
            return value
        if value is None:
            return cls()
        if isinstance(value, dict):
            kind = _curve_kind(value.get("kind") or value.get("type"))
            points = value.get("points")
            if points is not None:
                if len(points) != 4:
                    raise ValueError("bezier curve needs exactly 4 control values")
                return cls(kind, tuple(float(p) for p in points))
            return cls(kind)
        return cls(_curve_kind(str(value)))

    def to_dict(self) -> dict:
        if self.kind is CurveKind.BEZIER:
            return {"kind": self.kind.value, "points": list(self.points)}
        return {"kind": self.kind.value}


def _curve_kind(name: str | None) -> CurveKind:
    if name is None:
        return CurveKind.EASE_IN_OUT
    try:
        return CurveKind(name)
    except ValueError:
        return CurveKind.LINEAR


@dataclass(frozen=True)
class CameraState:
    latitude: float
    longitude: float
    zoom: float

    def to_dict(self) -> dict:
        return asdict(self)


DEFAULT_CAMERA_STATE = CameraState(latitude=35.6762, longitude=139.6503, zoom=13.0)


@dataclass(frozen=True)
class Keyframe:
    time: float
    latitude: float
    longitude: float
    zoom: float
    curve: Curve = field(default_factory=Curve)

    def __post_init__(self) -> None:
        if not math.isfinite(self.time) or self.time < 0:
            raise ValueError(f"keyframe time must be finite and >= 0, got {self.time}")
        for name in ("latitude", "longitude", "zoom"):
            if not math.isfinite(getattr(self, name)):
                raise ValueError(f"keyframe {name} must be finite, got {getattr(self, name)}")

    @property
    def state(self) -> CameraState:
        return CameraState(self.latitude, self.longitude, self.zoom)

    def to_dict(self) -> dict:
        return {
            "time": self.time,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "zoom": self.zoom,
            "curve": self.curve.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Keyframe":
        return cls(
            time=float(data["time"]),
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            zoom=float(data["zoom"]),
            curve=Curve.parse(data.get("curve", data.get("interpolationType"))),
        )


# ─── Export ──────────────────────────────────────────────────────────────


class TaskState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DONE = "done"
    FAILED = "failed"


@dataclass
class CaptureTask:
    frame_index: int
    query_time: float
    state: TaskState = TaskState.PENDING


class SessionStatus(str, Enum):
    INITIATING = "initiating"
    LOADING = "loading"
    RENDERING = "rendering"
    ENCODING = "encoding"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED)


class ExportMode(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    UPLOAD = "upload"


@dataclass(frozen=True)
class FrameDescriptor:
    index: int
    path: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ExportSession:
    id: str
    mode: ExportMode = ExportMode.SEQUENTIAL
    status: SessionStatus = SessionStatus.INITIATING
    progress: float = 0.0
    message: str = ""
    total_frames: int = 0
    frames: list[FrameDescriptor] = field(default_factory=list)
    artifact: str | None = None
    error: str | None = None
    created_at: float = 0.0
    finished_at: float | None = None

    def add_frame(self, descriptor: FrameDescriptor) -> None:
        """Insert keeping index order; a repeated index replaces the old entry."""
        pos = bisect_left(self.frames, descriptor.index, key=lambda f: f.index)
        if pos < len(self.frames) and self.frames[pos].index == descriptor.index:
            self.frames[pos] = descriptor
        else:
            self.frames.insert(pos, descriptor)

    @property
    def completed_indices(self) -> set[int]:
        return {f.index for f in self.frames}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "mode": self.mode.value,
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
            "total_frames": self.total_frames,
            "frames": [f.to_dict() for f in self.frames],
            "artifact": self.artifact,
            "error": self.error,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExportSession":
        return cls(
            id=data["id"],
            mode=ExportMode(data.get("mode", ExportMode.SEQUENTIAL.value)),
            status=SessionStatus(data["status"]),
            progress=float(data.get("progress", 0.0)),
            message=data.get("message", ""),
            total_frames=int(data.get("total_frames", 0)),
            frames=[FrameDescriptor(int(f["index"]), f["path"]) for f in data.get("frames", [])],
            artifact=data.get("artifact"),
            error=data.get("error"),
            created_at=float(data.get("created_at", 0.0)),
            finished_at=data.get("finished_at"),
        )

    def status_payload(self) -> dict:
        payload = {
            "id": self.id,
            "status": self.status.value,
            "progress": round(self.progress, 2),
            "message": self.message,
            "total_frames": self.total_frames,
            "captured_frames": len(self.frames),
        }
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class ExportSettings:
    keyframes: tuple[Keyframe, ...]
    duration: float
    fps: int
    width: int
    height: int
    quality: str = "high"
    codec: str = "h264"
    bitrate: int | None = None
    concurrency: int = 4
    frame_delay_ms: int = 500
    provider: str = "esri"
