from __future__ import annotations

import asyncio
import io
import threading
from contextlib import asynccontextmanager
from pathlib import Path

import pytest
from PIL import Image

from config import AppConfig
from models import CameraState, Curve, CurveKind, Keyframe
from session_store import SessionStore


def png_bytes(width: int = 8, height: int = 8, color: tuple[int, int, int] = (40, 120, 200)) -> bytes:
    out = io.BytesIO()
    Image.new("RGB", (width, height), color).save(out, format="PNG")
    return out.getvalue()


def linear_keyframes() -> list[Keyframe]:
    linear = Curve(CurveKind.LINEAR)
    return [
        Keyframe(0.0, 0.0, 0.0, 1.0, linear),
        Keyframe(10.0, 10.0, 20.0, 5.0, linear),
    ]


class FakeSurface:
    """In-memory render surface: settles at once and returns a tiny PNG."""

    def __init__(
        self,
        name: str = "fake",
        *,
        capture_delay: float = 0.0,
        fail_on_capture: int | None = None,
        settled: bool = True,
        gate: threading.Event | None = None,
    ):
        self.name = name
        self.capture_delay = capture_delay
        self.fail_on_capture = fail_on_capture
        self.settled = settled
        self.gate = gate
        self.states: list[CameraState] = []
        self.loads = 0
        self.captures = 0
        self.busy = False
        self.overlapped = False

    async def load_scene(self, keyframes) -> None:
        self.loads += 1

    async def set_camera_state(self, state: CameraState) -> None:
        if self.busy:
            self.overlapped = True
        self.busy = True
        self.states.append(state)

    async def is_settled(self) -> bool:
        return self.settled

    async def wait_for_paint(self) -> None:
        await asyncio.sleep(0)

    async def capture_image(self) -> bytes:
        try:
            if self.gate is not None:
                await asyncio.to_thread(self.gate.wait, 5.0)
            if self.capture_delay:
                await asyncio.sleep(self.capture_delay)
            self.captures += 1
            if self.fail_on_capture is not None and self.captures == self.fail_on_capture:
                raise RuntimeError(f"{self.name} lost its WebGL context")
            return png_bytes()
        finally:
            self.busy = False


class FakeEncoder:
    """Encode collaborator that keeps submissions in memory."""

    def __init__(self, *, submit_delay: float = 0.0, fail_on_frame: int | None = None):
        self.submit_delay = submit_delay
        self.fail_on_frame = fail_on_frame
        self.configured: tuple | None = None
        self.submitted: list[tuple[float, bool]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.finalized = False

    async def configure(self, width, height, fps, bitrate, codec) -> None:
        self.configured = (width, height, fps, bitrate, codec)

    async def submit_frame(self, image: bytes, timestamp: float, is_key_frame: bool) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.submit_delay:
                await asyncio.sleep(self.submit_delay)
            if self.fail_on_frame is not None and len(self.submitted) == self.fail_on_frame:
                raise OSError("disk full")
            self.submitted.append((timestamp, is_key_frame))
        finally:
            self.in_flight -= 1

    async def finalize(self) -> bytes:
        self.finalized = True
        return b"fake-mp4"


def surface_pool(surfaces: list[FakeSurface]):
    """pool_factory(size) over pre-built fakes; records the requested size."""
    requested: list[int] = []

    @asynccontextmanager
    async def factory(size: int):
        requested.append(size)
        yield surfaces[:size]

    factory.requested = requested
    return factory


def write_fake_video(frames, output: Path) -> Path:
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_bytes(b"".join(str(f.index).encode() for f in frames))
    return output


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        output_dir=tmp_path / "output",
        retention_sec=600.0,
        settle_timeout_sec=0.05,
        settle_poll_sec=0.005,
        max_in_flight=4,
        concurrency=2,
        frame_delay_ms=0,
    )


@pytest.fixture
def store(tmp_path: Path):
    s = SessionStore(tmp_path / "sessions.json", frames_root=tmp_path / "frames", persist_interval=0.0)
    yield s
    s.close()
