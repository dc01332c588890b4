from __future__ import annotations

import math
import time
from typing import Callable

from capture import total_frames
from events import EventEmitter
from keyframe_store import KeyframeStore
from models import CameraState

TIMELINE_EVENTS = (
    "play",
    "pause",
    "stop",
    "timeUpdate",
    "frameUpdate",
    "cameraUpdate",
    "finished",
)


class Timeline:
    """Maps playback time onto a query time in [0, duration].

    Preview playback is wall-clock driven: `play()` records a start
    instant and every `tick()` derives the playhead from the clock, the
    way a browser interval timer would. `advance()` steps it by hand.
    """

    def __init__(
        self,
        store: KeyframeStore,
        duration: float = 10.0,
        fps: int = 30,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        if duration <= 0:
            raise ValueError("duration must be > 0")
        if fps <= 0:
            raise ValueError("fps must be > 0")
        self.store = store
        self.events = EventEmitter(TIMELINE_EVENTS)
        self._duration = float(duration)
        self._fps = int(fps)
        self._playhead = 0.0
        self._clock = clock
        self._play_started_at: float | None = None
        self.loop = False
        self.camera: CameraState = store.interpolate_at(0.0)
        store.on("keyframesChanged", lambda _: self._update_camera())

    def on(self, kind: str, callback):
        return self.events.on(kind, callback)

    # ── properties ──

    @property
    def duration(self) -> float:
        return self._duration

    @property
    def fps(self) -> int:
        return self._fps

    @property
    def playhead(self) -> float:
        return self._playhead

    @property
    def is_playing(self) -> bool:
        return self._play_started_at is not None

    @property
    def frame_interval(self) -> float:
        return 1.0 / self._fps

    @property
    def total_frames(self) -> int:
        return total_frames(self._duration, self._fps)

    def frame_times(self) -> list[float]:
        return [i / self._fps for i in range(self.total_frames)]

    def set_duration(self, duration: float) -> None:
        if duration <= 0:
            raise ValueError("duration must be > 0")
        self._duration = float(duration)
        if self._playhead > self._duration:
            self.seek(self._duration)

    def set_fps(self, fps: int) -> None:
        if fps <= 0:
            raise ValueError("fps must be > 0")
        self._fps = int(fps)

    def toggle_loop(self) -> bool:
        self.loop = not self.loop
        return self.loop

    # ── transport ──

    def play(self) -> None:
        if self.is_playing:
            return
        if self._playhead >= self._duration:
            self._playhead = 0.0
        self._play_started_at = self._clock() - self._playhead
        self.events.emit("play", {"time": self._playhead})

    def pause(self) -> None:
        if not self.is_playing:
            return
        self._play_started_at = None
        self.events.emit("pause", {"time": self._playhead})

    def stop(self) -> None:
        self.pause()
        self._playhead = 0.0
        self._update_camera()
        self.events.emit("stop", {"time": self._playhead})

    def seek(self, t: float) -> float:
        self._playhead = _clamp(t, 0.0, self._duration)
        if self.is_playing:
            self._play_started_at = self._clock() - self._playhead
        self._update_camera()
        self.events.emit("timeUpdate", {"time": self._playhead})
        return self._playhead

    def tick(self) -> float:
        """Advance a playing timeline to the current clock reading."""
        if not self.is_playing:
            return self._playhead
        now = self._clock()
        self._step_to(now - self._play_started_at, now)
        return self._playhead

    def advance(self, dt: float) -> float:
        """Move the playhead by dt seconds, honouring loop and end-of-timeline."""
        self._step_to(self._playhead + dt, self._clock())
        return self._playhead

    # ── internals ──

    def _step_to(self, t: float, now: float) -> None:
        finished = False
        if t >= self._duration:
            if self.loop:
                t = math.fmod(t, self._duration)
                if self.is_playing:
                    self._play_started_at = now - t
            else:
                t = self._duration
                finished = True

        self._playhead = _clamp(t, 0.0, self._duration)
        self._update_camera()
        self.events.emit("frameUpdate", {"time": self._playhead})

        if finished:
            self.pause()
            self.events.emit("finished", {"time": self._playhead})

    def _update_camera(self) -> None:
        self.camera = self.store.interpolate_at(self._playhead)
        self.events.emit("cameraUpdate", self.camera)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
