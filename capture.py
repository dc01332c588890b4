from __future__ import annotations

import math
import threading

from models import CaptureTask

FRAME_NAME_FORMAT = "frame_{:06d}.png"


def total_frames(duration: float, fps: int) -> int:
    # the epsilon keeps 0.1s @ 30fps at 3 frames instead of 4
    return max(int(math.ceil(duration * fps - 1e-9)), 0)


def frame_time(frame_index: int, fps: int) -> float:
    return frame_index / fps


def build_capture_tasks(duration: float, fps: int) -> list[CaptureTask]:
    return [
        CaptureTask(frame_index=i, query_time=frame_time(i, fps))
        for i in range(total_frames(duration, fps))
    ]


def frame_filename(frame_index: int) -> str:
    return FRAME_NAME_FORMAT.format(frame_index)


class CancelToken:
    """Thread-safe cancel flag shared between a pipeline and whoever started it."""

    def __init__(self):
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled by user") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
