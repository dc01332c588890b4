from __future__ import annotations

import threading
from bisect import bisect_left, bisect_right
from dataclasses import replace
from typing import Iterable, Sequence

from errors import DuplicateKeyframeError
from events import EventEmitter
from interpolation import sample
from models import DEFAULT_CAMERA_STATE, CameraState, Keyframe

KEYFRAME_EVENTS = (
    "keyframeAdded",
    "keyframeRemoved",
    "keyframeUpdated",
    "keyframeSelected",
    "keyframesChanged",
)

_DUPLICATE_TOLERANCE = 1e-9


def bracket(
    keyframes: Sequence[Keyframe], query_time: float,
) -> tuple[Keyframe | None, Keyframe | None]:
    """(last keyframe with time <= t, first keyframe with time >= t) over a sorted sequence.

    A missing side is filled with the other one, so the pair is either
    (None, None) or two keyframes.
    """
    if not keyframes:
        return None, None

    times = [k.time for k in keyframes]
    lo = bisect_right(times, query_time) - 1
    hi = bisect_left(times, query_time)
    before = keyframes[lo] if lo >= 0 else None
    after = keyframes[hi] if hi < len(keyframes) else None

    if before is None:
        before = after
    if after is None:
        after = before
    return before, after


def state_at(keyframes: Sequence[Keyframe], query_time: float) -> CameraState:
    before, after = bracket(keyframes, query_time)
    if before is None or after is None:
        return DEFAULT_CAMERA_STATE
    return sample(before, after, query_time)


class KeyframeStore:
    """Sorted keyframe collection; the source of camera state over time.

    Keyframes are immutable, so `snapshot()` can be handed to an export
    pipeline while the operator keeps editing.
    """

    def __init__(self, keyframes: Iterable[Keyframe] = ()):
        self.events = EventEmitter(KEYFRAME_EVENTS)
        self._lock = threading.RLock()
        self._keyframes: list[Keyframe] = []
        self._selected: Keyframe | None = None
        for k in keyframes:
            self._insert(k)

    def on(self, kind: str, callback):
        return self.events.on(kind, callback)

    # ── queries ──

    def __len__(self) -> int:
        return len(self._keyframes)

    def snapshot(self) -> tuple[Keyframe, ...]:
        with self._lock:
            return tuple(self._keyframes)

    @property
    def selected(self) -> Keyframe | None:
        return self._selected

    def bracket(self, query_time: float) -> tuple[Keyframe | None, Keyframe | None]:
        return bracket(self.snapshot(), query_time)

    def interpolate_at(self, query_time: float) -> CameraState:
        return state_at(self.snapshot(), query_time)

    def keyframe_at(self, time: float, tolerance: float = 0.1) -> Keyframe | None:
        for k in self.snapshot():
            if abs(k.time - time) < tolerance:
                return k
        return None

    # ── mutations ──

    def add(self, keyframe: Keyframe) -> Keyframe:
        with self._lock:
            self._insert(keyframe)
            snapshot = tuple(self._keyframes)
        self.events.emit("keyframeAdded", keyframe)
        self.events.emit("keyframesChanged", snapshot)
        return keyframe

    def remove(self, keyframe: Keyframe) -> bool:
        with self._lock:
            pos = self._position(keyframe)
            if pos is None:
                return False
            removed = self._keyframes.pop(pos)
            deselected = self._selected == removed
            if deselected:
                self._selected = None
            snapshot = tuple(self._keyframes)

        if deselected:
            self.events.emit("keyframeSelected", None)
        self.events.emit("keyframeRemoved", removed)
        self.events.emit("keyframesChanged", snapshot)
        return True

    def update(self, keyframe: Keyframe, **changes) -> Keyframe:
        """Replace `keyframe` with a copy carrying `changes` and re-sort."""
        with self._lock:
            pos = self._position(keyframe)
            if pos is None:
                raise KeyError(f"keyframe at t={keyframe.time} is not in the store")
            updated = replace(self._keyframes[pos], **changes)
            old = self._keyframes.pop(pos)
            try:
                self._insert(updated)
            except DuplicateKeyframeError:
                self._keyframes.insert(pos, old)
                raise
            if self._selected == old:
                self._selected = updated
            snapshot = tuple(self._keyframes)

        self.events.emit("keyframeUpdated", updated)
        self.events.emit("keyframesChanged", snapshot)
        return updated

    def select(self, keyframe: Keyframe | None) -> None:
        with self._lock:
            if keyframe is not None and self._position(keyframe) is None:
                raise KeyError(f"keyframe at t={keyframe.time} is not in the store")
            self._selected = keyframe
        self.events.emit("keyframeSelected", keyframe)

    def clear(self) -> None:
        with self._lock:
            self._keyframes = []
            self._selected = None
        self.events.emit("keyframesChanged", ())

    def replace_all(self, keyframes: Iterable[Keyframe]) -> None:
        """Swap in a whole keyframe list, firing a single keyframesChanged."""
        fresh = KeyframeStore(keyframes)
        with self._lock:
            self._keyframes = list(fresh.snapshot())
            self._selected = None
            snapshot = tuple(self._keyframes)
        self.events.emit("keyframesChanged", snapshot)

    def to_list(self) -> list[dict]:
        return [k.to_dict() for k in self.snapshot()]

    @classmethod
    def from_list(cls, data: Iterable[dict]) -> "KeyframeStore":
        return cls(Keyframe.from_dict(d) for d in data)

    # ── internals ──

    def _insert(self, keyframe: Keyframe) -> None:
        times = [k.time for k in self._keyframes]
        pos = bisect_left(times, keyframe.time)
        for neighbour in self._keyframes[max(pos - 1, 0): pos + 1]:
            if abs(neighbour.time - keyframe.time) <= _DUPLICATE_TOLERANCE:
                raise DuplicateKeyframeError(keyframe.time)
        self._keyframes.insert(pos, keyframe)

    def _position(self, keyframe: Keyframe) -> int | None:
        for pos, k in enumerate(self._keyframes):
            if k is keyframe:
                return pos
        for pos, k in enumerate(self._keyframes):
            if k == keyframe:
                return pos
        return None
