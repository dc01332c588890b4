from __future__ import annotations

from models import CameraState, Curve, CurveKind, Keyframe

_BEZIER_MAX_ITERATIONS = 8
_BEZIER_EPSILON = 0.001
_BEZIER_MIN_SLOPE = 1e-6


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _lerp(a: float, b: float, t: float) -> float:
    return a + (b - a) * t


def linear(t: float) -> float:
    return t


def ease_in(t: float) -> float:
    return t * t * t


def ease_out(t: float) -> float:
    return 1 - (1 - t) ** 3


def ease_in_out(t: float) -> float:
    if t < 0.5:
        return 4 * t * t * t
    return 1 - (-2 * t + 2) ** 3 / 2


def bezier(t: float, p1: float = 0.42, p2: float = 0.0, p3: float = 0.58, p4: float = 1.0) -> float:
    """CSS-style cubic Bézier easing: (p1, p2) and (p3, p4) are the inner control points.

    `t` is treated as the x coordinate; Newton-Raphson finds the curve
    parameter for it and the y coordinate at that parameter is returned.
    """
    cx = 3 * p1
    bx = 3 * (p3 - p1) - cx
    ax = 1 - cx - bx

    cy = 3 * p2
    by = 3 * (p4 - p2) - cy
    ay = 1 - cy - by

    def sample_x(u: float) -> float:
        return ((ax * u + bx) * u + cx) * u

    def sample_y(u: float) -> float:
        return ((ay * u + by) * u + cy) * u

    u = t
    for _ in range(_BEZIER_MAX_ITERATIONS):
        error = sample_x(u) - t
        if abs(error) < _BEZIER_EPSILON:
            break
        slope = (3 * ax * u + 2 * bx) * u + cx
        if abs(slope) < _BEZIER_MIN_SLOPE:
            break
        u -= error / slope

    return sample_y(u)


_EASINGS = {
    CurveKind.LINEAR: linear,
    CurveKind.EASE_IN: ease_in,
    CurveKind.EASE_OUT: ease_out,
    CurveKind.EASE_IN_OUT: ease_in_out,
}


def ease(t: float, curve: Curve) -> float:
    if curve.kind is CurveKind.BEZIER:
        return bezier(t, *curve.points)
    return _EASINGS.get(curve.kind, linear)(t)


def interpolate(a: float, b: float, t: float, curve: Curve) -> float:
    return _lerp(a, b, ease(t, curve))


def segment_position(before: Keyframe, after: Keyframe, query_time: float) -> float:
    """Normalised position of query_time inside [before.time, after.time], clamped to [0, 1]."""
    span = after.time - before.time
    if span == 0:
        return 0.0
    return _clamp((query_time - before.time) / span, 0.0, 1.0)


def sample(before: Keyframe, after: Keyframe, query_time: float) -> CameraState:
    """Camera state between two bracketing keyframes.

    The easing curve belongs to the outgoing segment, so it is read from
    `before`. No extrapolation happens past either end.
    """
    if before is after or before == after:
        return before.state

    eased = ease(segment_position(before, after, query_time), before.curve)
    return CameraState(
        latitude=_lerp(before.latitude, after.latitude, eased),
        longitude=_lerp(before.longitude, after.longitude, eased),
        zoom=_lerp(before.zoom, after.zoom, eased),
    )
