from __future__ import annotations

import pytest

from interpolation import bezier, ease, ease_in, ease_in_out, ease_out, interpolate, linear, sample, segment_position
from keyframe_store import state_at
from models import DEFAULT_CAMERA_STATE, CameraState, Curve, CurveKind, Keyframe

from conftest import linear_keyframes

BOUNDED_CURVES = [CurveKind.LINEAR, CurveKind.EASE_IN, CurveKind.EASE_OUT, CurveKind.EASE_IN_OUT]


def test_curve_formulas() -> None:
    assert linear(0.3) == 0.3
    assert ease_in(0.5) == pytest.approx(0.125)
    assert ease_out(0.5) == pytest.approx(0.875)
    assert ease_in_out(0.25) == pytest.approx(4 * 0.25 ** 3)
    assert ease_in_out(0.75) == pytest.approx(1 - (-2 * 0.75 + 2) ** 3 / 2)
    for fn in (linear, ease_in, ease_out, ease_in_out):
        assert fn(0.0) == pytest.approx(0.0)
        assert fn(1.0) == pytest.approx(1.0)


def test_bezier_endpoints_and_linear_control_points() -> None:
    assert bezier(0.0) == pytest.approx(0.0, abs=1e-3)
    assert bezier(1.0) == pytest.approx(1.0, abs=1e-3)
    # control points on the diagonal make the curve the identity
    for t in (0.1, 0.37, 0.5, 0.9):
        assert bezier(t, 0.25, 0.25, 0.75, 0.75) == pytest.approx(t, abs=2e-3)


def test_bezier_default_points_are_symmetric() -> None:
    assert bezier(0.5) == pytest.approx(0.5, abs=2e-3)
    assert bezier(0.2) == pytest.approx(1 - bezier(0.8), abs=5e-3)


def test_bezier_flat_slope_does_not_blow_up() -> None:
    # derivative is zero at u=0 when p1 == 0; the solver keeps the last iterate
    value = bezier(0.0005, 0.0, 0.0, 1.0, 1.0)
    assert 0.0 <= value <= 0.01


def test_ease_dispatches_bezier_points() -> None:
    curve = Curve(CurveKind.BEZIER, (0.25, 0.25, 0.75, 0.75))
    assert ease(0.4, curve) == pytest.approx(0.4, abs=2e-3)


def test_linear_midpoint_sample() -> None:
    assert state_at(linear_keyframes(), 5.0) == CameraState(5.0, 10.0, 3.0)


def test_sample_at_keyframe_time_round_trips() -> None:
    keyframes = [
        Keyframe(0.0, 35.0, 139.0, 10.0, Curve(CurveKind.EASE_IN)),
        Keyframe(2.5, 35.5, 139.7, 14.0, Curve(CurveKind.BEZIER, (0.1, 0.9, 0.2, 1.0))),
        Keyframe(6.0, 36.1, 140.2, 12.5, Curve(CurveKind.EASE_OUT)),
    ]
    for k in keyframes:
        assert state_at(keyframes, k.time) == k.state


@pytest.mark.parametrize("kind", BOUNDED_CURVES)
def test_no_overshoot_between_bracketing_keyframes(kind: CurveKind) -> None:
    curve = Curve(kind)
    keyframes = [
        Keyframe(0.0, 10.0, -20.0, 3.0, curve),
        Keyframe(4.0, -5.0, 40.0, 18.0, curve),
        Keyframe(9.0, 1.0, 41.0, 2.0, curve),
    ]
    steps = 181
    for i in range(steps):
        t = 9.0 * i / (steps - 1)
        a, b = (keyframes[0], keyframes[1]) if t <= 4.0 else (keyframes[1], keyframes[2])
        s = state_at(keyframes, t)
        for value, x, y in ((s.latitude, a.latitude, b.latitude),
                            (s.longitude, a.longitude, b.longitude),
                            (s.zoom, a.zoom, b.zoom)):
            assert min(x, y) - 1e-9 <= value <= max(x, y) + 1e-9


def test_no_keyframes_gives_default_state() -> None:
    for t in (0.0, 3.3, 1e6):
        assert state_at([], t) == DEFAULT_CAMERA_STATE


def test_single_keyframe_does_not_extrapolate() -> None:
    only = [Keyframe(4.0, 1.0, 2.0, 3.0)]
    assert state_at(only, 0.0) == state_at(only, 4.0) == state_at(only, 100.0) == only[0].state


def test_curve_belongs_to_outgoing_keyframe() -> None:
    a = Keyframe(0.0, 0.0, 0.0, 0.0, Curve(CurveKind.EASE_IN))
    b = Keyframe(1.0, 1.0, 1.0, 1.0, Curve(CurveKind.LINEAR))
    assert sample(a, b, 0.5).latitude == pytest.approx(0.125)


def test_segment_position_clamps_and_handles_zero_span() -> None:
    a = Keyframe(2.0, 0, 0, 0)
    b = Keyframe(4.0, 0, 0, 0)
    assert segment_position(a, b, 1.0) == 0.0
    assert segment_position(a, b, 3.0) == 0.5
    assert segment_position(a, b, 9.0) == 1.0
    assert segment_position(a, a, 3.0) == 0.0


def test_interpolate_scalar() -> None:
    assert interpolate(10.0, 20.0, 0.5, Curve(CurveKind.LINEAR)) == 15.0
    assert interpolate(0.0, 8.0, 0.5, Curve(CurveKind.EASE_IN)) == pytest.approx(1.0)
