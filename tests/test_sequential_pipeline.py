from __future__ import annotations

import asyncio

import pytest

from capture import CancelToken
from errors import CaptureFailure, EncodeSubmissionFailure, ExportCancelled
from models import CameraState
from sequential_pipeline import SequentialExportPipeline

from conftest import FakeEncoder, FakeSurface, linear_keyframes


def _pipeline(**kwargs) -> SequentialExportPipeline:
    kwargs.setdefault("settle_timeout_sec", 0.05)
    kwargs.setdefault("settle_poll_sec", 0.005)
    return SequentialExportPipeline(**kwargs)


def test_every_frame_is_sampled_submitted_and_finalized() -> None:
    surface = FakeSurface()
    enc = FakeEncoder()
    progress: list[tuple[int, int]] = []
    acked: list[int] = []
    pipeline = _pipeline(on_progress=lambda d, t: progress.append((d, t)), on_frame=acked.append)

    artifact = asyncio.run(pipeline.run(linear_keyframes(), 10.0, 2, surface, enc, CancelToken()))

    assert artifact == b"fake-mp4"
    assert enc.finalized
    assert [ts for ts, _ in enc.submitted] == [i / 2 for i in range(20)]
    assert surface.states[10] == CameraState(5.0, 10.0, 3.0)
    assert progress[-1] == (20, 20)
    assert sorted(acked) == list(range(20))
    assert surface.loads == 1


def test_key_frames_every_interval() -> None:
    enc = FakeEncoder()
    pipeline = _pipeline(key_frame_interval_sec=1.0)
    asyncio.run(pipeline.run(linear_keyframes(), 3.0, 4, FakeSurface(), enc, CancelToken()))
    keys = [ts for ts, key in enc.submitted if key]
    assert keys == [0.0, 1.0, 2.0]


def test_in_flight_submissions_are_bounded() -> None:
    enc = FakeEncoder(submit_delay=0.01)
    pipeline = _pipeline(max_in_flight=3)
    asyncio.run(pipeline.run(linear_keyframes(), 2.0, 10, FakeSurface(), enc, CancelToken()))
    assert len(enc.submitted) == 20
    assert 1 <= enc.max_in_flight <= 3


def test_settle_timeout_is_tolerated() -> None:
    surface = FakeSurface(settled=False)
    enc = FakeEncoder()
    asyncio.run(_pipeline(settle_timeout_sec=0.01).run(linear_keyframes(), 0.5, 4, surface, enc, CancelToken()))
    assert len(enc.submitted) == 2


def test_cancel_mid_run_drains_and_skips_finalize() -> None:
    token = CancelToken()
    enc = FakeEncoder(submit_delay=0.005)

    def on_progress(done: int, total: int) -> None:
        if done == 5:
            token.cancel()

    pipeline = _pipeline(on_progress=on_progress)
    with pytest.raises(ExportCancelled):
        asyncio.run(pipeline.run(linear_keyframes(), 10.0, 2, FakeSurface(), enc, token))

    assert len(enc.submitted) == 5
    assert enc.in_flight == 0
    assert not enc.finalized


def test_submission_failure_stops_further_capture() -> None:
    surface = FakeSurface()
    enc = FakeEncoder(fail_on_frame=3)
    pipeline = _pipeline(max_in_flight=1)
    with pytest.raises(EncodeSubmissionFailure):
        asyncio.run(pipeline.run(linear_keyframes(), 10.0, 2, surface, enc, CancelToken()))

    assert len(enc.submitted) == 3
    assert surface.captures <= 5
    assert not enc.finalized


def test_capture_failure_is_fatal() -> None:
    surface = FakeSurface(fail_on_capture=2)
    enc = FakeEncoder()
    with pytest.raises(CaptureFailure) as info:
        asyncio.run(_pipeline().run(linear_keyframes(), 10.0, 2, surface, enc, CancelToken()))
    assert info.value.frame_index == 1
    assert not enc.finalized


def test_empty_timeline_is_an_error() -> None:
    with pytest.raises(Exception, match="no frames"):
        asyncio.run(_pipeline().run(linear_keyframes(), 0.0, 30, FakeSurface(), FakeEncoder(), CancelToken()))
