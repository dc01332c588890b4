from __future__ import annotations

from capture import CancelToken, build_capture_tasks, frame_filename, total_frames
from models import TaskState


def test_total_frames_rounds_up() -> None:
    assert total_frames(10.0, 30) == 300
    assert total_frames(0.1, 30) == 3
    assert total_frames(1.01, 10) == 11
    assert total_frames(0.0, 30) == 0


def test_capture_tasks_cover_every_frame() -> None:
    tasks = build_capture_tasks(0.5, 8)
    assert [t.frame_index for t in tasks] == list(range(4))
    assert [t.query_time for t in tasks] == [0.0, 0.125, 0.25, 0.375]
    assert all(t.state is TaskState.PENDING for t in tasks)


def test_frame_filename_is_zero_padded() -> None:
    assert frame_filename(7) == "frame_000007.png"


def test_cancel_token() -> None:
    token = CancelToken()
    assert not token.cancelled
    token.cancel()
    assert token.cancelled
    assert token.reason == "cancelled by user"
