from __future__ import annotations

import base64
import io

import pytest
from PIL import Image

from frame_storage import FrameStorage, decode_data_url, normalize_image

from conftest import png_bytes


def test_write_frame_normalizes_to_configured_size(tmp_path) -> None:
    storage = FrameStorage(tmp_path / "frames", size=(32, 18)).ensure()
    rgba = io.BytesIO()
    Image.new("RGBA", (64, 64), (255, 0, 0, 128)).save(rgba, format="PNG")

    path = storage.write_frame(3, rgba.getvalue())

    assert path.name == "frame_000003.png"
    with Image.open(path) as img:
        assert img.size == (32, 18)
        assert img.mode == "RGB"
    assert not list((tmp_path / "frames").glob("*.part"))


def test_list_frames_sorted_and_missing(tmp_path) -> None:
    storage = FrameStorage(tmp_path / "frames")
    for index in (4, 0, 2):
        storage.write_frame(index, png_bytes())
    (tmp_path / "frames" / "notes.txt").write_text("ignored")

    assert [i for i, _ in storage.list_frames()] == [0, 2, 4]
    assert storage.missing(5) == [1, 3]
    assert storage.has_frame(2)
    assert storage.read_frame(2).startswith(b"\x89PNG")

    storage.remove()
    assert storage.list_frames() == []


def test_rejects_garbage_and_negative_index(tmp_path) -> None:
    storage = FrameStorage(tmp_path / "frames")
    with pytest.raises(ValueError):
        storage.write_frame(0, b"definitely not an image")
    with pytest.raises(ValueError):
        storage.path_for(-1)


def test_decode_data_url() -> None:
    raw = png_bytes()
    encoded = base64.b64encode(raw).decode()
    assert decode_data_url(f"data:image/png;base64,{encoded}") == raw
    assert decode_data_url(encoded) == raw
    with pytest.raises(ValueError):
        decode_data_url("data:image/png;base64,@@@not-base64@@@")


def test_normalize_image_keeps_size_when_unset() -> None:
    out = normalize_image(png_bytes(10, 6))
    with Image.open(io.BytesIO(out)) as img:
        assert img.size == (10, 6)
