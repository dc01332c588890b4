from __future__ import annotations

import asyncio
import logging

import pytest

import ffmpeg_path
import tile_providers
from errors import CaptureFailure
from renderer import RenderOptions, VIEWER_HTML, capture_frame, wait_until_settled
from tile_providers import check_provider, get_provider

from conftest import FakeSurface


class SlowSettle(FakeSurface):
    def __init__(self, settle_after: int):
        super().__init__()
        self.polls = 0
        self.settle_after = settle_after

    async def is_settled(self) -> bool:
        self.polls += 1
        return self.polls >= self.settle_after


def test_wait_until_settled_polls_until_ready() -> None:
    surface = SlowSettle(settle_after=3)
    assert asyncio.run(wait_until_settled(surface, timeout_sec=1.0, poll_sec=0.001)) is True
    assert surface.polls == 3


def test_wait_until_settled_times_out_with_warning(caplog) -> None:
    surface = FakeSurface(settled=False)
    with caplog.at_level(logging.WARNING, logger="renderer"):
        assert asyncio.run(wait_until_settled(surface, timeout_sec=0.02, poll_sec=0.005)) is False
    assert "did not settle" in caplog.text


def test_capture_frame_maps_errors() -> None:
    class Empty(FakeSurface):
        async def capture_image(self) -> bytes:
            return b""

    with pytest.raises(CaptureFailure, match="empty image"):
        asyncio.run(capture_frame(Empty(), 4))
    with pytest.raises(CaptureFailure) as info:
        asyncio.run(capture_frame(FakeSurface("gl", fail_on_capture=1), 7))
    assert info.value.frame_index == 7


def test_viewer_page_ships_with_the_package() -> None:
    assert VIEWER_HTML.exists()
    assert RenderOptions(width=640, height=360).viewer_html_path == VIEWER_HTML


def test_provider_catalogue() -> None:
    mapbox = get_provider("mapbox")
    assert mapbox.needs_key
    assert mapbox.leaflet_options("tok")["url"].endswith("access_token=tok")
    assert get_provider("esri").url(3, 1, 2).endswith("/tile/3/2/1")
    with pytest.raises(ValueError):
        get_provider("nowhere")


class FakeResponse:
    def __init__(self, status_code: int, content_type: str = "image/png", text: str = ""):
        self.status_code = status_code
        self.headers = {"content-type": content_type}
        self.text = text


def test_check_provider(monkeypatch) -> None:
    responses = iter([FakeResponse(200), FakeResponse(403, "text/plain")])
    monkeypatch.setattr(tile_providers.requests, "get", lambda url, **kw: next(responses))
    assert check_provider("osm")["ok"] is True
    rejected = check_provider("google")
    assert rejected["ok"] is False and "403" in rejected["error"]
    assert check_provider("mapbox")["ok"] is False


def test_check_provider_network_error(monkeypatch) -> None:
    def boom(url, **kw):
        raise tile_providers.requests.ConnectionError("no route to host")

    monkeypatch.setattr(tile_providers.requests, "get", boom)
    result = check_provider("esri")
    assert result["ok"] is False and "Network error" in result["error"]


def test_ffmpeg_override(monkeypatch, tmp_path) -> None:
    fake = tmp_path / "ffmpeg"
    fake.write_text("#!/bin/sh\n")
    fake.chmod(0o755)
    monkeypatch.setenv("PREVIZ_FFMPEG", str(fake))
    ffmpeg_path.get_ffmpeg.cache_clear()
    try:
        assert ffmpeg_path.get_ffmpeg() == str(fake)
        monkeypatch.setenv("PREVIZ_FFMPEG", str(tmp_path / "missing"))
        ffmpeg_path.get_ffmpeg.cache_clear()
        with pytest.raises(RuntimeError):
            ffmpeg_path.get_ffmpeg()
    finally:
        ffmpeg_path.get_ffmpeg.cache_clear()
