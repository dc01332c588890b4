from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from errors import CaptureFailure, RendererTimeout
from models import CameraState, Keyframe
from tile_providers import get_provider

logger = logging.getLogger(__name__)

_GPU_ARGS = [
    "--enable-gpu",
    "--enable-webgl",
    "--ignore-gpu-blocklist",
    "--enable-gpu-rasterization",
    "--no-sandbox",
    "--disable-setuid-sandbox",
]

VIEWER_HTML = Path(__file__).resolve().parent / "web" / "viewer.html"


@dataclass
class RenderOptions:
    width: int
    height: int
    provider: str = "esri"
    api_key: str = ""
    headless: bool = True
    viewer_html_path: Path = VIEWER_HTML


class RenderSurface(Protocol):
    """What the export pipelines need from a map view."""

    async def load_scene(self, keyframes: Sequence[Keyframe]) -> None: ...

    async def set_camera_state(self, state: CameraState) -> None: ...

    async def is_settled(self) -> bool: ...

    async def wait_for_paint(self) -> None: ...

    async def capture_image(self) -> bytes: ...


async def wait_until_settled(
    surface: RenderSurface,
    timeout_sec: float,
    poll_sec: float = 0.02,
) -> bool:
    """Poll `is_settled` until true or `timeout_sec` elapses.

    A timeout is logged and reported as False; the caller captures
    whatever is on screen.
    """
    deadline = time.monotonic() + timeout_sec
    while True:
        if await surface.is_settled():
            return True
        if time.monotonic() >= deadline:
            logger.warning("[renderer] %s", RendererTimeout(timeout_sec))
            return False
        await asyncio.sleep(poll_sec)


def _state_to_js(state: CameraState) -> dict:
    return {"latitude": state.latitude, "longitude": state.longitude, "zoom": state.zoom}


class PlaywrightSurface:
    """A Leaflet viewer page driven through Playwright."""

    def __init__(self, page, options: RenderOptions, name: str = "surface"):
        self._page = page
        self._options = options
        self.name = name
        self._booted = False
        self._console_messages: list[str] = []
        page.on("console", self._on_console)

    def _on_console(self, msg) -> None:
        text = msg.text.strip()
        if text:
            self._console_messages.append(f"[{msg.type}] {text}")
            del self._console_messages[:-50]

    async def load_scene(self, keyframes: Sequence[Keyframe]) -> None:
        if self._booted:
            return
        provider = get_provider(self._options.provider)
        initial = keyframes[0].state if keyframes else None
        await self._page.goto(self._options.viewer_html_path.as_uri(), wait_until="networkidle")
        try:
            await self._page.evaluate(
                "async (cfg) => { await window.bootRenderer(cfg); }",
                {
                    "tiles": provider.leaflet_options(self._options.api_key),
                    "initialCamera": _state_to_js(initial) if initial else None,
                },
            )
        except PlaywrightError as exc:
            console_tail = "\n".join(self._console_messages[-8:])
            extra = f"\nBrowser console:\n{console_tail}" if console_tail else ""
            raise RuntimeError(
                f"Map viewer initialization failed on {self.name}. "
                "Check network access to the tile provider and its API key.\n"
                f"Original error: {exc}{extra}"
            ) from exc
        self._booted = True

    async def set_camera_state(self, state: CameraState) -> None:
        await self._page.evaluate("(s) => window.setCameraState(s);", _state_to_js(state))

    async def is_settled(self) -> bool:
        return bool(await self._page.evaluate("() => window.isSettled()"))

    async def wait_for_paint(self) -> None:
        await self._page.evaluate("async () => { await window.renderOnce(); }")

    async def capture_image(self) -> bytes:
        return await self._page.screenshot(type="png")


class PlaywrightRendererPool:
    """One Chromium process, `size` isolated browser contexts, one surface each.

    Contexts share no storage or DOM, so a surface can be driven by one
    worker without seeing another worker's camera.
    """

    def __init__(self, options: RenderOptions, size: int = 1):
        if size < 1:
            raise ValueError("pool size must be at least 1")
        if not options.viewer_html_path.exists():
            raise FileNotFoundError(f"Viewer HTML not found: {options.viewer_html_path}")
        self._options = options
        self._size = size
        self._pw = None
        self._browser = None
        self._contexts: list = []
        self.surfaces: list[PlaywrightSurface] = []

    async def __aenter__(self) -> list[PlaywrightSurface]:
        self._pw = await async_playwright().start()
        try:
            self._browser = await self._pw.chromium.launch(
                headless=self._options.headless, args=_GPU_ARGS,
            )
            for i in range(self._size):
                context = await self._browser.new_context(
                    viewport={"width": self._options.width, "height": self._options.height},
                )
                self._contexts.append(context)
                page = await context.new_page()
                self.surfaces.append(PlaywrightSurface(page, self._options, name=f"surface-{i}"))
        except BaseException:
            await self._close()
            raise
        logger.info("[renderer] launched %d surface(s) at %dx%d", self._size, self._options.width, self._options.height)
        return self.surfaces

    async def __aexit__(self, *exc_info) -> None:
        await self._close()

    async def _close(self) -> None:
        for context in self._contexts:
            try:
                await context.close()
            except PlaywrightError as exc:
                logger.warning("[renderer] context close failed: %s", exc)
        self._contexts.clear()
        if self._browser:
            await self._browser.close()
            self._browser = None
        if self._pw:
            await self._pw.stop()
            self._pw = None


async def capture_frame(surface: RenderSurface, frame_index: int) -> bytes:
    """capture_image with failures mapped onto CaptureFailure."""
    try:
        image = await surface.capture_image()
    except CaptureFailure:
        raise
    except Exception as exc:
        raise CaptureFailure(frame_index, str(exc)) from exc
    if not image:
        raise CaptureFailure(frame_index, "surface returned an empty image")
    return image
