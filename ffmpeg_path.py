"""Resolve the ffmpeg binary path.

Priority: PREVIZ_FFMPEG override > system ffmpeg > imageio-ffmpeg bundled binary.
"""
from __future__ import annotations

import os
import shutil
from functools import lru_cache


@lru_cache(maxsize=1)
def get_ffmpeg() -> str:
    override = os.getenv("PREVIZ_FFMPEG", "").strip()
    if override:
        if not (os.path.isfile(override) and os.access(override, os.X_OK)):
            raise RuntimeError(f"PREVIZ_FFMPEG does not point to an executable: {override}")
        return override

    path = shutil.which("ffmpeg")
    if path:
        return path

    import imageio_ffmpeg

    try:
        return imageio_ffmpeg.get_ffmpeg_exe()
    except RuntimeError as exc:
        raise RuntimeError(
            "ffmpeg not found. Install FFmpeg on your system or "
            "reinstall imageio-ffmpeg for its bundled binary."
        ) from exc
