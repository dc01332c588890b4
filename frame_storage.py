from __future__ import annotations

import base64
import binascii
import io
import logging
import os
import re
import shutil
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from capture import frame_filename

logger = logging.getLogger(__name__)

_DATA_URL_PREFIX = re.compile(r"^data:image/\w+;base64,")
_FRAME_FILE_RE = re.compile(r"^frame_(\d{6})\.png$")


def decode_data_url(image: str) -> bytes:
    """Strip an optional data-URL prefix and base64-decode the payload."""
    try:
        return base64.b64decode(_DATA_URL_PREFIX.sub("", image), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"frame image is not valid base64: {exc}") from exc


def normalize_image(data: bytes, size: tuple[int, int] | None = None) -> bytes:
    """Re-encode any Pillow-readable image as an RGB PNG, resized to `size` if it differs.

    ffmpeg refuses a stream whose frame size changes midway, so every
    stored frame goes through here.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            img = img.convert("RGB")
            if size is not None and img.size != size:
                img = img.resize(size, Image.LANCZOS)
            out = io.BytesIO()
            img.save(out, format="PNG")
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError(f"frame is not a readable image: {exc}") from exc
    return out.getvalue()


class FrameStorage:
    """Per-session frame directory; one PNG per frame index.

    Writers with distinct indices never touch the same file, so no lock
    is needed. Files are written to a temp name and renamed into place.
    """

    def __init__(self, root: Path, size: tuple[int, int] | None = None):
        self.root = Path(root)
        self.size = size

    def ensure(self) -> "FrameStorage":
        self.root.mkdir(parents=True, exist_ok=True)
        return self

    def path_for(self, frame_index: int) -> Path:
        if frame_index < 0:
            raise ValueError(f"frame index must be >= 0, got {frame_index}")
        return self.root / frame_filename(frame_index)

    def write_frame(self, frame_index: int, image: bytes) -> Path:
        path = self.path_for(frame_index)
        payload = normalize_image(image, self.size)
        self.root.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".png.part")
        tmp.write_bytes(payload)
        os.replace(tmp, path)
        return path

    def read_frame(self, frame_index: int) -> bytes:
        return self.path_for(frame_index).read_bytes()

    def has_frame(self, frame_index: int) -> bool:
        return self.path_for(frame_index).exists()

    def list_frames(self) -> list[tuple[int, Path]]:
        if not self.root.exists():
            return []
        found = []
        for p in self.root.iterdir():
            match = _FRAME_FILE_RE.match(p.name)
            if match:
                found.append((int(match.group(1)), p))
        found.sort()
        return found

    def missing(self, total_frames: int) -> list[int]:
        present = {i for i, _ in self.list_frames()}
        return [i for i in range(total_frames) if i not in present]

    def remove(self) -> None:
        if self.root.exists():
            shutil.rmtree(self.root)
            logger.info("[frames] removed %s", self.root)
