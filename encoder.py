from __future__ import annotations

import asyncio
import logging
import subprocess
import tempfile
from pathlib import Path
from typing import Iterable, Protocol

from errors import EncodeFinalizeFailure, EncodeSubmissionFailure
from ffmpeg_path import get_ffmpeg
from frame_storage import FrameStorage

logger = logging.getLogger(__name__)

CODEC_MAP = {"h264": "libx264", "h265": "libx265"}

QUALITY_PRESETS = {
    "high": {"crf": 18, "preset": "slow"},
    "medium": {"crf": 23, "preset": "medium"},
    "low": {"crf": 28, "preset": "fast"},
}


class FrameEncoder(Protocol):
    async def configure(self, width: int, height: int, fps: int, bitrate: int | None, codec: str) -> None: ...

    async def submit_frame(self, image: bytes, timestamp: float, is_key_frame: bool) -> None: ...

    async def finalize(self) -> bytes: ...


def build_ffmpeg_command(
    output_file: Path,
    *,
    fps: int,
    codec: str = "h264",
    quality: str = "high",
    bitrate: int | None = None,
    key_frame_times: Iterable[float] = (),
) -> list[str]:
    if codec not in CODEC_MAP:
        raise ValueError("codec must be h264 or h265")
    settings = QUALITY_PRESETS.get(quality, QUALITY_PRESETS["medium"])

    command = [
        get_ffmpeg(),
        "-y",
        "-f", "image2pipe",
        "-framerate", str(fps),
        "-c:v", "png",
        "-i", "-",
        "-c:v", CODEC_MAP[codec],
        "-preset", settings["preset"],
    ]
    if bitrate:
        command += ["-b:v", str(bitrate)]
    else:
        command += ["-crf", str(settings["crf"])]

    key_times = sorted(set(key_frame_times))
    if key_times:
        command += ["-force_key_frames", ",".join(f"{t:.6f}" for t in key_times)]

    command += ["-pix_fmt", "yuv420p", "-movflags", "+faststart", str(output_file)]
    return command


def encode_image_sequence(
    images: Iterable[Path | bytes],
    output_file: Path,
    *,
    fps: int,
    codec: str = "h264",
    quality: str = "high",
    bitrate: int | None = None,
    key_frame_times: Iterable[float] = (),
) -> int:
    """Pipe PNG frames into ffmpeg in the order given. Returns the frame count."""
    output_file.parent.mkdir(parents=True, exist_ok=True)
    command = build_ffmpeg_command(
        output_file, fps=fps, codec=codec, quality=quality,
        bitrate=bitrate, key_frame_times=key_frame_times,
    )
    logger.info("[encoder] %s", " ".join(command))

    count = 0
    # stderr goes to a file so a chatty ffmpeg can never block on a full pipe
    with tempfile.TemporaryFile() as stderr:
        proc = subprocess.Popen(command, stdin=subprocess.PIPE, stdout=subprocess.DEVNULL, stderr=stderr)
        try:
            for image in images:
                data = image.read_bytes() if isinstance(image, Path) else image
                proc.stdin.write(data)
                count += 1
        except BrokenPipeError:
            logger.warning("[encoder] ffmpeg closed its input after %d frames", count)
        finally:
            _close_quietly(proc.stdin)
            returncode = proc.wait()

        if returncode != 0 or count == 0:
            stderr.seek(0)
            tail = stderr.read().decode("utf-8", errors="replace")[-2000:]
            raise EncodeFinalizeFailure(
                "ffmpeg encoding failed.\n"
                f"command: {' '.join(command)}\n"
                f"frames written: {count}\n"
                f"stderr:\n{tail}"
            )

    logger.info("[encoder] wrote %d frames to %s", count, output_file)
    return count


def _close_quietly(stream) -> None:
    try:
        stream.close()
    except BrokenPipeError:
        # ffmpeg already exited; its return code reports why
        pass


class FrameSequenceEncoder:
    """Encode collaborator backed by a frame directory plus one ffmpeg run.

    Submissions land in `FrameStorage` keyed by frame index, so they may
    complete in any order; `finalize` feeds them to ffmpeg in index order.
    """

    def __init__(self, storage: FrameStorage, output_file: Path, *, quality: str = "high",
                 read_back: bool = True):
        self.storage = storage
        self.output_file = Path(output_file)
        self.quality = quality
        # False: finalize returns b"" and the video stays on disk at output_file
        self.read_back = read_back
        self.width = 0
        self.height = 0
        self.fps = 0
        self.bitrate: int | None = None
        self.codec = "h264"
        self._submitted: set[int] = set()
        self._key_frames: set[int] = set()

    @property
    def submitted_count(self) -> int:
        return len(self._submitted)

    async def configure(self, width: int, height: int, fps: int, bitrate: int | None, codec: str) -> None:
        if codec not in CODEC_MAP:
            raise ValueError("codec must be h264 or h265")
        self.width, self.height, self.fps = width, height, fps
        self.bitrate = bitrate
        self.codec = codec
        self.storage.size = (width, height)
        await asyncio.to_thread(self.storage.ensure)

    async def submit_frame(self, image: bytes, timestamp: float, is_key_frame: bool) -> None:
        if not self.fps:
            raise EncodeSubmissionFailure(-1, "encoder is not configured")
        index = round(timestamp * self.fps)
        try:
            await asyncio.to_thread(self.storage.write_frame, index, image)
        except (OSError, ValueError) as exc:
            raise EncodeSubmissionFailure(index, str(exc)) from exc
        self._submitted.add(index)
        if is_key_frame:
            self._key_frames.add(index)

    async def finalize(self) -> bytes:
        return await asyncio.to_thread(self._finalize_sync)

    def _finalize_sync(self) -> bytes:
        frames = self.storage.list_frames()
        if not frames:
            raise EncodeFinalizeFailure("no frames were submitted")
        expected = frames[-1][0] + 1
        if len(frames) != expected:
            missing = self.storage.missing(expected)
            raise EncodeFinalizeFailure(f"frame sequence has gaps at {missing[:10]}")

        encode_image_sequence(
            (path for _, path in frames),
            self.output_file,
            fps=self.fps,
            codec=self.codec,
            quality=self.quality,
            bitrate=self.bitrate,
            key_frame_times=(i / self.fps for i in self._key_frames),
        )
        return self.output_file.read_bytes() if self.read_back else b""
