from __future__ import annotations

import asyncio
import logging
from typing import Callable, Sequence

from capture import CancelToken, frame_time, total_frames
from encoder import FrameEncoder
from errors import EncodeFinalizeFailure, EncodeSubmissionFailure, ExportCancelled, ExportError
from keyframe_store import state_at
from models import Keyframe
from renderer import RenderSurface, capture_frame, wait_until_settled

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
FrameCallback = Callable[[int], None]


class _SubmissionGate:
    """At most `limit` encoder submissions in flight; remembers the first failure."""

    def __init__(self, limit: int, on_ack: FrameCallback | None):
        self._slots = asyncio.Semaphore(limit)
        self._pending: set[asyncio.Task] = set()
        self._on_ack = on_ack
        self.failure: BaseException | None = None
        self.acknowledged = 0

    @property
    def in_flight(self) -> int:
        return len(self._pending)

    async def acquire(self) -> None:
        await self._slots.acquire()

    def release(self) -> None:
        self._slots.release()

    def submit(self, frame_index: int, coro) -> None:
        """Start a submission; the slot taken by `acquire` is freed when it resolves."""
        task = asyncio.create_task(coro, name=f"submit-{frame_index}")
        self._pending.add(task)
        task.add_done_callback(lambda t: self._resolved(t, frame_index))

    def _resolved(self, task: asyncio.Task, frame_index: int) -> None:
        self._pending.discard(task)
        self._slots.release()
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            if self.failure is None:
                self.failure = exc
            return
        self.acknowledged += 1
        if self._on_ack:
            self._on_ack(frame_index)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class SequentialExportPipeline:
    """Drive one render surface through every frame, streaming captures to an encoder.

    The encoder must already be configured. Captures are serial; only the
    encoder submissions overlap, bounded by `max_in_flight`.
    """

    def __init__(
        self,
        *,
        settle_timeout_sec: float = 2.0,
        settle_poll_sec: float = 0.02,
        max_in_flight: int = 8,
        key_frame_interval_sec: float = 2.0,
        on_progress: ProgressCallback | None = None,
        on_frame: FrameCallback | None = None,
        on_finalizing: Callable[[], None] | None = None,
    ):
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be at least 1")
        self.settle_timeout_sec = settle_timeout_sec
        self.settle_poll_sec = settle_poll_sec
        self.max_in_flight = max_in_flight
        self.key_frame_interval_sec = key_frame_interval_sec
        self.on_progress = on_progress
        self.on_frame = on_frame
        self.on_finalizing = on_finalizing

    def _is_key_frame(self, frame_index: int, fps: int) -> bool:
        interval = max(int(round(self.key_frame_interval_sec * fps)), 1)
        return frame_index % interval == 0

    async def run(
        self,
        keyframes: Sequence[Keyframe],
        duration: float,
        fps: int,
        renderer: RenderSurface,
        encoder: FrameEncoder,
        cancel_token: CancelToken,
    ) -> bytes:
        total = total_frames(duration, fps)
        if total == 0:
            raise ExportError("nothing to export: the timeline has no frames")

        gate = _SubmissionGate(self.max_in_flight, self.on_frame)
        await renderer.load_scene(keyframes)
        logger.info("[sequential] exporting %d frames at %d fps", total, fps)

        try:
            for frame in range(total):
                if cancel_token.cancelled or gate.failure:
                    break

                await gate.acquire()
                # a submission may have failed, or a cancel arrived, while we waited
                if cancel_token.cancelled or gate.failure:
                    gate.release()
                    break

                try:
                    t = frame_time(frame, fps)
                    await renderer.set_camera_state(state_at(keyframes, t))
                    await wait_until_settled(renderer, self.settle_timeout_sec, self.settle_poll_sec)
                    await renderer.wait_for_paint()
                    image = await capture_frame(renderer, frame)
                except BaseException:
                    gate.release()
                    raise

                gate.submit(frame, self._submit(encoder, image, frame, fps))
                if self.on_progress:
                    self.on_progress(frame + 1, total)
        finally:
            await gate.drain()

        if cancel_token.cancelled:
            logger.info("[sequential] cancelled after %d acknowledged frames", gate.acknowledged)
            raise ExportCancelled(cancel_token.reason)
        if gate.failure is not None:
            raise gate.failure

        if self.on_finalizing:
            self.on_finalizing()
        try:
            artifact = await encoder.finalize()
        except EncodeFinalizeFailure:
            raise
        except Exception as exc:
            raise EncodeFinalizeFailure(str(exc)) from exc
        logger.info("[sequential] finalized %d frames (%d bytes)", gate.acknowledged, len(artifact))
        return artifact

    async def _submit(self, encoder: FrameEncoder, image: bytes, frame: int, fps: int) -> None:
        try:
            await encoder.submit_frame(image, frame_time(frame, fps), self._is_key_frame(frame, fps))
        except EncodeSubmissionFailure:
            raise
        except Exception as exc:
            raise EncodeSubmissionFailure(frame, str(exc)) from exc
