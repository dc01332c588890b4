from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncContextManager, Callable, Sequence

from capture import CancelToken, build_capture_tasks
from errors import CaptureFailure, ExportCancelled, ExportError
from frame_storage import FrameStorage
from keyframe_store import state_at
from models import CaptureTask, ExportSession, FrameDescriptor, Keyframe, SessionStatus, TaskState
from renderer import RenderSurface, capture_frame, wait_until_settled
from session_store import SessionStore

logger = logging.getLogger(__name__)

RENDER_PROGRESS_SHARE = 90.0

PoolFactory = Callable[[int], AsyncContextManager[Sequence[RenderSurface]]]
EncodeStage = Callable[[list[FrameDescriptor]], Path]


class RendererArena:
    """Pool of render surfaces checked out for exactly one task at a time."""

    def __init__(self, surfaces: Sequence[RenderSurface]):
        if not surfaces:
            raise ValueError("arena needs at least one surface")
        self._free: asyncio.Queue = asyncio.Queue()
        self._busy: set[int] = set()
        for surface in surfaces:
            self._free.put_nowait(surface)
        self.size = len(surfaces)

    @property
    def available(self) -> int:
        return self._free.qsize()

    @asynccontextmanager
    async def checkout(self):
        surface = await self._free.get()
        key = id(surface)
        if key in self._busy:
            raise RuntimeError("render surface handed out twice")
        self._busy.add(key)
        try:
            yield surface
        finally:
            self._busy.discard(key)
            self._free.put_nowait(surface)


class ParallelCaptureCoordinator:
    """Capture frames on N isolated surfaces at once, then encode them in index order.

    Failure policy is fail-fast: the first task error marks the session
    Failed, the remaining queue is abandoned and no further frames are
    recorded. There is no per-task retry.
    """

    def __init__(
        self,
        store: SessionStore,
        pool_factory: PoolFactory,
        encode: EncodeStage,
        *,
        settle_timeout_sec: float = 2.0,
        settle_poll_sec: float = 0.02,
    ):
        self.store = store
        self.pool_factory = pool_factory
        self.encode = encode
        self.settle_timeout_sec = settle_timeout_sec
        self.settle_poll_sec = settle_poll_sec

    async def run(
        self,
        session_id: str,
        keyframes: Sequence[Keyframe],
        duration: float,
        fps: int,
        *,
        concurrency: int,
        frame_delay_sec: float,
        storage: FrameStorage,
        cancel_token: CancelToken,
    ) -> Path:
        tasks = build_capture_tasks(duration, fps)
        total = len(tasks)
        if total == 0:
            raise ExportError("nothing to export: the timeline has no frames")
        workers = max(1, min(concurrency, total))

        def _loading(s: ExportSession) -> None:
            s.status = SessionStatus.LOADING
            s.total_frames = total
            s.message = f"Launching {workers} renderer(s)..."

        self.store.update(session_id, _loading)
        storage.ensure()

        try:
            async with self.pool_factory(workers) as surfaces:
                await self._capture_all(
                    session_id, keyframes, tasks, surfaces,
                    frame_delay_sec=frame_delay_sec,
                    storage=storage,
                    cancel_token=cancel_token,
                )
        except ExportCancelled:
            self._mark_cancelled(session_id, cancel_token.reason)
            raise
        except Exception as exc:
            self._mark_failed(session_id, exc)
            raise

        return await self._encode(session_id, total)

    # ── capture ──

    async def _capture_all(
        self,
        session_id: str,
        keyframes: Sequence[Keyframe],
        tasks: list[CaptureTask],
        surfaces: Sequence[RenderSurface],
        *,
        frame_delay_sec: float,
        storage: FrameStorage,
        cancel_token: CancelToken,
    ) -> None:
        total = len(tasks)
        queue: asyncio.Queue[CaptureTask] = asyncio.Queue()
        for task in tasks:
            queue.put_nowait(task)

        arena = RendererArena(surfaces)
        halted = asyncio.Event()
        failures: list[BaseException] = []

        def _rendering(s: ExportSession) -> None:
            s.status = SessionStatus.RENDERING
            s.message = f"Starting parallel capture with {arena.size} worker(s)..."

        self.store.update(session_id, _rendering)
        logger.info("[parallel] %s: %d frames on %d worker(s)", session_id, total, arena.size)

        async def worker(worker_id: int) -> None:
            while not halted.is_set():
                if cancel_token.cancelled:
                    halted.set()
                    return
                try:
                    task = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return

                task.state = TaskState.IN_FLIGHT
                try:
                    await self._capture_one(session_id, task, keyframes, arena, storage, frame_delay_sec, halted, total)
                except Exception as exc:
                    task.state = TaskState.FAILED
                    if not failures:
                        failures.append(exc)
                        logger.error("[parallel] worker %d failed on frame %d: %s", worker_id, task.frame_index, exc)
                        self._mark_failed(session_id, exc)
                    halted.set()
                    return

        await asyncio.gather(*(worker(i) for i in range(arena.size)))

        if failures:
            raise failures[0]
        if cancel_token.cancelled:
            raise ExportCancelled(cancel_token.reason)

        captured = self.store.require(session_id).completed_indices
        if len(captured) != total:
            missing = sorted(set(range(total)) - captured)
            raise CaptureFailure(missing[0], f"{len(missing)} frame(s) never completed")

    async def _capture_one(
        self,
        session_id: str,
        task: CaptureTask,
        keyframes: Sequence[Keyframe],
        arena: RendererArena,
        storage: FrameStorage,
        frame_delay_sec: float,
        halted: asyncio.Event,
        total: int,
    ) -> None:
        async with arena.checkout() as surface:
            await surface.load_scene(keyframes)
            await surface.set_camera_state(state_at(keyframes, task.query_time))
            if frame_delay_sec > 0:
                await asyncio.sleep(frame_delay_sec)
            await wait_until_settled(surface, self.settle_timeout_sec, self.settle_poll_sec)
            image = await capture_frame(surface, task.frame_index)

        if halted.is_set():
            # another task already failed or a cancel landed; drop this frame
            return

        try:
            path = await asyncio.to_thread(storage.write_frame, task.frame_index, image)
        except (OSError, ValueError) as exc:
            raise CaptureFailure(task.frame_index, f"could not store frame: {exc}") from exc

        task.state = TaskState.DONE
        descriptor = FrameDescriptor(task.frame_index, str(path))

        def _record(s: ExportSession) -> None:
            s.add_frame(descriptor)
            done = len(s.frames)
            s.progress = done / total * RENDER_PROGRESS_SHARE
            s.message = f"Captured {done}/{total} frames"

        self.store.update(session_id, _record)
        logger.debug("[parallel] frame %d captured", task.frame_index)

    # ── encode ──

    async def _encode(self, session_id: str, total: int) -> Path:
        def _encoding(s: ExportSession) -> None:
            s.status = SessionStatus.ENCODING
            s.progress = RENDER_PROGRESS_SHARE
            s.message = "Encoding video with ffmpeg..."

        session = self.store.update(session_id, _encoding)
        if session.status is not SessionStatus.ENCODING:
            # cancelled between the last capture and here
            raise ExportCancelled("cancelled before encoding")

        frames = sorted(session.frames, key=lambda f: f.index)
        if [f.index for f in frames] != list(range(total)):
            exc = ExportError("frame set is not a contiguous 0..N-1 sequence")
            self._mark_failed(session_id, exc)
            raise exc

        try:
            artifact = await asyncio.to_thread(self.encode, frames)
        except Exception as exc:
            self._mark_failed(session_id, exc)
            raise

        def _completed(s: ExportSession) -> None:
            s.status = SessionStatus.COMPLETED
            s.progress = 100.0
            s.message = "Export complete! Ready for download."
            s.artifact = str(artifact)

        session = self.store.update(session_id, _completed)
        if session.status is not SessionStatus.COMPLETED:
            Path(artifact).unlink(missing_ok=True)
            raise ExportCancelled("cancelled during encoding")
        logger.info("[parallel] %s completed: %s", session_id, artifact)
        return Path(artifact)

    # ── terminal states ──

    def _mark_failed(self, session_id: str, exc: BaseException) -> None:
        def _failed(s: ExportSession) -> None:
            s.status = SessionStatus.FAILED
            s.error = str(exc)
            s.message = f"Export failed: {exc}"

        self.store.update(session_id, _failed)

    def _mark_cancelled(self, session_id: str, reason: str) -> None:
        def _cancelled(s: ExportSession) -> None:
            s.status = SessionStatus.CANCELLED
            s.message = reason or "Export cancelled"

        self.store.update(session_id, _cancelled)
