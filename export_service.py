from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path
from typing import AsyncContextManager, Callable, Iterable, Sequence

from capture import CancelToken, total_frames
from config import AppConfig, build_export_settings
from encoder import FrameEncoder, FrameSequenceEncoder, encode_image_sequence
from errors import ArtifactNotReady, ExportCancelled, InvalidSettings, SessionNotFound
from frame_storage import FrameStorage, decode_data_url
from keyframe_store import KeyframeStore, state_at
from models import (
    CameraState,
    ExportMode,
    ExportSession,
    ExportSettings,
    FrameDescriptor,
    Keyframe,
    SessionStatus,
)
from parallel_pipeline import ParallelCaptureCoordinator
from renderer import PlaywrightRendererPool, RenderOptions, RenderSurface
from sequential_pipeline import SequentialExportPipeline
from session_store import SessionStore

logger = logging.getLogger(__name__)

SurfacePoolFactory = Callable[[ExportSettings, int], AsyncContextManager[Sequence[RenderSurface]]]
EncoderFactory = Callable[[FrameStorage, Path, ExportSettings], FrameEncoder]
FrameSetEncoder = Callable[[list[FrameDescriptor], Path, ExportSettings], Path]

UPLOAD_PROGRESS_SHARE = 80.0
SEQUENTIAL_PROGRESS_SHARE = 90.0


def encode_frame_set(frames: list[FrameDescriptor], output_file: Path, settings: ExportSettings) -> Path:
    ordered = sorted(frames, key=lambda f: f.index)
    encode_image_sequence(
        [Path(f.path) for f in ordered],
        output_file,
        fps=settings.fps,
        codec=settings.codec,
        quality=settings.quality,
        bitrate=settings.bitrate,
    )
    return output_file


class ExportService:
    """Caller-facing export operations over a SessionStore.

    Pipelines run on daemon threads, each with its own event loop; the
    HTTP layer only ever touches the store and cancel tokens.
    """

    def __init__(
        self,
        config: AppConfig,
        store: SessionStore | None = None,
        *,
        surface_pool: SurfacePoolFactory | None = None,
        encoder_factory: EncoderFactory | None = None,
        frame_set_encoder: FrameSetEncoder | None = None,
    ):
        self.config = config
        self.store = store or SessionStore(
            config.sessions_file,
            frames_root=config.frames_root,
            retention_sec=config.retention_sec,
        )
        if self.store.frames_root is None:
            self.store.frames_root = config.frames_root
        self.surface_pool = surface_pool or self._playwright_pool
        self.encoder_factory = encoder_factory or self._frame_sequence_encoder
        self.frame_set_encoder = frame_set_encoder or encode_frame_set
        self._tokens: dict[str, CancelToken] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._upload_settings: dict[str, ExportSettings] = {}
        self._lock = threading.Lock()

    # ─── Public operations ────────────────────────────────────────────────

    def start_export(self, mode: str | ExportMode, settings: ExportSettings | dict) -> str:
        mode = _parse_mode(mode)
        if mode is ExportMode.UPLOAD:
            raise InvalidSettings("use open_upload for client-rendered exports")
        if isinstance(settings, dict):
            settings = build_export_settings(settings, self.config)

        session = self.store.create(
            mode=mode,
            total_frames=total_frames(settings.duration, settings.fps),
            message="Preparing export...",
        )
        token = CancelToken()
        target = self._run_sequential if mode is ExportMode.SEQUENTIAL else self._run_parallel
        self._spawn(session.id, token, target, settings)
        return session.id

    def get_status(self, session_id: str) -> dict:
        return self.store.require(session_id).status_payload()

    def cancel_export(self, session_id: str) -> dict:
        self.store.require(session_id)
        with self._lock:
            token = self._tokens.get(session_id)
            self._upload_settings.pop(session_id, None)
        if token:
            token.cancel()

        def _cancelled(s: ExportSession) -> None:
            s.status = SessionStatus.CANCELLED
            s.message = "Export cancelled"

        session = self.store.update(session_id, _cancelled)
        logger.info("[export] cancel requested for %s (now %s)", session_id, session.status.value)
        return session.status_payload()

    def download_artifact(self, session_id: str) -> Path:
        session = self.store.require(session_id)
        if session.status is not SessionStatus.COMPLETED or not session.artifact:
            raise ArtifactNotReady(session_id, session.status.value)
        path = Path(session.artifact)
        if not path.exists():
            raise SessionNotFound(session_id)
        return path

    def list_frames(self, session_id: str) -> list[dict]:
        return [f.to_dict() for f in self.store.require(session_id).frames]

    def frame_path(self, session_id: str, frame_index: int) -> Path:
        session = self.store.require(session_id)
        for f in session.frames:
            if f.index == frame_index:
                return Path(f.path)
        raise KeyError(frame_index)

    def wait(self, session_id: str, timeout: float | None = None) -> ExportSession:
        """Block until the session's worker thread exits (CLI and tests)."""
        with self._lock:
            thread = self._threads.get(session_id)
        if thread:
            thread.join(timeout)
        return self.store.require(session_id)

    @staticmethod
    def sample_path(keyframes: Iterable[Keyframe], times: Iterable[float]) -> list[CameraState]:
        ordered = KeyframeStore(keyframes).snapshot()
        return [state_at(ordered, t) for t in times]

    # ─── Client-rendered uploads ─────────────────────────────────────────

    def open_upload(self, data: dict | None = None) -> str:
        """Session for a client that renders frames itself and uploads them in batches."""
        data = dict(data or {})
        data.setdefault("keyframes", [])
        settings = build_export_settings(data, self.config)
        expected = total_frames(settings.duration, settings.fps) if "duration" in data else 0

        session = self.store.create(mode=ExportMode.UPLOAD, total_frames=expected, message="Waiting for frames...")
        self.store.frames_dir(session.id).mkdir(parents=True, exist_ok=True)
        with self._lock:
            self._upload_settings[session.id] = settings
            self._tokens[session.id] = CancelToken()

        def _rendering(s: ExportSession) -> None:
            s.status = SessionStatus.RENDERING

        self.store.update(session.id, _rendering)
        return session.id

    def accept_frames(self, session_id: str, frames: list[dict]) -> int:
        session = self.store.require(session_id)
        if session.mode is not ExportMode.UPLOAD:
            raise InvalidSettings("session does not accept uploaded frames")
        if session.status is not SessionStatus.RENDERING:
            raise InvalidSettings(f"session is {session.status.value}; frames are no longer accepted")

        settings = self._upload_settings_for(session_id)
        storage = FrameStorage(self.store.frames_dir(session_id), (settings.width, settings.height))
        written: list[FrameDescriptor] = []
        for frame in frames:
            try:
                index = int(frame["index"])
                image = frame.get("image")
                if not image:
                    continue
                payload = decode_data_url(image) if isinstance(image, str) else bytes(image)
                path = storage.write_frame(index, payload)
            except (KeyError, TypeError, ValueError) as exc:
                raise InvalidSettings(f"bad frame in batch: {exc}") from exc
            written.append(FrameDescriptor(index, str(path)))

        def _record(s: ExportSession) -> None:
            for descriptor in written:
                s.add_frame(descriptor)
            done = len(s.frames)
            if s.total_frames:
                s.progress = min(done / s.total_frames, 1.0) * UPLOAD_PROGRESS_SHARE
                s.message = f"Received {done}/{s.total_frames} frames"
            else:
                s.message = f"Received {done} frames"

        self.store.update(session_id, _record)
        return len(written)

    def finish_upload(self, session_id: str, data: dict | None = None) -> dict:
        session = self.store.require(session_id)
        if session.mode is not ExportMode.UPLOAD:
            raise InvalidSettings("session was not opened for uploads")
        if session.status is not SessionStatus.RENDERING:
            raise InvalidSettings(f"session is {session.status.value}")

        base = self._upload_settings_for(session_id)
        data = data or {}
        merged = {
            "keyframes": [],
            "duration": base.duration,
            "fps": data.get("fps", base.fps),
            "quality": data.get("quality", base.quality),
            "codec": data.get("codec", base.codec),
            "bitrate": data.get("bitrate", base.bitrate),
            "resolution": (base.width, base.height),
        }
        settings = build_export_settings(merged, self.config)
        with self._lock:
            token = self._tokens.setdefault(session_id, CancelToken())
        self._spawn(session_id, token, self._run_upload_encode, settings)
        return self.store.require(session_id).status_payload()

    def _upload_settings_for(self, session_id: str) -> ExportSettings:
        with self._lock:
            settings = self._upload_settings.get(session_id)
        if settings is None:
            # session restored from disk after a restart; uploads cannot resume
            raise InvalidSettings("upload session is no longer active")
        return settings

    # ─── Workers ─────────────────────────────────────────────────────────

    def _spawn(self, session_id: str, token: CancelToken, target, settings: ExportSettings) -> None:
        thread = threading.Thread(
            target=self._guarded,
            args=(session_id, token, target, settings),
            name=f"export-{session_id}",
            daemon=True,
        )
        with self._lock:
            self._tokens[session_id] = token
            self._threads[session_id] = thread
        thread.start()

    def _guarded(self, session_id: str, token: CancelToken, target, settings: ExportSettings) -> None:
        try:
            target(session_id, token, settings)
        except ExportCancelled:
            self._finish(session_id, SessionStatus.CANCELLED, message="Export cancelled")
        except Exception as exc:
            logger.exception("[export] session %s failed", session_id)
            self._finish(session_id, SessionStatus.FAILED, message=f"Export failed: {exc}", error=str(exc))
        finally:
            with self._lock:
                self._tokens.pop(session_id, None)
                self._upload_settings.pop(session_id, None)

    def _finish(self, session_id: str, status: SessionStatus, *, message: str, error: str | None = None,
                artifact: Path | None = None) -> ExportSession:
        def _terminal(s: ExportSession) -> None:
            s.status = status
            s.message = message
            s.error = error
            if status is SessionStatus.COMPLETED:
                s.progress = 100.0
                s.artifact = str(artifact) if artifact else None

        return self.store.update(session_id, _terminal)

    def _artifact_path(self, session_id: str) -> Path:
        return self.config.artifacts_root / f"{session_id}.mp4"

    def _run_sequential(self, session_id: str, token: CancelToken, settings: ExportSettings) -> None:
        storage = FrameStorage(self.store.frames_dir(session_id), (settings.width, settings.height))
        artifact_path = self._artifact_path(session_id)
        encoder = self.encoder_factory(storage, artifact_path, settings)
        total = total_frames(settings.duration, settings.fps)

        def _progress(done: int, total_: int) -> None:
            def _m(s: ExportSession) -> None:
                s.progress = done / total_ * SEQUENTIAL_PROGRESS_SHARE
                s.message = f"Rendering frame {done}/{total_}"
            self.store.update(session_id, _m)

        def _acknowledged(frame_index: int) -> None:
            descriptor = FrameDescriptor(frame_index, str(storage.path_for(frame_index)))
            self.store.update(session_id, lambda s: s.add_frame(descriptor))

        def _finalizing() -> None:
            def _m(s: ExportSession) -> None:
                s.status = SessionStatus.ENCODING
                s.progress = SEQUENTIAL_PROGRESS_SHARE
                s.message = "Encoding video..."
            self.store.update(session_id, _m)

        pipeline = SequentialExportPipeline(
            settle_timeout_sec=self.config.settle_timeout_sec,
            settle_poll_sec=self.config.settle_poll_sec,
            max_in_flight=self.config.max_in_flight,
            on_progress=_progress,
            on_frame=_acknowledged,
            on_finalizing=_finalizing,
        )

        async def _go() -> bytes:
            self.store.update(session_id, _status(SessionStatus.LOADING, "Loading map renderer..."))
            await encoder.configure(settings.width, settings.height, settings.fps, settings.bitrate, settings.codec)
            async with self.surface_pool(settings, 1) as surfaces:
                self.store.update(session_id, _status(SessionStatus.RENDERING, f"Rendering 0/{total}"))
                return await pipeline.run(
                    settings.keyframes, settings.duration, settings.fps, surfaces[0], encoder, token,
                )

        artifact = asyncio.run(_go())
        if not artifact_path.exists():
            artifact_path.parent.mkdir(parents=True, exist_ok=True)
            artifact_path.write_bytes(artifact)
        session = self._finish(session_id, SessionStatus.COMPLETED,
                               message="Export complete! Ready for download.", artifact=artifact_path)
        if session.status is not SessionStatus.COMPLETED:
            artifact_path.unlink(missing_ok=True)

    def _run_parallel(self, session_id: str, token: CancelToken, settings: ExportSettings) -> None:
        artifact_path = self._artifact_path(session_id)
        coordinator = ParallelCaptureCoordinator(
            self.store,
            lambda size: self.surface_pool(settings, size),
            lambda frames: self.frame_set_encoder(frames, artifact_path, settings),
            settle_timeout_sec=self.config.settle_timeout_sec,
            settle_poll_sec=self.config.settle_poll_sec,
        )
        storage = FrameStorage(self.store.frames_dir(session_id), (settings.width, settings.height))
        asyncio.run(coordinator.run(
            session_id,
            settings.keyframes,
            settings.duration,
            settings.fps,
            concurrency=settings.concurrency,
            frame_delay_sec=settings.frame_delay_ms / 1000.0,
            storage=storage,
            cancel_token=token,
        ))

    def _run_upload_encode(self, session_id: str, token: CancelToken, settings: ExportSettings) -> None:
        def _encoding(s: ExportSession) -> None:
            s.status = SessionStatus.ENCODING
            s.progress = UPLOAD_PROGRESS_SHARE
            s.message = "Encoding video..."

        session = self.store.update(session_id, _encoding)
        if session.status is not SessionStatus.ENCODING:
            raise ExportCancelled("cancelled before encoding")

        indices = [f.index for f in session.frames]
        expected = session.total_frames or (indices[-1] + 1 if indices else 0)
        if not indices:
            raise InvalidSettings("no frames were uploaded")
        if indices != list(range(expected)):
            missing = sorted(set(range(expected)) - set(indices))
            raise InvalidSettings(f"upload is missing {len(missing)} frame(s), first {missing[:10]}")

        artifact_path = self._artifact_path(session_id)
        self.frame_set_encoder(session.frames, artifact_path, settings)
        if token.cancelled:
            artifact_path.unlink(missing_ok=True)
            raise ExportCancelled(token.reason)
        session = self._finish(session_id, SessionStatus.COMPLETED,
                               message="Export complete! Ready for download.", artifact=artifact_path)
        if session.status is not SessionStatus.COMPLETED:
            artifact_path.unlink(missing_ok=True)

    # ─── Default collaborators ───────────────────────────────────────────

    def _playwright_pool(self, settings: ExportSettings, size: int) -> PlaywrightRendererPool:
        return PlaywrightRendererPool(
            RenderOptions(
                width=settings.width,
                height=settings.height,
                provider=settings.provider,
                api_key=self.config.tile_api_key,
                headless=self.config.headless,
            ),
            size=size,
        )

    @staticmethod
    def _frame_sequence_encoder(storage: FrameStorage, output: Path, settings: ExportSettings) -> FrameEncoder:
        return FrameSequenceEncoder(storage, output, quality=settings.quality, read_back=False)


def _status(status: SessionStatus, message: str):
    def _m(s: ExportSession) -> None:
        s.status = status
        s.message = message
    return _m


def _parse_mode(mode: str | ExportMode) -> ExportMode:
    try:
        return ExportMode(mode)
    except ValueError:
        raise InvalidSettings(f"unknown export mode: {mode!r} (use sequential or parallel)") from None
