from __future__ import annotations

import json
import logging
import os
import shutil
import threading
import time
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Callable

from errors import SessionNotFound
from models import ExportMode, ExportSession, SessionStatus

logger = logging.getLogger(__name__)

Mutator = Callable[[ExportSession], None]


def new_session_id() -> str:
    return uuid.uuid4().hex[:12]


def _snapshot(session: ExportSession) -> ExportSession:
    # descriptors are frozen, so copying the list is enough
    return replace(session, frames=list(session.frames))


class SessionStore:
    """Export session records, safe under concurrent writers.

    Every `update` runs its mutator on the live record while holding the
    store lock, so two workers appending frames never lose each other's
    write. Records are mirrored to a JSON file so status polls survive a
    restart; frame-only updates are flushed at most once per
    `persist_interval` while status changes are flushed immediately.
    """

    def __init__(
        self,
        path: Path | None = None,
        *,
        frames_root: Path | None = None,
        retention_sec: float = 600.0,
        persist_interval: float = 1.0,
    ):
        self.path = Path(path) if path else None
        self.frames_root = Path(frames_root) if frames_root else None
        self.retention_sec = retention_sec
        self.persist_interval = persist_interval
        self._lock = threading.RLock()
        self._sessions: dict[str, ExportSession] = {}
        self._timers: dict[str, threading.Timer] = {}
        self._last_persist = 0.0
        if self.path and self.path.exists():
            self._load()

    # ── CRUD ──

    def create(
        self,
        session_id: str | None = None,
        *,
        mode: ExportMode = ExportMode.SEQUENTIAL,
        total_frames: int = 0,
        message: str = "Preparing export...",
    ) -> ExportSession:
        session_id = session_id or new_session_id()
        with self._lock:
            if session_id in self._sessions:
                raise ValueError(f"session already exists: {session_id}")
            session = ExportSession(
                id=session_id,
                mode=mode,
                total_frames=total_frames,
                message=message,
                created_at=time.time(),
            )
            self._sessions[session_id] = session
            self._persist(force=True)
            logger.info("[sessions] created %s (%s, %d frames)", session_id, mode.value, total_frames)
            return _snapshot(session)

    def get(self, session_id: str) -> ExportSession | None:
        with self._lock:
            session = self._sessions.get(session_id)
            return _snapshot(session) if session else None

    def require(self, session_id: str) -> ExportSession:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def update(self, session_id: str, mutator: Mutator) -> ExportSession:
        """Atomic read-modify-write. Returns a snapshot of the new record.

        Once a record is terminal it is frozen: later mutations are
        dropped, so a straggling worker cannot flip Cancelled back to
        Rendering.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFound(session_id)
            if session.status.is_terminal:
                return _snapshot(session)

            before = session.status
            mutator(session)
            status_changed = session.status is not before

            if session.status.is_terminal:
                session.finished_at = time.time()
                self._schedule_deletion_locked(session_id, self.retention_sec)
                logger.info("[sessions] %s is %s", session_id, session.status.value)

            self._persist(force=status_changed)
            return _snapshot(session)

    def delete(self, session_id: str) -> bool:
        """Drop the record and its backing frames/artifact. Cleanup errors are logged only."""
        with self._lock:
            timer = self._timers.pop(session_id, None)
            if timer:
                timer.cancel()
            session = self._sessions.pop(session_id, None)
            self._persist(force=True)

        if session is None:
            return False
        self._remove_backing_files(session)
        logger.info("[sessions] deleted %s", session_id)
        return True

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def frames_dir(self, session_id: str) -> Path:
        if self.frames_root is None:
            raise RuntimeError("SessionStore has no frames_root configured")
        return self.frames_root / session_id

    # ── retention ──

    def schedule_deletion(self, session_id: str, delay_sec: float | None = None) -> None:
        with self._lock:
            self._schedule_deletion_locked(session_id, self.retention_sec if delay_sec is None else delay_sec)

    def _schedule_deletion_locked(self, session_id: str, delay_sec: float) -> None:
        old = self._timers.pop(session_id, None)
        if old:
            old.cancel()
        timer = threading.Timer(max(delay_sec, 0.0), self._expire, args=(session_id,))
        timer.daemon = True
        self._timers[session_id] = timer
        timer.start()

    def _expire(self, session_id: str) -> None:
        try:
            self.delete(session_id)
        except Exception:
            logger.exception("[sessions] cleanup of %s failed", session_id)

    def close(self) -> None:
        with self._lock:
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            self._persist(force=True)

    def _remove_backing_files(self, session: ExportSession) -> None:
        targets: list[Path] = []
        if self.frames_root is not None:
            targets.append(self.frames_dir(session.id))
        if session.artifact:
            targets.append(Path(session.artifact))
        for target in targets:
            try:
                if target.is_dir():
                    shutil.rmtree(target)
                elif target.exists():
                    target.unlink()
            except OSError as exc:
                logger.warning("[sessions] could not remove %s: %s", target, exc)

    # ── persistence ──

    def _persist(self, force: bool = False) -> None:
        if self.path is None:
            return
        now = time.monotonic()
        if not force and now - self._last_persist < self.persist_interval:
            return
        payload = {sid: s.to_dict() for sid, s in self._sessions.items()}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".json.tmp")
        try:
            tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as exc:
            logger.warning("[sessions] could not persist %s: %s", self.path, exc)
            return
        self._last_persist = now

    def _load(self) -> None:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("[sessions] ignoring unreadable %s: %s", self.path, exc)
            return

        now = time.time()
        for sid, data in raw.items():
            try:
                session = ExportSession.from_dict(data)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("[sessions] skipping malformed record %s: %s", sid, exc)
                continue
            if not session.status.is_terminal:
                session.status = SessionStatus.FAILED
                session.error = "interrupted by restart"
                session.message = "Export interrupted"
                session.finished_at = now
            self._sessions[sid] = session
            remaining = self.retention_sec - (now - (session.finished_at or now))
            self._schedule_deletion_locked(sid, remaining)
        logger.info("[sessions] restored %d session(s) from %s", len(self._sessions), self.path)
