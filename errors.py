from __future__ import annotations


class ExportError(Exception):
    """Base class for failures while exporting a camera path."""


class RendererTimeout(ExportError):
    """The render surface did not report settled within the bound."""

    def __init__(self, timeout_sec: float):
        super().__init__(f"renderer did not settle within {timeout_sec:.2f}s")
        self.timeout_sec = timeout_sec


class CaptureFailure(ExportError):
    def __init__(self, frame_index: int, reason: str):
        super().__init__(f"capture of frame {frame_index} failed: {reason}")
        self.frame_index = frame_index


class EncodeSubmissionFailure(ExportError):
    def __init__(self, frame_index: int, reason: str):
        super().__init__(f"encoder rejected frame {frame_index}: {reason}")
        self.frame_index = frame_index


class EncodeFinalizeFailure(ExportError):
    pass


class SessionNotFound(ExportError):
    def __init__(self, session_id: str):
        super().__init__(f"session not found: {session_id}")
        self.session_id = session_id


class ExportCancelled(ExportError):
    """Raised to unwind a pipeline after a user cancel. Not reported as an error."""


class InvalidSettings(ValueError):
    pass


class DuplicateKeyframeError(ValueError):
    def __init__(self, time: float):
        super().__init__(f"a keyframe already exists at t={time}")
        self.time = time


class ArtifactNotReady(ExportError):
    def __init__(self, session_id: str, status: str):
        super().__init__(f"session {session_id} has no downloadable video (status: {status})")
        self.session_id = session_id
        self.status = status
