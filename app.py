from __future__ import annotations

import logging
import math

from flask import Flask, jsonify, request, send_file, send_from_directory

from config import AppConfig
from errors import ArtifactNotReady, DuplicateKeyframeError, InvalidSettings, SessionNotFound
from export_service import ExportService
from models import Keyframe
from renderer import VIEWER_HTML
from tile_providers import TILE_PROVIDERS, check_provider

logger = logging.getLogger(__name__)

app = Flask(__name__)

MAX_SAMPLE_POINTS = 2000


def _service() -> ExportService:
    service = app.config.get("EXPORT_SERVICE")
    if service is None:
        service = ExportService(AppConfig.from_env())
        app.config["EXPORT_SERVICE"] = service
    return service


def _json_body() -> dict:
    data = request.get_json(force=True, silent=True)
    if not isinstance(data, dict):
        raise InvalidSettings("request body must be a JSON object")
    return data


# ─── Error mapping ──────────────────────────────────────────────────────

@app.errorhandler(SessionNotFound)
def _not_found(exc: SessionNotFound):
    return jsonify({"ok": False, "error": "Session not found."}), 404


@app.errorhandler(InvalidSettings)
@app.errorhandler(DuplicateKeyframeError)
def _bad_request(exc: ValueError):
    return jsonify({"ok": False, "error": str(exc)}), 400


@app.errorhandler(ArtifactNotReady)
def _not_ready(exc: ArtifactNotReady):
    return jsonify({"ok": False, "error": str(exc), "status": exc.status}), 409


# ─── Routes ──────────────────────────────────────────────────────────────

@app.route("/")
@app.route("/viewer")
def viewer():
    return send_from_directory(VIEWER_HTML.parent, VIEWER_HTML.name)


@app.route("/health")
def health():
    service = _service()
    return jsonify({"ok": True, "sessions": len(service.store.ids())})


# ─── API: Tile providers ────────────────────────────────────────────────

@app.route("/api/providers")
def list_providers():
    return jsonify({
        "ok": True,
        "providers": [
            {"name": p.name, "attribution": p.attribution, "needsKey": p.needs_key}
            for p in TILE_PROVIDERS.values()
        ],
    })


@app.route("/api/providers/check", methods=["POST"])
def check_tile_provider():
    data = _json_body()
    name = str(data.get("provider", "")).strip()
    if not name:
        raise InvalidSettings("provider is required")
    api_key = str(data.get("apiKey", "")).strip() or _service().config.tile_api_key
    try:
        result = check_provider(name, api_key)
    except ValueError as exc:
        raise InvalidSettings(str(exc)) from exc
    return jsonify(result)


# ─── API: Path preview ──────────────────────────────────────────────────

@app.route("/api/sample", methods=["POST"])
def sample_camera_path():
    data = _json_body()
    try:
        keyframes = [Keyframe.from_dict(k) for k in data.get("keyframes") or []]
        if "times" in data:
            times = [float(t) for t in data["times"]]
        else:
            duration = float(data.get("duration", 10))
            fps = min(max(int(data.get("fps", 30)), 1), 60)
            count = int(duration * fps) + 1
            times = [i / fps for i in range(min(count, MAX_SAMPLE_POINTS + 1))]
    except (KeyError, TypeError, ValueError, OverflowError) as exc:
        raise InvalidSettings(f"malformed sample request: {exc}") from exc
    if len(times) > MAX_SAMPLE_POINTS:
        raise InvalidSettings(f"at most {MAX_SAMPLE_POINTS} sample points per request")
    if not all(math.isfinite(t) for t in times):
        raise InvalidSettings("sample times must be finite")

    states = ExportService.sample_path(keyframes, times)
    return jsonify({
        "ok": True,
        "samples": [{"time": t, **s.to_dict()} for t, s in zip(times, states)],
    })


# ─── API: Export ────────────────────────────────────────────────────────

@app.route("/api/export", methods=["POST"])
def start_export():
    data = _json_body()
    mode = data.get("mode", "parallel")
    session_id = _service().start_export(mode, data)
    logger.info("[app] export %s started (%s)", session_id, mode)
    return jsonify({"ok": True, "sessionId": session_id}), 202


@app.route("/api/export/<session_id>")
def export_status(session_id):
    return jsonify({"ok": True, **_service().get_status(session_id)})


@app.route("/api/export/<session_id>/cancel", methods=["POST"])
def cancel_export(session_id):
    return jsonify({"ok": True, **_service().cancel_export(session_id)})


@app.route("/api/export/<session_id>/download")
def download_export(session_id):
    path = _service().download_artifact(session_id)
    return send_file(
        path.resolve(),
        mimetype="video/mp4",
        as_attachment=True,
        download_name=f"map-export-{session_id}.mp4",
    )


@app.route("/api/export/<session_id>/frames")
def export_frames(session_id):
    frames = _service().list_frames(session_id)
    return jsonify({
        "ok": True,
        "frames": [
            {"index": f["index"], "url": f"/api/export/{session_id}/frames/{f['index']}"}
            for f in frames
        ],
    })


@app.route("/api/export/<session_id>/frames/<int:frame_index>")
def export_frame(session_id, frame_index):
    try:
        path = _service().frame_path(session_id, frame_index)
    except KeyError:
        return jsonify({"ok": False, "error": f"Frame {frame_index} not captured."}), 404
    if not path.exists():
        return jsonify({"ok": False, "error": f"Frame {frame_index} is gone."}), 404
    return send_file(path.resolve(), mimetype="image/png")


# ─── API: Client-rendered upload ────────────────────────────────────────

@app.route("/api/upload", methods=["POST"])
def open_upload():
    data = request.get_json(force=True, silent=True) or {}
    if not isinstance(data, dict):
        raise InvalidSettings("request body must be a JSON object")
    session_id = _service().open_upload(data)
    return jsonify({"ok": True, "sessionId": session_id})


@app.route("/api/upload/<session_id>/frames", methods=["POST"])
def upload_frames(session_id):
    data = _json_body()
    frames = data.get("frames")
    if not isinstance(frames, list):
        raise InvalidSettings("frames must be a list of {index, image}")
    accepted = _service().accept_frames(session_id, frames)
    return jsonify({"ok": True, "accepted": accepted, **_service().get_status(session_id)})


@app.route("/api/upload/<session_id>/finish", methods=["POST"])
def finish_upload(session_id):
    data = request.get_json(force=True, silent=True) or {}
    if not isinstance(data, dict):
        raise InvalidSettings("request body must be a JSON object")
    return jsonify({"ok": True, **_service().finish_upload(session_id, data)}), 202


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    config = AppConfig.from_env()
    config.output_dir.mkdir(parents=True, exist_ok=True)
    app.config["EXPORT_SERVICE"] = ExportService(config)
    app.run(host="127.0.0.1", port=5100, debug=False, threaded=True)
