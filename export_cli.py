from __future__ import annotations

import argparse
import json
import logging
import os
import shutil
import sys
import time
from pathlib import Path

from capture import frame_time, total_frames
from config import CODECS, QUALITY_LEVELS, RESOLUTION_PRESETS, AppConfig, build_export_settings
from errors import InvalidSettings
from export_service import ExportService
from keyframe_store import state_at
from tile_providers import TILE_PROVIDERS


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Render a keyframed map camera path to MP4."
    )
    parser.add_argument("keyframes", type=str, help="JSON file: a keyframe list or {keyframes, duration, fps, ...}")
    parser.add_argument("--mode", choices=["sequential", "parallel"], default="parallel", help="Export pipeline")
    parser.add_argument("--duration", type=float, default=None, help="Timeline length in seconds")
    parser.add_argument("--fps", type=int, default=None, help="Frame rate")
    parser.add_argument("--resolution", default=None, help=f"Preset ({', '.join(RESOLUTION_PRESETS)}) or WxH")
    parser.add_argument("--quality", choices=list(QUALITY_LEVELS), default=None, help="Encoder quality preset")
    parser.add_argument("--codec", choices=list(CODECS), default=None, help="Output codec")
    parser.add_argument("--bitrate", type=int, default=None, help="Target bitrate in bits/s (overrides quality CRF)")
    parser.add_argument("--concurrency", type=int, default=None, help="Parallel renderer count (1-16)")
    parser.add_argument("--provider", choices=list(TILE_PROVIDERS), default=None, help="Map tile provider")
    parser.add_argument(
        "--tile-api-key",
        default=os.getenv("PREVIZ_TILE_API_KEY", ""),
        help="Tile provider API key (uses PREVIZ_TILE_API_KEY env var if not provided)",
    )
    parser.add_argument("--output-dir", default=None, help="Output root directory")
    parser.add_argument("--output", default=None, help="Copy the finished MP4 here")
    parser.add_argument("--dry-run", action="store_true", help="Write the sampled camera path as JSON, skip rendering")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def load_request(path: Path) -> dict:
    raw = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(raw, list):
        return {"keyframes": raw}
    if isinstance(raw, dict):
        return dict(raw)
    raise InvalidSettings(f"{path} must contain a keyframe list or an object")


def merge_overrides(data: dict, args: argparse.Namespace) -> dict:
    overrides = {
        "duration": args.duration,
        "fps": args.fps,
        "resolution": args.resolution,
        "quality": args.quality,
        "codec": args.codec,
        "bitrate": args.bitrate,
        "concurrency": args.concurrency,
        "provider": args.provider,
    }
    merged = dict(data)
    merged.update({k: v for k, v in overrides.items() if v is not None})
    return merged


def _safe_write_json(path: Path, payload) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = AppConfig.from_env()
    if args.output_dir:
        config.output_dir = Path(args.output_dir)
    if args.tile_api_key:
        config.tile_api_key = args.tile_api_key

    source = Path(args.keyframes)
    try:
        settings = build_export_settings(merge_overrides(load_request(source), args), config)
    except (OSError, ValueError) as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 2

    frames = total_frames(settings.duration, settings.fps)
    print(f"[INFO] keyframes: {len(settings.keyframes)} / duration: {settings.duration}s / fps: {settings.fps}")
    print(f"[INFO] resolution: {settings.width}x{settings.height} / frames: {frames} / mode: {args.mode}")

    if args.dry_run:
        path_file = config.output_dir / f"{source.stem}_path.json"
        samples = [
            {"frame": i, "time": frame_time(i, settings.fps), **state_at(settings.keyframes, frame_time(i, settings.fps)).to_dict()}
            for i in range(frames)
        ]
        _safe_write_json(path_file, {"settings": {"duration": settings.duration, "fps": settings.fps}, "path": samples})
        print(f"[DONE] dry-run: camera path written to {path_file}")
        return 0

    config.output_dir.mkdir(parents=True, exist_ok=True)
    service = ExportService(config)
    session_id = service.start_export(args.mode, settings)
    print(f"[INFO] session: {session_id}")

    last_message = ""
    try:
        while True:
            session = service.wait(session_id, timeout=1.0)
            if session.message != last_message:
                print(f"  - [{session.progress:5.1f}%] {session.message}")
                last_message = session.message
            if session.status.is_terminal:
                break
    except KeyboardInterrupt:
        print("[INFO] cancelling...")
        service.cancel_export(session_id)
        session = service.wait(session_id, timeout=30.0)
    finally:
        service.store.close()

    if session.status.value != "completed":
        print(f"[ERROR] export {session.status.value}: {session.error or session.message}", file=sys.stderr)
        return 1

    artifact = Path(session.artifact)
    if args.output:
        target = Path(args.output)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(artifact, target)
        artifact = target
    print("[DONE] Export complete")
    print(f"  - video: {artifact}")
    print(f"  - elapsed: {time.time() - session.created_at:.1f}s")
    return 0


if __name__ == "__main__":
    sys.exit(main())
