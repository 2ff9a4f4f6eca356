#!/usr/bin/env python3
"""Stabilize a shaky video with an L1-optimal camera path and a static crop."""

from __future__ import annotations

import argparse
import csv
import json
import logging
from pathlib import Path
import sys
import time
from typing import Dict, List, Optional


# --- CLI parsing ---


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="L1-optimal video stabilization.")
    parser.add_argument("--input", required=True, help="Input video file or frames directory")
    parser.add_argument("--config", default=None, help="Optional YAML config")
    parser.add_argument(
        "--out_dir",
        default=None,
        help="Optional output directory (default: outputs/runs/<run_id>)",
    )
    parser.add_argument(
        "--run_id",
        default=None,
        help="Optional run id (default: YYYYMMDD-HHMM_<input_stem>)",
    )
    parser.add_argument(
        "--detector",
        default=None,
        choices=["corner", "orb", "fast"],
        help="Feature detector variant",
    )
    parser.add_argument("--seed", type=int, default=None, help="RANSAC random seed")
    parser.add_argument("--crop_ratio", type=float, default=None, help="Centered crop ratio in (0, 1]")
    parser.add_argument(
        "--crop_policy",
        default=None,
        choices=["static", "warp"],
        help="Crop extraction policy",
    )
    parser.add_argument("--max_frames", type=int, default=None, help="Maximum frames to load")
    parser.add_argument("--fps", type=float, default=None, help="Fallback fps for frames input")
    parser.add_argument("--fourcc", default="mp4v", help="Output fourcc")
    parser.add_argument(
        "--debug_snapshots",
        type=int,
        default=0,
        help="Save displacement overlays every K frames (0 disables)",
    )
    return parser


# --- Logging and serialization helpers ---


def _setup_logging(log_path: Path) -> None:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handlers = [
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(log_path),
    ]
    logging.basicConfig(
        level=logging.INFO,
        format="%(levelname)s %(message)s",
        handlers=handlers,
    )


def _write_json(path: Path, payload: Dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2)


def _flatten(M, prefix: str) -> Dict[str, Optional[float]]:
    if M is None:
        return {f"{prefix}_{r}{c}": None for r in range(2) for c in range(3)}
    return {f"{prefix}_{r}{c}": float(M[r][c]) for r in range(2) for c in range(3)}


def _build_transform_columns() -> List[str]:
    columns = [
        "frame_idx",
        "motion_status",
        "bridged",
        "n_features",
        "n_displacements",
        "n_inliers",
        "jitter_raw",
        "jitter_raw_max",
        "jitter_sm",
        "jitter_sm_max",
    ]
    for prefix in ["F", "B"]:
        for r in range(2):
            for c in range(3):
                columns.append(f"{prefix}_{r}{c}")
    return columns


def _apply_overrides(config, args) -> None:
    if args.detector is not None:
        config.tracker.detector = args.detector
    if args.seed is not None:
        config.ransac.seed = args.seed
    if args.crop_ratio is not None:
        config.crop.ratio = args.crop_ratio
        config.crop.window = None
    if args.crop_policy is not None:
        config.crop.policy = args.crop_policy


# --- Main pipeline ---


def main() -> int:
    args = _build_parser().parse_args()

    repo_root = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(repo_root / "src"))

    from stabilization.config import StabilizerConfig, config_to_dict, load_config  # noqa: E402
    from stabilization.errors import StabilizationError  # noqa: E402
    from stabilization.io import VideoSink, load_video, open_source  # noqa: E402
    from stabilization.pipeline import Stabilizer  # noqa: E402
    from stabilization.progress import LoggingProgress  # noqa: E402
    from stabilization.temporal import path_jitter  # noqa: E402
    from stabilization.viz import save_image, draw_displacements  # noqa: E402

    start_time = time.perf_counter()

    run_id = args.run_id
    if run_id is None:
        ts = time.strftime("%Y%m%d-%H%M")
        run_id = f"{ts}_{Path(args.input).stem.replace(' ', '_')}"
    output_dir = Path(args.out_dir) if args.out_dir else repo_root / "outputs" / "runs" / run_id
    _setup_logging(output_dir / "logs.txt")

    summary: Dict = {
        "input": args.input,
        "run_id": run_id,
        "config": None,
        "stats": {},
        "warnings": [],
        "errors": [],
        "runtime_ms": None,
    }
    summary_path = output_dir / "summary.json"
    transforms_path = output_dir / "transforms.csv"
    video_path = output_dir / "stabilized.mp4"

    try:
        config = load_config(args.config) if args.config else StabilizerConfig()
        _apply_overrides(config, args)
    except (OSError, ValueError) as exc:
        summary["errors"].append(f"config: {exc}")
        summary["runtime_ms"] = int((time.perf_counter() - start_time) * 1000)
        _write_json(summary_path, summary)
        logging.error("Failed to load config: %s", exc)
        return 1
    summary["config"] = config_to_dict(config)

    progress = LoggingProgress()
    stabilizer = Stabilizer(config, progress=progress, warning_handler=summary["warnings"].append)

    try:
        with open_source(args.input, fps=args.fps) as source:
            video = load_video(source, max_frames=args.max_frames, fps=args.fps, progress=progress)
        result = stabilizer.run(video)
        VideoSink(video_path, fourcc=args.fourcc).write(result.stabilized, progress=progress)
    except StabilizationError as exc:
        summary["errors"].append(
            {"stage": exc.stage, "frame_index": exc.frame_index, "type": type(exc).__name__, "message": str(exc)}
        )
        summary["runtime_ms"] = int((time.perf_counter() - start_time) * 1000)
        _write_json(summary_path, summary)
        logging.error("Stabilization failed: %s", exc)
        return 1

    jitter_rows = path_jitter(result.solution.motions, video.update_transforms(), video.frame_size)
    with transforms_path.open("w", newline="", encoding="utf-8") as f_csv:
        writer_csv = csv.DictWriter(f_csv, fieldnames=_build_transform_columns())
        writer_csv.writeheader()
        for frame, jitter in zip(video.frames, jitter_rows):
            row = {
                "frame_idx": frame.index,
                "motion_status": frame.motion_status,
                "bridged": int(frame.bridged),
                "n_features": frame.n_features,
                "n_displacements": len(frame.displacements),
                "n_inliers": frame.n_inliers,
                "jitter_raw": jitter["jitter_raw"],
                "jitter_raw_max": jitter["jitter_raw_max"],
                "jitter_sm": jitter["jitter_sm"],
                "jitter_sm_max": jitter["jitter_sm_max"],
            }
            row.update(_flatten(frame.observed_transform, "F"))
            row.update(_flatten(frame.update_transform, "B"))
            writer_csv.writerow(row)

    if args.debug_snapshots > 0:
        snapshots_dir = output_dir / "snapshots"
        for frame in video.frames[1::args.debug_snapshots]:
            overlay = result.crop_window.draw_on(draw_displacements(frame), color=(255, 0, 0))
            save_image(snapshots_dir / f"displacements_{frame.index:06d}.png", overlay)

    raw_values = [r["jitter_raw"] for r in jitter_rows if r["jitter_raw"] is not None]
    sm_values = [r["jitter_sm"] for r in jitter_rows if r["jitter_sm"] is not None]
    summary["stats"] = dict(result.stats)
    summary["stats"]["jitter_raw_mean"] = float(sum(raw_values) / len(raw_values)) if raw_values else None
    summary["stats"]["jitter_sm_mean"] = float(sum(sm_values) / len(sm_values)) if sm_values else None
    summary["output"] = str(video_path)
    summary["runtime_ms"] = int((time.perf_counter() - start_time) * 1000)
    _write_json(summary_path, summary)
    logging.info("Stabilized video written to %s", video_path)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
