"""Shared synthetic fixtures: frames stamped with their index plus fake primitives."""

from __future__ import annotations

from pathlib import Path
import sys
from typing import Dict, List, Sequence

import numpy as np
import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "src"))

from stabilization.features import FeatureDetector  # noqa: E402
from stabilization.progress import ProgressListener  # noqa: E402
from stabilization.video_state import MOTION_ANCHOR, MOTION_OK, MOTION_UNAVAILABLE, Video  # noqa: E402


FRAME_W = 200
FRAME_H = 120


def stamped_frames(count: int, width: int = FRAME_W, height: int = FRAME_H) -> List[np.ndarray]:
    """Flat frames whose pixel value is the frame index (read back by the fakes)."""
    return [np.full((height, width, 3), t, dtype=np.uint8) for t in range(count)]


def frame_id(image) -> int:
    return int(np.asarray(image).reshape(-1)[0])


class GridDetector(FeatureDetector):
    """Regular grid of keypoints; frames listed in `empty_frames` yield none."""

    name = "grid"

    def __init__(self, width: int = FRAME_W, height: int = FRAME_H, step: int = 16, empty_frames=()) -> None:
        self.width = width
        self.height = height
        self.step = step
        self.empty_frames = set(empty_frames)

    def detect(self, image):
        if frame_id(image) in self.empty_frames:
            return np.zeros((0, 2), dtype=np.float32)
        xs, ys = np.meshgrid(
            np.arange(self.step, self.width - self.step, self.step, dtype=np.float32),
            np.arange(self.step, self.height - self.step, self.step, dtype=np.float32),
        )
        return np.stack([xs.ravel(), ys.ravel()], axis=1)


class ShiftFlow:
    """Camera-position driven flow: dst = src + (cam[from] - cam[to]).

    Every `outlier_every`-th point is pushed 25 px off and every
    `lost_every`-th point reports a failed status.
    """

    def __init__(self, cam_x: Sequence[float], cam_y: Sequence[float] = None,
                 outlier_every: int = 0, lost_every: int = 0) -> None:
        self.cam_x = list(cam_x)
        self.cam_y = list(cam_y) if cam_y is not None else [0.0] * len(self.cam_x)
        self.outlier_every = outlier_every
        self.lost_every = lost_every
        self.calls: List[tuple] = []

    def track(self, image_from, image_to, points):
        t_from, t_to = frame_id(image_from), frame_id(image_to)
        self.calls.append((t_from, t_to))
        pts = np.asarray(points, dtype=np.float32).reshape(-1, 2)
        shift = np.array(
            [self.cam_x[t_from] - self.cam_x[t_to], self.cam_y[t_from] - self.cam_y[t_to]],
            dtype=np.float32,
        )
        nxt = pts + shift
        status = np.ones((len(pts),), dtype=bool)
        if self.outlier_every:
            nxt[:: self.outlier_every] += np.float32(25.0)
        if self.lost_every:
            status[1:: self.lost_every] = False
        return nxt, status, np.zeros((len(pts),), dtype=np.float32)


class RecordingProgress(ProgressListener):
    def __init__(self) -> None:
        self.events: List[tuple] = []

    def stage_started(self, stage: str) -> None:
        self.events.append(("start", stage))

    def progress(self, stage: str, index: int, total: int) -> None:
        self.events.append(("progress", stage, index, total))

    def stage_finished(self, stage: str) -> None:
        self.events.append(("finish", stage))

    def stages(self) -> List[str]:
        return [e[1] for e in self.events if e[0] == "start"]

    def progress_for(self, stage: str) -> List[int]:
        return [e[2] for e in self.events if e[0] == "progress" and e[1] == stage]


def video_with_motions(motions: Sequence, width: int = FRAME_W, height: int = FRAME_H) -> Video:
    """Video whose frames already carry observed transforms (index 0 ignored)."""
    video = Video.from_images(stamped_frames(len(motions), width, height), fps=30.0)
    video[0].motion_status = MOTION_ANCHOR
    for frame, M in zip(video.frames[1:], motions[1:]):
        frame.observed_transform = None if M is None else np.asarray(M, dtype=np.float64)
        frame.motion_status = MOTION_UNAVAILABLE if M is None else MOTION_OK
    return video


def translation(dx: float, dy: float = 0.0) -> np.ndarray:
    return np.array([[1.0, 0.0, dx], [0.0, 1.0, dy]], dtype=np.float64)


@pytest.fixture
def recorder() -> RecordingProgress:
    return RecordingProgress()
