"""End-to-end runs of the Stabilizer on synthetic camera motion."""

import numpy as np
import pytest

from conftest import GridDetector, RecordingProgress, ShiftFlow, stamped_frames
from stabilization.config import CropConfig, PathConfig, RansacConfig, StabilizerConfig
from stabilization.errors import CropWindowError, PipelineCancelled
from stabilization.pipeline import Stabilizer
from stabilization.progress import STAGES, CancelToken
from stabilization.temporal import path_jitter, smoothed_motion
from stabilization.video_state import MOTION_UNAVAILABLE, Video


JITTER = [0.0, 1.0, -1.0, 1.0, 0.0, -1.0, 1.0, -1.0, 0.0, 1.0]


def _pan_config():
    return StabilizerConfig(
        ransac=RansacConfig(seed=0),
        path=PathConfig(weights=(0.0, 1.0, 100.0)),
        crop=CropConfig(ratio=0.8),
    )


def _stabilizer(cam_x, config=None, empty_frames=(), **kwargs):
    return Stabilizer(
        config if config is not None else _pan_config(),
        detector=GridDetector(empty_frames=empty_frames),
        flow=ShiftFlow(cam_x=cam_x, outlier_every=7),
        **kwargs,
    )


def test_jittery_pan_becomes_constant_velocity():
    cam_x = [5.0 * t + j for t, j in enumerate(JITTER)]
    video = Video.from_images(stamped_frames(len(cam_x)), fps=30.0)

    result = _stabilizer(cam_x).run(video)

    raw_tx = np.array([video[t].observed_transform[0, 2] for t in range(1, video.frame_count)])
    smooth = smoothed_motion(result.solution.motions, video.update_transforms())
    smooth_tx = np.array([m[0, 2] for m in smooth[1:]])
    assert np.allclose(raw_tx, np.diff(cam_x), atol=1e-6)
    assert np.std(smooth_tx) < 0.05
    assert abs(np.mean(smooth_tx) - 5.0) < 0.5
    assert np.std(raw_tx) > 10 * np.std(smooth_tx)

    assert result.stabilized.frame_count == video.frame_count
    assert result.stabilized[0].image.shape == (96, 160, 3)
    assert result.stats["n_motion_unavailable"] == 0
    assert result.stats["solver"]["status"] == 0

    rows = path_jitter(result.solution.motions, video.update_transforms(), video.frame_size)
    raw = np.array([r["jitter_raw"] for r in rows[1:]])
    sm = np.array([r["jitter_sm"] for r in rows[1:]])
    assert np.std(sm) < np.std(raw)


def test_frame_without_features_is_bridged():
    cam_x = [3.0 * t for t in range(10)]
    video = Video.from_images(stamped_frames(len(cam_x)), fps=30.0)
    warnings = []

    result = _stabilizer(cam_x, empty_frames={5}, warning_handler=warnings.append).run(video)

    assert video[5].motion_status == MOTION_UNAVAILABLE
    assert video[5].bridged
    assert video[5].update_transform is not None
    assert result.solution.bridged_frames == [5]
    assert result.stats["n_motion_unavailable"] == 1
    assert warnings
    assert result.stabilized.frame_count == 10


def test_stage_events_arrive_in_pipeline_order():
    recorder = RecordingProgress()
    video = Video.from_images(stamped_frames(4), fps=30.0)
    _stabilizer([0.0, 2.0, 4.0, 6.0], progress=recorder).run(video)
    assert recorder.stages() == [
        "feature_detection",
        "feature_tracking",
        "outlier_rejection",
        "motion_estimation",
        "path_optimization",
        "crop_render",
    ]
    assert recorder.stages() == [s for s in STAGES if s not in ("video_loading", "video_saving")]
    starts = [e for e in recorder.events if e[0] in ("start", "finish")]
    assert [e[0] for e in starts] == ["start", "finish"] * 6


class _CancelOnStage(RecordingProgress):
    def __init__(self, token, stage):
        super().__init__()
        self.token = token
        self.stage = stage

    def stage_started(self, stage):
        super().stage_started(stage)
        if stage == self.stage:
            self.token.cancel()


def test_cancel_stops_at_next_frame_boundary():
    token = CancelToken()
    listener = _CancelOnStage(token, "feature_tracking")
    video = Video.from_images(stamped_frames(5), fps=30.0)

    with pytest.raises(PipelineCancelled) as excinfo:
        _stabilizer([0.0, 1.0, 2.0, 3.0, 4.0], progress=listener, cancel=token).run(video)

    assert excinfo.value.stage == "feature_tracking"
    assert listener.progress_for("feature_tracking") == []
    assert "path_optimization" not in listener.stages()
    assert all(frame.update_transform is None for frame in video)


def test_invalid_crop_window_fails_before_any_stage():
    recorder = RecordingProgress()
    config = StabilizerConfig(crop=CropConfig(window=[0, 0, 500, 500]))
    video = Video.from_images(stamped_frames(3), fps=30.0)
    with pytest.raises(CropWindowError):
        _stabilizer([0.0, 1.0, 2.0], config=config, progress=recorder).run(video)
    assert recorder.events == []


def test_fit_largest_window_stays_inside_every_update():
    cam_x = [5.0 * t + j for t, j in enumerate(JITTER)]
    config = _pan_config()
    config.crop.fit_largest = True
    video = Video.from_images(stamped_frames(len(cam_x)), fps=30.0)

    result = _stabilizer(cam_x, config=config).run(video)

    from stabilization.cropper import window_contained

    assert all(window_contained(result.crop_window, m, video.frame_size) for m in video.update_transforms())
    assert result.crop_window.w >= 160
