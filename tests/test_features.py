"""Feature detection and backward tracking."""

import numpy as np
import pytest

from conftest import GridDetector, ShiftFlow, stamped_frames
from stabilization.features import DETECTORS, FeatureTracker, OpticalFlow, create_detector
from stabilization.video_state import Video


def _textured_pan(count: int, step: int):
    import cv2

    rng = np.random.default_rng(0)
    big = rng.integers(0, 256, size=(160, 260)).astype(np.uint8)
    big = cv2.GaussianBlur(big, (0, 0), 2.0)
    return [big[20:140, 30 + step * t: 30 + step * t + 180].copy() for t in range(count)]


def test_create_detector_variants():
    for name in DETECTORS:
        assert create_detector(name).name == name
    assert create_detector(" ORB").name == "orb"
    with pytest.raises(ValueError):
        create_detector("sift")


def test_corner_detector_and_lk_flow_track_a_real_pan():
    video = Video.from_images(_textured_pan(3, step=3), fps=30.0)
    tracker = FeatureTracker(create_detector("corner", max_corners=200), OpticalFlow())

    tracked = tracker.execute(video)

    assert tracked > 20
    assert video[0].displacements == []
    for t in (1, 2):
        deltas = np.array([d.delta for d in video[t].displacements])
        assert len(deltas) > 10
        # Content moves left as the camera pans right, so frame t-1 sees it 3 px further right.
        assert np.median(deltas[:, 0]) == pytest.approx(3.0, abs=0.25)
        assert np.median(deltas[:, 1]) == pytest.approx(0.0, abs=0.25)


def test_tracker_runs_backward_and_drops_failed_points(recorder):
    flow = ShiftFlow(cam_x=[0, 5, 10, 15], lost_every=4)
    detector = GridDetector()
    video = Video.from_images(stamped_frames(4), fps=30.0)
    tracker = FeatureTracker(detector, flow, progress=recorder)

    tracker.execute(video)

    assert flow.calls == [(3, 2), (2, 1), (1, 0)]
    n_points = len(detector.detect(video[1].image))
    n_lost = len(range(1, n_points, 4))
    for t in (1, 2, 3):
        assert len(video[t].displacements) == n_points - n_lost
        assert all(d.delta == pytest.approx((5.0, 0.0)) for d in video[t].displacements)
    assert recorder.stages() == ["feature_detection", "feature_tracking"]
    assert recorder.progress_for("feature_tracking") == [1, 2, 3]


def test_frame_without_features_yields_no_displacements():
    flow = ShiftFlow(cam_x=[0, 5, 10])
    video = Video.from_images(stamped_frames(3), fps=30.0)
    FeatureTracker(GridDetector(empty_frames={2}), flow).execute(video)

    assert video[2].n_features == 0
    assert video[2].displacements == []
    assert len(video[1].displacements) > 0
    assert flow.calls == [(1, 0)]


def test_existing_features_are_not_redetected():
    video = Video.from_images(stamped_frames(2), fps=30.0)
    preset = np.array([[50.0, 50.0], [60.0, 40.0]], dtype=np.float32)
    video[1].features = preset
    FeatureTracker(GridDetector(), ShiftFlow(cam_x=[0, 2])).execute(video)
    assert video[1].features is preset
    assert len(video[1].displacements) == 2
