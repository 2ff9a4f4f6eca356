"""Camera-path LP construction and solve."""

import numpy as np
import pytest

from conftest import translation, video_with_motions
from stabilization.config import PathConfig
from stabilization.cropper import Rectangle, centered_crop, window_contained
from stabilization.errors import PathGapError, SolverError, StabilizationError
from stabilization.geometry import affine_to_params
from stabilization.l1_path import PathOptimizer, bridge_motion_gaps
from stabilization.temporal import smoothed_motion


def _window(video, ratio=0.8):
    return centered_crop(video.frame_size, ratio)


def test_identity_motion_gives_identity_updates_and_zero_cost():
    motions = [None] + [translation(0.0) for _ in range(7)]
    video = video_with_motions(motions)

    solution = PathOptimizer().optimize(video, _window(video))

    assert solution.objective == pytest.approx(0.0, abs=1e-6)
    for frame in video:
        assert np.allclose(frame.update_transform, np.eye(3)[:2], atol=1e-6)
    assert video.crop_window == _window(video)


def test_slack_rows_pair_up_for_every_l1_term():
    video = video_with_motions([None] + [translation(1.0) for _ in range(5)])
    problem = PathOptimizer().build_problem(video, _window(video))
    n = video.frame_count
    residuals = n - 1
    assert problem.n_param_vars == 5 * (n - 1)
    assert problem.term_counts == {
        "d1": 6 * residuals,
        "d2": 6 * (residuals - 1),
        "d3": 6 * (residuals - 2),
        "proximity": 5 * (n - 1),
    }
    n_slacks = sum(problem.term_counts.values())
    assert problem.n_variables == problem.n_param_vars + n_slacks
    # Two epigraph rows per slack, two skew rows and 16 containment rows per frame.
    assert problem.n_constraints == 2 * n_slacks + (n - 1) * (2 + 16)


def test_zero_weight_terms_are_omitted():
    video = video_with_motions([None] + [translation(1.0) for _ in range(4)])
    cfg = PathConfig(weights=(0.0, 1.0, 0.0), proximity=0.0)
    problem = PathOptimizer(cfg).build_problem(video, _window(video))
    assert problem.term_counts["d1"] == 0
    assert problem.term_counts["d3"] == 0
    assert problem.term_counts["proximity"] == 0
    assert problem.term_counts["d2"] > 0


def test_updates_respect_divergence_bounds_and_keep_crop_inside():
    rng = np.random.default_rng(4)
    motions = [None]
    for _ in range(14):
        M = translation(rng.uniform(-12, 12), rng.uniform(-8, 8))
        M[0, 1] = rng.uniform(-0.02, 0.02)
        M[1, 0] = rng.uniform(-0.02, 0.02)
        motions.append(M)
    video = video_with_motions(motions)
    cfg = PathConfig(max_shift_x=6.0, max_shift_y=4.0, max_scale=0.05, max_rotation=0.03, max_skew=0.01)
    window = _window(video, ratio=0.85)

    PathOptimizer(cfg).optimize(video, window)

    tol = 1e-6
    for frame in video.frames[1:]:
        dx, dy, a, b, c = affine_to_params(frame.update_transform)
        assert abs(dx) <= cfg.max_shift_x + tol
        assert abs(dy) <= cfg.max_shift_y + tol
        assert abs(a - 1.0) <= cfg.max_scale + tol
        assert abs(b) <= cfg.max_rotation + tol
        assert abs(c) <= cfg.max_rotation + tol
        assert abs(b + c) <= cfg.max_skew + tol
        assert window_contained(window, frame.update_transform, video.frame_size, tol=1e-5)


def test_jittery_static_camera_is_smoothed_toward_zero_motion():
    jitter = [0.0, 2.0, -2.0, 1.5, -1.0, 2.0, -2.0, 0.5, -1.5, 1.0, 0.0]
    motions = [None] + [translation(jitter[t] - jitter[t - 1]) for t in range(1, len(jitter))]
    video = video_with_motions(motions)

    solution = PathOptimizer().optimize(video, _window(video))

    raw = np.array([m[0, 2] for m in motions[1:]])
    smooth = np.array([m[0, 2] for m in smoothed_motion(solution.motions, video.update_transforms())[1:]])
    assert np.abs(smooth).sum() < 0.1 * np.abs(raw).sum()


def test_bridge_interpolates_single_gap_and_flags_it():
    filled, bridged = bridge_motion_gaps([None, translation(4.0), None, translation(6.0)], max_gap=2)
    assert bridged == [2]
    assert np.allclose(filled[2], translation(5.0))


def test_bridge_copies_edge_gap_from_only_neighbour():
    filled, bridged = bridge_motion_gaps([None, None, translation(3.0)], max_gap=2)
    assert bridged == [1]
    assert np.allclose(filled[1], translation(3.0))


def test_bridge_refuses_gap_longer_than_max_gap():
    with pytest.raises(PathGapError) as excinfo:
        bridge_motion_gaps([None, translation(1.0), None, None, None, translation(1.0)], max_gap=2)
    assert excinfo.value.frame_index == 2
    assert excinfo.value.stage == "path_optimization"


def test_optimizer_bridges_unavailable_frame():
    motions = [None, translation(5.0), translation(5.0), None, translation(5.0), translation(5.0)]
    video = video_with_motions(motions)
    solution = PathOptimizer(PathConfig(weights=(0.0, 1.0, 100.0))).optimize(video, _window(video))
    assert solution.bridged_frames == [3]
    assert video[3].bridged
    assert video[3].observed_transform is None
    assert video[3].update_transform is not None


def test_infeasible_crop_surfaces_solver_error_and_writes_nothing():
    video = video_with_motions([None, translation(1.0), translation(-1.0)])
    width, height = video.frame_size
    oversized = Rectangle(0, 0, 2 * width, 2 * height)

    with pytest.raises(SolverError) as excinfo:
        PathOptimizer().optimize(video, oversized)

    assert excinfo.value.status != 0
    assert excinfo.value.stage == "path_optimization"
    assert all(frame.update_transform is None for frame in video)


def test_optimizer_requires_motion_estimation():
    video = video_with_motions([None, translation(1.0), translation(1.0)])
    video[2].motion_status = "pending"
    with pytest.raises(StabilizationError):
        PathOptimizer().optimize(video, _window(video))


def test_single_frame_video_gets_identity():
    video = video_with_motions([None])
    solution = PathOptimizer().optimize(video, _window(video))
    assert solution.n_variables == 0
    assert np.allclose(video[0].update_transform, np.eye(3)[:2])
