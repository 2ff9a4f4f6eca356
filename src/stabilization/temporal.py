"""Camera-path accumulation and jitter diagnostics for reports."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from stabilization.geometry import compose_affine, identity_affine, invert_affine


@dataclass
class JitterStats:
    """Per-frame jitter statistics between consecutive corner projections."""

    mean: Optional[float]
    max: Optional[float]


def _source_corners(image_size: Tuple[int, int]):
    """Return canonical image corners as float64 [4, 2]."""
    import numpy as np  # type: ignore

    width, height = int(image_size[0]), int(image_size[1])
    return np.array(
        [
            [0.0, 0.0],
            [float(width - 1), 0.0],
            [float(width - 1), float(height - 1)],
            [0.0, float(height - 1)],
        ],
        dtype=np.float64,
    )


def transform_corners(M, image_size: Tuple[int, int], pre_transform=None):
    """Project image corners with a 2x3 affine (optionally prepended by pre_transform)."""
    from stabilization.geometry import apply_affine

    if M is None:
        return None
    M_use = M if pre_transform is None else compose_affine(pre_transform, M)
    return apply_affine(M_use, _source_corners(image_size))


def compute_jitter(prev_corners, curr_corners) -> JitterStats:
    """Compute jitter as inter-frame corner displacement.

    Formula:
    - d_i = ||c_i(t) - c_i(t-1)||_2 for 4 transformed corners
    - jitter_mean = mean(d_i), jitter_max = max(d_i)
    """
    import numpy as np  # type: ignore

    if prev_corners is None or curr_corners is None:
        return JitterStats(mean=None, max=None)
    dists = np.linalg.norm(curr_corners - prev_corners, axis=1)
    return JitterStats(mean=float(np.mean(dists)), max=float(np.max(dists)))


def camera_path(motions: Sequence[Optional[object]]) -> List[object]:
    """Accumulate C(t) = C(t-1) F(t) with C(0) = identity; missing F counts as identity."""
    path = [identity_affine()]
    for F in list(motions)[1:]:
        path.append(compose_affine(path[-1], identity_affine() if F is None else F))
    return path


def smoothed_path(motions: Sequence[Optional[object]], updates: Sequence[Optional[object]]) -> List[object]:
    """P(t) = C(t) B(t)."""
    return [
        compose_affine(C, identity_affine() if B is None else B)
        for C, B in zip(camera_path(motions), updates)
    ]


def smoothed_motion(motions: Sequence[Optional[object]], updates: Sequence[Optional[object]]) -> List[Optional[object]]:
    """Inter-frame motion of the smoothed path, B(t-1)^-1 F(t) B(t); index 0 is None."""
    result: List[Optional[object]] = [None]
    for t in range(1, len(motions)):
        F = identity_affine() if motions[t] is None else motions[t]
        B_prev = identity_affine() if updates[t - 1] is None else updates[t - 1]
        B_curr = identity_affine() if updates[t] is None else updates[t]
        result.append(compose_affine(invert_affine(B_prev), compose_affine(F, B_curr)))
    return result


def path_jitter(
    motions: Sequence[Optional[object]],
    updates: Sequence[Optional[object]],
    image_size: Tuple[int, int],
) -> List[Dict[str, Optional[float]]]:
    """Raw vs smoothed jitter per frame, as rows for the transforms report."""
    raw = camera_path(motions)
    smooth = smoothed_path(motions, updates)
    rows: List[Dict[str, Optional[float]]] = []
    prev_raw = prev_sm = None
    for t, (C, P) in enumerate(zip(raw, smooth)):
        raw_corners = transform_corners(C, image_size)
        sm_corners = transform_corners(P, image_size)
        raw_stats = compute_jitter(prev_raw, raw_corners)
        sm_stats = compute_jitter(prev_sm, sm_corners)
        rows.append(
            {
                "frame_idx": t,
                "jitter_raw": raw_stats.mean,
                "jitter_raw_max": raw_stats.max,
                "jitter_sm": sm_stats.mean,
                "jitter_sm_max": sm_stats.max,
            }
        )
        prev_raw, prev_sm = raw_corners, sm_corners
    return rows
