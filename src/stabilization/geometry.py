"""Affine geometry helpers and the per-frame motion estimator.

All transforms are 2x3 float64 arrays mapping points of frame t to frame t-1.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from stabilization.progress import MOTION_ESTIMATION, CancelToken, ProgressListener, StageReporter
from stabilization.video_state import MOTION_ANCHOR, MOTION_OK, MOTION_UNAVAILABLE, Video


logger = logging.getLogger(__name__)

MIN_AFFINE_PAIRS = 3

# Reduced parameter vector p = (dx, dy, a, b, c) for B = [[a, b, dx], [c, a, dy]].
# Both diagonal entries share the scale `a`; the independent y-scale is dropped.
PARAM_NAMES = ("dx", "dy", "a", "b", "c")
N_PARAMS = len(PARAM_NAMES)
IDENTITY_PARAMS = (0.0, 0.0, 1.0, 0.0, 0.0)


def identity_affine():
    import numpy as np  # type: ignore

    return np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]], dtype=np.float64)


def to_homogeneous(M):
    """Lift a 2x3 affine into a 3x3 matrix."""
    import numpy as np  # type: ignore

    H = np.eye(3, dtype=np.float64)
    H[:2, :] = np.asarray(M, dtype=np.float64)
    return H


def compose_affine(first, second):
    """Return the 2x3 affine equal to `first @ second` in homogeneous form."""
    return (to_homogeneous(first) @ to_homogeneous(second))[:2, :]


def invert_affine(M):
    import numpy as np  # type: ignore

    return np.linalg.inv(to_homogeneous(M))[:2, :]


def apply_affine(M, points):
    """Apply a 2x3 affine to an [N, 2] point array."""
    import numpy as np  # type: ignore

    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    M = np.asarray(M, dtype=np.float64)
    return pts @ M[:, :2].T + M[:, 2]


def params_to_affine(params: Sequence[float]):
    import numpy as np  # type: ignore

    dx, dy, a, b, c = (float(v) for v in params)
    return np.array([[a, b, dx], [c, a, dy]], dtype=np.float64)


def affine_to_params(M):
    """Project a 2x3 affine onto the reduced parameterization.

    The shared scale is the mean of both diagonal entries.
    """
    M = [[float(v) for v in row] for row in M]
    return (
        M[0][2],
        M[1][2],
        0.5 * (M[0][0] + M[1][1]),
        M[0][1],
        M[1][0],
    )


def fit_affine(src, dst):
    """Least-squares 6-DOF affine fit mapping `src` onto `dst`.

    Args:
        src: [N, 2] source points.
        dst: [N, 2] destination points.

    Returns:
        2x3 float64 affine, or None when fewer than 3 pairs are given or the
        points are collinear (rank-deficient design matrix).
    """

    import numpy as np  # type: ignore

    src = np.asarray(src, dtype=np.float64).reshape(-1, 2)
    dst = np.asarray(dst, dtype=np.float64).reshape(-1, 2)
    if len(src) != len(dst):
        raise ValueError(f"src/dst length mismatch: {len(src)} != {len(dst)}")
    if len(src) < MIN_AFFINE_PAIRS:
        return None

    design = np.hstack([src, np.ones((len(src), 1), dtype=np.float64)])
    # Conditioning depends on pixel scale; center before the rank check.
    centered = src - src.mean(axis=0)
    scale = max(float(np.abs(centered).max()), 1e-12)
    if np.linalg.matrix_rank(centered / scale, tol=1e-9) < 2:
        return None

    solution, _, rank, _ = np.linalg.lstsq(design, dst, rcond=None)
    if rank < MIN_AFFINE_PAIRS:
        return None
    return solution.T.astype(np.float64)


def reprojection_errors(M, src, dst):
    """Euclidean distance between `M(src)` and `dst` per correspondence."""
    import numpy as np  # type: ignore

    return np.linalg.norm(apply_affine(M, src) - np.asarray(dst, dtype=np.float64), axis=1)


class MotionEstimator:
    """Fit each frame's observed transform from its inlier correspondences.

    Reads: `Frame.displacements` (inlier flags).
    Writes: `Frame.observed_transform`, `Frame.motion_status`.
    """

    def __init__(
        self,
        progress: Optional[ProgressListener] = None,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        self.progress = progress
        self.cancel = cancel

    def execute(self, video: Video) -> int:
        """Estimate motion for frames 1..N-1.

        Returns:
            Number of frames whose observed transform is unavailable.
        """

        reporter = StageReporter(MOTION_ESTIMATION, self.progress, self.cancel)
        reporter.start()
        unavailable = 0
        total = max(0, video.frame_count - 1)
        if video.frame_count:
            video[0].observed_transform = None
            video[0].motion_status = MOTION_ANCHOR
        for t in range(1, video.frame_count):
            reporter.step(t, total, frame_index=t)
            frame = video[t]
            src, dst = frame.inlier_pairs()
            M = fit_affine(src, dst)
            if M is None:
                frame.observed_transform = None
                frame.motion_status = MOTION_UNAVAILABLE
                unavailable += 1
                logger.warning(
                    "Observed motion unavailable for frame %d: %d inlier pairs", t, len(src)
                )
                continue
            frame.observed_transform = M
            frame.motion_status = MOTION_OK
        logger.info(
            "Motion estimated for %d/%d frames (%d unavailable)",
            total - unavailable,
            total,
            unavailable,
        )
        reporter.finish()
        return unavailable
