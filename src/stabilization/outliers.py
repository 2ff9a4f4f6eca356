"""RANSAC outlier rejection over each frame's displacement field."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import math
from typing import Optional

from stabilization.geometry import fit_affine, reprojection_errors
from stabilization.progress import OUTLIER_REJECTION, CancelToken, ProgressListener, StageReporter
from stabilization.video_state import Frame, Video


logger = logging.getLogger(__name__)

MODELS = {"translation": 1, "similarity": 2, "affine": 3}


def fit_translation(src, dst):
    import numpy as np  # type: ignore

    delta = np.asarray(dst, dtype=np.float64)[0] - np.asarray(src, dtype=np.float64)[0]
    return np.array([[1.0, 0.0, delta[0]], [0.0, 1.0, delta[1]]], dtype=np.float64)


def fit_similarity(src, dst):
    """Exact similarity (scale + rotation + translation) from two pairs.

    Solves z' = alpha * z + beta in complex form; None for coincident sources.
    """

    import numpy as np  # type: ignore

    src = np.asarray(src, dtype=np.float64)
    dst = np.asarray(dst, dtype=np.float64)
    s0, s1 = complex(*src[0]), complex(*src[1])
    d0, d1 = complex(*dst[0]), complex(*dst[1])
    if abs(s1 - s0) < 1e-9:
        return None
    alpha = (d1 - d0) / (s1 - s0)
    beta = d0 - alpha * s0
    return np.array(
        [[alpha.real, -alpha.imag, beta.real], [alpha.imag, alpha.real, beta.imag]],
        dtype=np.float64,
    )


_FITTERS = {
    "translation": fit_translation,
    "similarity": fit_similarity,
    "affine": fit_affine,
}


@dataclass
class RansacResult:
    """Best consensus found for one frame."""

    model: Optional[object]
    inlier_mask: object
    iterations: int

    @property
    def n_inliers(self) -> int:
        return int(self.inlier_mask.sum())


def ransac(
    src,
    dst,
    rng,
    model: str = "similarity",
    threshold: float = 2.0,
    max_iterations: int = 500,
    confidence: float = 0.99,
) -> RansacResult:
    """Consensus fit of `model` to correspondences `src -> dst`.

    Args:
        src: [N, 2] points in frame t.
        dst: [N, 2] points in frame t-1.
        rng: numpy Generator supplying the samples.
        model: "translation", "similarity" or "affine".
        threshold: Max residual (pixels) for a point to join the consensus.
        max_iterations: Hard cap on sampled hypotheses.
        confidence: Stop once the adaptive iteration estimate is reached.

    Returns:
        RansacResult; `model` is None when too few points or every sample was
        degenerate, in which case the mask is all False.
    """

    import numpy as np  # type: ignore

    if model not in MODELS:
        raise ValueError(f"Unsupported RANSAC model: {model}")
    src = np.asarray(src, dtype=np.float64).reshape(-1, 2)
    dst = np.asarray(dst, dtype=np.float64).reshape(-1, 2)
    n = len(src)
    sample_size = MODELS[model]
    fitter = _FITTERS[model]
    best_mask = np.zeros((n,), dtype=bool)
    if n < sample_size:
        return RansacResult(model=None, inlier_mask=best_mask, iterations=0)

    best_model = None
    best_count = 0
    needed = max_iterations
    iterations = 0
    while iterations < min(needed, max_iterations):
        iterations += 1
        idx = rng.choice(n, size=sample_size, replace=False)
        candidate = fitter(src[idx], dst[idx])
        if candidate is None:
            continue
        mask = reprojection_errors(candidate, src, dst) <= threshold
        count = int(mask.sum())
        if count > best_count:
            best_count = count
            best_mask = mask
            best_model = candidate
            needed = _adaptive_iterations(count / float(n), sample_size, confidence, max_iterations)
    return RansacResult(model=best_model, inlier_mask=best_mask, iterations=iterations)


def _adaptive_iterations(inlier_ratio: float, sample_size: int, confidence: float, cap: int) -> int:
    if inlier_ratio >= 1.0:
        return 1
    p_good = inlier_ratio ** sample_size
    if p_good <= 0.0:
        return cap
    denom = math.log(max(1e-12, 1.0 - p_good))
    if denom >= 0.0:
        return cap
    return int(min(cap, math.ceil(math.log(max(1e-12, 1.0 - confidence)) / denom)))


class OutlierRejector:
    """Flag each displacement inlier/outlier against a per-frame RANSAC consensus.

    Reads: `Frame.displacements`.
    Writes: `Displacement.inlier`, `Frame.consensus_model`.

    A single numpy Generator is seeded per `execute()` call and frames are
    visited in forward order, so a fixed seed reproduces every flag.
    """

    def __init__(
        self,
        model: str = "similarity",
        threshold: float = 2.0,
        max_iterations: int = 500,
        confidence: float = 0.99,
        seed: Optional[int] = None,
        progress: Optional[ProgressListener] = None,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        if model not in MODELS:
            raise ValueError(f"Unsupported RANSAC model: {model}")
        self.model = model
        self.threshold = float(threshold)
        self.max_iterations = max(1, int(max_iterations))
        self.confidence = float(confidence)
        self.seed = seed
        self.progress = progress
        self.cancel = cancel

    @property
    def min_samples(self) -> int:
        return MODELS[self.model]

    def reject_frame(self, frame: Frame, rng) -> RansacResult:
        src, dst = frame.displacement_arrays()
        result = ransac(
            src,
            dst,
            rng,
            model=self.model,
            threshold=self.threshold,
            max_iterations=self.max_iterations,
            confidence=self.confidence,
        )
        for displacement, keep in zip(frame.displacements, result.inlier_mask):
            displacement.inlier = bool(keep)
        frame.consensus_model = result.model
        return result

    def execute(self, video: Video) -> int:
        """Run rejection on every frame with displacements; return total inliers."""

        import numpy as np  # type: ignore

        reporter = StageReporter(OUTLIER_REJECTION, self.progress, self.cancel)
        reporter.start()
        rng = np.random.default_rng(self.seed)
        total_inliers = 0
        total_displacements = 0
        steps = max(0, video.frame_count - 1)
        for t in range(1, video.frame_count):
            reporter.step(t, steps, frame_index=t)
            frame = video[t]
            if len(frame.displacements) < self.min_samples:
                for displacement in frame.displacements:
                    displacement.inlier = False
                frame.consensus_model = None
                logger.warning(
                    "Frame %d: %d displacements < %d needed for %s model; all marked outlier",
                    t,
                    len(frame.displacements),
                    self.min_samples,
                    self.model,
                )
                total_displacements += len(frame.displacements)
                continue
            result = self.reject_frame(frame, rng)
            total_inliers += result.n_inliers
            total_displacements += len(frame.displacements)
            logger.debug(
                "Frame %d: %d/%d inliers after %d iterations",
                t,
                result.n_inliers,
                len(frame.displacements),
                result.iterations,
            )
        logger.info("Outlier rejection kept %d/%d displacements", total_inliers, total_displacements)
        reporter.finish()
        return total_inliers
