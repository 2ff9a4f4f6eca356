"""Batch stabilization pipeline.

Stages run strictly in order, each a full pass over the video:
detect -> track -> reject outliers -> estimate motion -> optimize path -> crop.
Cancellation is honored between frames and between stages; the LP solve
itself is a single blocking call.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import Callable, Dict, Optional

from stabilization.config import StabilizerConfig
from stabilization.cropper import CropRenderer, Rectangle, centered_crop, largest_contained_window, validate_crop_window
from stabilization.features import FeatureDetector, FeatureTracker, OpticalFlow, create_detector
from stabilization.geometry import MotionEstimator
from stabilization.l1_path import PathOptimizer, PathSolution
from stabilization.outliers import OutlierRejector
from stabilization.progress import CancelToken, ProgressListener
from stabilization.video_state import Video


logger = logging.getLogger(__name__)


@dataclass
class StabilizationResult:
    """Output video plus per-run statistics."""

    stabilized: Video
    crop_window: Rectangle
    solution: PathSolution
    stats: Dict[str, object] = field(default_factory=dict)


class Stabilizer:
    """Run the full motion-estimation, smoothing and crop pipeline.

    Args:
        config: Pipeline configuration (defaults if None).
        progress: Listener receiving stage and progress events.
        cancel: Token polled between frames and stages.
        detector: Detector override; built from `config.tracker` if None.
        flow: Optical-flow override; built from `config.tracker` if None.
        warning_handler: Optional callback for per-frame warnings.
    """

    def __init__(
        self,
        config: Optional[StabilizerConfig] = None,
        progress: Optional[ProgressListener] = None,
        cancel: Optional[CancelToken] = None,
        detector: Optional[FeatureDetector] = None,
        flow: Optional[OpticalFlow] = None,
        warning_handler: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.config = config if config is not None else StabilizerConfig()
        self.progress = progress
        self.cancel = cancel
        self.warning_handler = warning_handler
        tracker_cfg = self.config.tracker
        # Detector selection is fixed for the lifetime of the stabilizer.
        self.detector = detector if detector is not None else create_detector(
            tracker_cfg.detector,
            max_corners=tracker_cfg.max_corners,
            quality=tracker_cfg.quality,
            min_distance=tracker_cfg.min_distance,
            fast_threshold=tracker_cfg.fast_threshold,
        )
        self.flow = flow if flow is not None else OpticalFlow(
            win_size=tracker_cfg.win_size,
            max_level=tracker_cfg.max_level,
        )

    def _warn(self, message: str) -> None:
        logging.warning(message)
        if self.warning_handler is not None:
            self.warning_handler(message)

    def _check_cancel(self, stage: Optional[str] = None) -> None:
        if self.cancel is not None:
            self.cancel.raise_if_cancelled(stage)

    def resolve_crop_window(self, video: Video) -> Rectangle:
        """Configured crop window (explicit rectangle or centered ratio), validated.

        Raises:
            CropWindowError: If the window does not fit inside the frames.
        """

        crop_cfg = self.config.crop
        frame_size = video.frame_size
        if crop_cfg.window is not None:
            if len(crop_cfg.window) != 4:
                raise ValueError(f"crop.window must be [x, y, w, h]: {crop_cfg.window}")
            x, y, w, h = (int(v) for v in crop_cfg.window)
            window = Rectangle(x, y, w, h)
        else:
            window = centered_crop(frame_size, crop_cfg.ratio)
        return validate_crop_window(window, frame_size)

    def calculate_global_motion(self, video: Video) -> Dict[str, int]:
        """Detection, tracking, outlier rejection and motion estimation."""

        tracker = FeatureTracker(self.detector, self.flow, progress=self.progress, cancel=self.cancel)
        n_features = tracker.detect(video)
        self._check_cancel()
        n_tracked = tracker.track(video)
        self._check_cancel()

        ransac_cfg = self.config.ransac
        rejector = OutlierRejector(
            model=ransac_cfg.model,
            threshold=ransac_cfg.threshold,
            max_iterations=ransac_cfg.max_iterations,
            confidence=ransac_cfg.confidence,
            seed=ransac_cfg.seed,
            progress=self.progress,
            cancel=self.cancel,
        )
        n_inliers = rejector.execute(video)
        self._check_cancel()

        n_unavailable = MotionEstimator(progress=self.progress, cancel=self.cancel).execute(video)
        if n_unavailable:
            self._warn(f"motion_unavailable frames={n_unavailable}/{max(0, video.frame_count - 1)}")
        self._check_cancel()
        return {
            "n_features": int(n_features),
            "n_tracked": int(n_tracked),
            "n_inliers": int(n_inliers),
            "n_motion_unavailable": int(n_unavailable),
        }

    def calculate_update_transform(self, video: Video, window: Rectangle) -> PathSolution:
        optimizer = PathOptimizer(self.config.path, progress=self.progress, cancel=self.cancel)
        solution = optimizer.optimize(video, window)
        self._check_cancel()
        return solution

    def apply_crop_transform(self, video: Video, window: Optional[Rectangle] = None) -> Video:
        renderer = CropRenderer(self.config.crop.policy, progress=self.progress, cancel=self.cancel)
        return renderer.render(video, window)

    def run(self, video: Video) -> StabilizationResult:
        """Run every stage on `video` and return the cropped, stabilized video."""

        t0 = time.perf_counter()
        window = self.resolve_crop_window(video)
        stats: Dict[str, object] = {"n_frames": video.frame_count, "fps": float(video.fps)}

        stats.update(self.calculate_global_motion(video))
        solution = self.calculate_update_transform(video, window)

        render_window = window
        if self.config.crop.fit_largest:
            render_window = largest_contained_window(video.update_transforms(), video.frame_size)
            video.crop_window = render_window
            logger.info("Largest contained crop window: %s", render_window.as_dict())

        stabilized = self.apply_crop_transform(video, render_window)
        stats["solver"] = solution.as_dict()
        stats["crop_window"] = render_window.as_dict()
        stats["runtime_ms"] = float((time.perf_counter() - t0) * 1000.0)
        return StabilizationResult(
            stabilized=stabilized,
            crop_window=render_window,
            solution=solution,
            stats=stats,
        )
