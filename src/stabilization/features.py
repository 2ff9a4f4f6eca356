"""Keypoint detection and frame-to-frame optical-flow tracking."""

from __future__ import annotations

import logging
from typing import Optional, Tuple

from stabilization.progress import (
    FEATURE_DETECTION,
    FEATURE_TRACKING,
    CancelToken,
    ProgressListener,
    StageReporter,
)
from stabilization.video_state import Displacement, Video


logger = logging.getLogger(__name__)

DETECTORS = ("corner", "orb", "fast")


def to_gray(image):
    """Return a single-channel uint8 view of a BGR or gray frame."""

    import cv2  # type: ignore
    import numpy as np  # type: ignore

    arr = np.asarray(image)
    if arr.ndim == 3:
        arr = cv2.cvtColor(arr, cv2.COLOR_BGR2GRAY)
    if arr.dtype != np.uint8:
        arr = np.clip(arr, 0, 255).astype(np.uint8)
    return arr


def _empty_points():
    import numpy as np  # type: ignore

    return np.zeros((0, 2), dtype=np.float32)


class FeatureDetector:
    """Detector interface: image -> ordered [N, 2] float32 keypoints."""

    name = "base"

    def detect(self, image):
        raise NotImplementedError


class CornerDetector(FeatureDetector):
    """Shi-Tomasi corners (`cv2.goodFeaturesToTrack`)."""

    name = "corner"

    def __init__(self, max_corners: int = 1000, quality: float = 0.01, min_distance: float = 8.0) -> None:
        self.max_corners = int(max_corners)
        self.quality = float(quality)
        self.min_distance = float(min_distance)

    def detect(self, image):
        import cv2  # type: ignore
        import numpy as np  # type: ignore

        corners = cv2.goodFeaturesToTrack(
            to_gray(image),
            maxCorners=self.max_corners,
            qualityLevel=self.quality,
            minDistance=self.min_distance,
        )
        if corners is None:
            return _empty_points()
        return corners.reshape(-1, 2).astype(np.float32)


class OrbDetector(FeatureDetector):
    """ORB keypoint locations; descriptors are not needed for flow tracking."""

    name = "orb"

    def __init__(self, max_corners: int = 1000) -> None:
        self.max_corners = int(max_corners)

    def detect(self, image):
        import cv2  # type: ignore
        import numpy as np  # type: ignore

        detector = cv2.ORB_create(nfeatures=self.max_corners)
        keypoints = detector.detect(to_gray(image), None)
        if not keypoints:
            return _empty_points()
        return np.float32([kp.pt for kp in keypoints]).reshape(-1, 2)


class FastDetector(FeatureDetector):
    """FAST corners, strongest first, capped at `max_corners`."""

    name = "fast"

    def __init__(self, max_corners: int = 1000, threshold: int = 20) -> None:
        self.max_corners = int(max_corners)
        self.threshold = int(threshold)

    def detect(self, image):
        import cv2  # type: ignore
        import numpy as np  # type: ignore

        detector = cv2.FastFeatureDetector_create(threshold=self.threshold, nonmaxSuppression=True)
        keypoints = detector.detect(to_gray(image), None)
        if not keypoints:
            return _empty_points()
        keypoints = sorted(keypoints, key=lambda kp: kp.response, reverse=True)[: self.max_corners]
        return np.float32([kp.pt for kp in keypoints]).reshape(-1, 2)


def create_detector(method: str = "corner", max_corners: int = 1000, quality: float = 0.01,
                    min_distance: float = 8.0, fast_threshold: int = 20) -> FeatureDetector:
    """Build a detector variant by name.

    Raises:
        ValueError: If method is not one of `DETECTORS`.
    """

    method = str(method).lower().strip()
    if method == "corner":
        return CornerDetector(max_corners=max_corners, quality=quality, min_distance=min_distance)
    if method == "orb":
        return OrbDetector(max_corners=max_corners)
    if method == "fast":
        return FastDetector(max_corners=max_corners, threshold=fast_threshold)
    raise ValueError(f"Unsupported detector: {method}")


class OpticalFlow:
    """Pyramidal Lucas-Kanade flow (`cv2.calcOpticalFlowPyrLK`)."""

    def __init__(self, win_size: int = 21, max_level: int = 3) -> None:
        self.win_size = int(win_size)
        self.max_level = int(max_level)

    def track(self, image_from, image_to, points) -> Tuple[object, object, object]:
        """Track `points` from `image_from` into `image_to`.

        Returns:
            (next_points [N, 2], status [N] bool, err [N] float32).
        """

        import cv2  # type: ignore
        import numpy as np  # type: ignore

        pts = np.asarray(points, dtype=np.float32).reshape(-1, 1, 2)
        if len(pts) == 0:
            return _empty_points(), np.zeros((0,), dtype=bool), np.zeros((0,), dtype=np.float32)
        next_pts, status, err = cv2.calcOpticalFlowPyrLK(
            to_gray(image_from),
            to_gray(image_to),
            pts,
            None,
            winSize=(self.win_size, self.win_size),
            maxLevel=self.max_level,
        )
        if next_pts is None:
            return _empty_points(), np.zeros((len(pts),), dtype=bool), np.zeros((len(pts),), dtype=np.float32)
        return (
            next_pts.reshape(-1, 2),
            status.reshape(-1).astype(bool),
            err.reshape(-1).astype(np.float32),
        )


class FeatureTracker:
    """Detect keypoints per frame and track them backward to the previous frame.

    Reads: `Frame.image`.
    Writes: `Frame.features`, `Frame.displacements`.
    """

    def __init__(
        self,
        detector: FeatureDetector,
        flow: Optional[OpticalFlow] = None,
        progress: Optional[ProgressListener] = None,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        self.detector = detector
        self.flow = flow if flow is not None else OpticalFlow()
        self.progress = progress
        self.cancel = cancel

    def detect(self, video: Video) -> int:
        """Fill missing `Frame.features` in forward order; return total keypoints."""

        reporter = StageReporter(FEATURE_DETECTION, self.progress, self.cancel)
        reporter.start()
        total = 0
        for i, frame in enumerate(video):
            reporter.step(i + 1, video.frame_count, frame_index=i)
            if frame.features is None:
                frame.features = self.detector.detect(frame.image)
            total += frame.n_features
            if frame.n_features == 0:
                logger.warning("No features detected in frame %d", i)
        logger.info("Detected %d features over %d frames (%s)", total, video.frame_count, self.detector.name)
        reporter.finish()
        return total

    def track(self, video: Video) -> int:
        """Track every frame t (last to first) into frame t-1; return tracked count."""

        import numpy as np  # type: ignore

        reporter = StageReporter(FEATURE_TRACKING, self.progress, self.cancel)
        reporter.start()
        tracked_total = 0
        steps = max(0, video.frame_count - 1)
        for step, t in enumerate(range(video.frame_count - 1, 0, -1), start=1):
            reporter.step(step, steps, frame_index=t)
            frame = video[t]
            prev = video[t - 1]
            frame.displacements = []
            points = frame.features if frame.features is not None else _empty_points()
            points = np.asarray(points, dtype=np.float32).reshape(-1, 2)
            if len(points) == 0:
                logger.warning("Frame %d has no features to track", t)
                continue
            next_pts, status, _ = self.flow.track(frame.image, prev.image, points)
            tracked = 0
            for j in range(len(points)):
                if not status[j]:
                    continue
                frame.register_displacement(
                    Displacement(
                        src=(float(points[j][0]), float(points[j][1])),
                        dst=(float(next_pts[j][0]), float(next_pts[j][1])),
                    )
                )
                tracked += 1
            tracked_total += tracked
            logger.debug("Frame %d -> %d: %d/%d tracked", t, t - 1, tracked, len(points))
        logger.info("Tracked %d displacements over %d frame pairs", tracked_total, steps)
        reporter.finish()
        return tracked_total

    def execute(self, video: Video) -> int:
        self.detect(video)
        return self.track(video)
