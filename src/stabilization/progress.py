"""Progress reporting and cooperative cancellation.

Stages never display anything themselves; they push coarse-grained events into
a `ProgressListener` supplied by the caller and poll a `CancelToken` between
frames.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from stabilization.errors import PipelineCancelled


logger = logging.getLogger(__name__)

VIDEO_LOADING = "video_loading"
FEATURE_DETECTION = "feature_detection"
FEATURE_TRACKING = "feature_tracking"
OUTLIER_REJECTION = "outlier_rejection"
MOTION_ESTIMATION = "motion_estimation"
PATH_OPTIMIZATION = "path_optimization"
CROP_RENDER = "crop_render"
VIDEO_SAVING = "video_saving"

STAGES = (
    VIDEO_LOADING,
    FEATURE_DETECTION,
    FEATURE_TRACKING,
    OUTLIER_REJECTION,
    MOTION_ESTIMATION,
    PATH_OPTIMIZATION,
    CROP_RENDER,
    VIDEO_SAVING,
)


class ProgressListener:
    """Receiver for stage and progress notifications. All hooks are no-ops."""

    def stage_started(self, stage: str) -> None:
        return None

    def progress(self, stage: str, index: int, total: int) -> None:
        return None

    def stage_finished(self, stage: str) -> None:
        return None


class LoggingProgress(ProgressListener):
    """Log stage boundaries at INFO and progress every `every` steps."""

    def __init__(self, every: int = 25) -> None:
        self.every = max(1, int(every))

    def stage_started(self, stage: str) -> None:
        logger.info("stage_started %s", stage)

    def progress(self, stage: str, index: int, total: int) -> None:
        if index % self.every == 0 or index == total:
            logger.info("progress %s %d/%d", stage, index, total)

    def stage_finished(self, stage: str) -> None:
        logger.info("stage_finished %s", stage)


class CancelToken:
    """Thread-safe cancellation flag polled by the pipeline."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: Optional[str] = None, frame_index: Optional[int] = None) -> None:
        if self._event.is_set():
            raise PipelineCancelled("Stabilization cancelled", stage=stage, frame_index=frame_index)


class StageReporter:
    """Bind one stage to a listener and a cancel token.

    `step()` checks for cancellation before publishing progress, so a cancel
    request is honored at the next frame boundary. Indices passed to `step()`
    must be strictly increasing within a stage.
    """

    def __init__(
        self,
        stage: str,
        listener: Optional[ProgressListener] = None,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        self.stage = stage
        self.listener = listener if listener is not None else ProgressListener()
        self.cancel = cancel
        self._last_index: Optional[int] = None

    def start(self) -> None:
        self.check()
        self._last_index = None
        self.listener.stage_started(self.stage)

    def check(self, frame_index: Optional[int] = None) -> None:
        if self.cancel is not None:
            self.cancel.raise_if_cancelled(self.stage, frame_index)

    def step(self, index: int, total: int, frame_index: Optional[int] = None) -> None:
        self.check(frame_index)
        if self._last_index is not None and index <= self._last_index:
            raise ValueError(
                f"progress must increase within {self.stage}: {index} <= {self._last_index}"
            )
        self._last_index = index
        self.listener.progress(self.stage, index, total)

    def finish(self) -> None:
        self.listener.stage_finished(self.stage)
