"""Error taxonomy for the stabilization pipeline.

Recoverable per-frame problems (lost tracks, too few inliers, unfit motion)
never raise: they are logged and recorded on the frame. Everything here is a
run-level failure that aborts the pipeline.
"""

from __future__ import annotations

from typing import Optional


class StabilizationError(RuntimeError):
    """Base class for run-level failures.

    Args:
        message: Human readable description.
        stage: Pipeline stage that failed (see `progress.STAGES`).
        frame_index: Offending frame, if the failure is tied to one.
    """

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        frame_index: Optional[int] = None,
    ) -> None:
        self.stage = stage
        self.frame_index = frame_index
        super().__init__(message)

    def __str__(self) -> str:
        base = super().__str__()
        context = []
        if self.stage is not None:
            context.append(f"stage={self.stage}")
        if self.frame_index is not None:
            context.append(f"frame={self.frame_index}")
        if not context:
            return base
        return f"{base} ({' '.join(context)})"


class InputUnavailableError(StabilizationError):
    """Frame source cannot be opened or yields no frames."""


class OutputUnavailableError(StabilizationError):
    """Render sink cannot be opened or written."""


class PathGapError(StabilizationError):
    """A run of frames without observed motion is too long to bridge."""


class SolverError(StabilizationError):
    """The camera-path linear program has no usable solution."""

    def __init__(
        self,
        message: str,
        status: int,
        stage: Optional[str] = None,
    ) -> None:
        self.status = int(status)
        super().__init__(message, stage=stage)


class CropWindowError(StabilizationError, ValueError):
    """Crop window does not fit inside the source frames."""


class PipelineCancelled(StabilizationError):
    """Cancellation was requested between frames or stages."""
