"""Frame I/O for the stabilization pipeline.

Two input kinds are supported:
- video files (avi/mp4/mov/...) via OpenCV VideoCapture
- frame sequences (jpeg/png) in a directory, sorted by frame number
Output goes through `VideoSink`, which only publishes a finished file.
"""

from __future__ import annotations

import glob
import logging
import os
from pathlib import Path
import re
from typing import Any, List, Optional, Sequence, Tuple

from stabilization.errors import InputUnavailableError, OutputUnavailableError
from stabilization.progress import (
    VIDEO_LOADING,
    VIDEO_SAVING,
    CancelToken,
    ProgressListener,
    StageReporter,
)
from stabilization.video_state import Frame, Video


# INFO by default (caller may override). WARNING for recoverable problems;
# errors are raised as exceptions.
logger = logging.getLogger(__name__)

DEFAULT_FPS = 30.0
IMAGE_PATTERNS = ("*.jpg", "*.jpeg", "*.png", "*.bmp")


# --- Frame source abstraction ---

class FrameSource:
    """Abstract frame source interface.

    Contract:
    - read_next() returns the next frame (BGR ndarray), or None at end-of-stream.
    - length() returns total frames if known, else None.
    - fps()/resolution() return metadata when available.
    - close() releases resources.
    """

    def read_next(self) -> Any:
        """Sequential read; returns None when stream ends."""
        raise NotImplementedError

    def length(self) -> Optional[int]:
        """Total number of frames if known, otherwise None."""
        raise NotImplementedError

    def fps(self) -> Optional[float]:
        """Frames per second if known, otherwise None."""
        raise NotImplementedError

    def resolution(self) -> Optional[Tuple[int, int]]:
        """(width, height) if known, otherwise None."""
        raise NotImplementedError

    def close(self) -> None:
        """Release underlying resources."""
        raise NotImplementedError

    def __enter__(self) -> "FrameSource":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


# --- Frame source implementations ---

class ArraySource(FrameSource):
    """In-memory frames, used for synthetic inputs and tests."""

    def __init__(self, frames: Sequence[Any], fps: Optional[float] = None) -> None:
        self._frames = list(frames)
        self._idx = 0
        self._fps = fps

    def read_next(self) -> Any:
        if self._idx >= len(self._frames):
            return None
        frame = self._frames[self._idx]
        self._idx += 1
        return frame

    def length(self) -> Optional[int]:
        return len(self._frames)

    def fps(self) -> Optional[float]:
        return self._fps

    def resolution(self) -> Optional[Tuple[int, int]]:
        if not self._frames:
            return None
        shape = self._frames[0].shape
        return int(shape[1]), int(shape[0])

    def close(self) -> None:
        return None


class FramesSource(FrameSource):
    """Frame source backed by an explicit list of image file paths.

    Ordering follows the given list, so callers must pass it in time order.
    """

    def __init__(self, frame_paths: List[Path], fps: Optional[float] = None) -> None:
        import cv2  # type: ignore

        if not frame_paths:
            raise InputUnavailableError("No frames found for frames source.", stage=VIDEO_LOADING)
        self._paths = frame_paths
        self._idx = 0
        self._fps = fps

        # Probe first frame to learn the resolution and fail fast.
        first = cv2.imread(str(self._paths[0]))
        if first is None:
            raise InputUnavailableError(f"Failed to read first frame: {self._paths[0]}", stage=VIDEO_LOADING)
        self._resolution = (int(first.shape[1]), int(first.shape[0]))

    def read_next(self) -> Any:
        import cv2  # type: ignore

        if self._idx >= len(self._paths):
            return None
        path = self._paths[self._idx]
        frame = cv2.imread(str(path))
        if frame is None:
            raise InputUnavailableError(f"Failed to read frame: {path}", stage=VIDEO_LOADING, frame_index=self._idx)
        self._idx += 1
        return frame

    def length(self) -> Optional[int]:
        return len(self._paths)

    def fps(self) -> Optional[float]:
        return self._fps

    def resolution(self) -> Optional[Tuple[int, int]]:
        return self._resolution

    def close(self) -> None:
        return None


class VideoSource(FrameSource):
    """Frame source backed by OpenCV VideoCapture."""

    def __init__(self, video_path: Path) -> None:
        import cv2  # type: ignore

        self._cap = cv2.VideoCapture(str(video_path))
        if not self._cap.isOpened():
            raise InputUnavailableError(f"Failed to open video: {video_path}", stage=VIDEO_LOADING)
        self._fps = self._cap.get(cv2.CAP_PROP_FPS)
        if self._fps is not None and self._fps <= 0:
            self._fps = None
        self._frame_count = int(self._cap.get(cv2.CAP_PROP_FRAME_COUNT))
        if self._frame_count <= 0:
            self._frame_count = None
        width = self._cap.get(cv2.CAP_PROP_FRAME_WIDTH)
        height = self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT)
        if width and height:
            self._resolution = (int(width), int(height))
        else:
            self._resolution = None

    def read_next(self) -> Any:
        ok, frame = self._cap.read()
        if not ok or frame is None:
            return None
        return frame

    def length(self) -> Optional[int]:
        return self._frame_count

    def fps(self) -> Optional[float]:
        return self._fps

    def resolution(self) -> Optional[Tuple[int, int]]:
        return self._resolution

    def close(self) -> None:
        self._cap.release()


def open_source(path: str | os.PathLike, fps: Optional[float] = None) -> FrameSource:
    """Open a video file or a directory of frames.

    Args:
        path: Video file, or directory holding numbered image frames.
        fps: Frame rate for directory input (video files report their own).

    Raises:
        InputUnavailableError: If the path is missing, unreadable or empty.
    """

    source_path = Path(path)
    if not source_path.exists():
        raise InputUnavailableError(f"Source path not found: {path}", stage=VIDEO_LOADING)
    if source_path.is_dir():
        return FramesSource(_resolve_frame_paths(source_path), fps=fps)
    return VideoSource(source_path)


def load_video(
    source: FrameSource,
    max_frames: Optional[int] = None,
    fps: Optional[float] = None,
    progress: Optional[ProgressListener] = None,
    cancel: Optional[CancelToken] = None,
) -> Video:
    """Read every frame of `source` into a Video.

    fps precedence: source metadata, then `fps`, then 30.0 with a warning.

    Raises:
        InputUnavailableError: If the source yields no frames or frame sizes differ.
    """

    reporter = StageReporter(VIDEO_LOADING, progress, cancel)
    reporter.start()
    expected = source.length()
    if max_frames is not None and expected is not None:
        expected = min(expected, int(max_frames))
    frames: List[Frame] = []
    size = None
    while max_frames is None or len(frames) < int(max_frames):
        image = source.read_next()
        if image is None:
            break
        idx = len(frames)
        shape = (int(image.shape[1]), int(image.shape[0]))
        if size is None:
            size = shape
        elif shape != size:
            raise InputUnavailableError(
                f"Frame size changed from {size} to {shape}",
                stage=VIDEO_LOADING,
                frame_index=idx,
            )
        frames.append(Frame(index=idx, image=image))
        reporter.step(idx + 1, max(expected or 0, idx + 1), frame_index=idx)
    if not frames:
        raise InputUnavailableError("Frame source yielded no frames", stage=VIDEO_LOADING)

    fps_value = _safe_fps(source.fps()) or _safe_fps(fps)
    if fps_value is None:
        logger.warning("FPS unknown; falling back to %.1f", DEFAULT_FPS)
        fps_value = DEFAULT_FPS
    logger.info("Loaded %d frames (%dx%d @ %.3f fps)", len(frames), size[0], size[1], fps_value)
    reporter.finish()
    return Video(frames=frames, fps=fps_value)


def _safe_fps(value) -> Optional[float]:
    if value is None:
        return None
    try:
        v = float(value)
    except (TypeError, ValueError):
        return None
    if v <= 0:
        return None
    return v


# --- Output ---

class VideoSink:
    """Write frames to a container atomically.

    Frames go to a temporary file beside the target; it is renamed into place
    only after every frame was written, and removed on failure.
    """

    def __init__(self, output_path: str | os.PathLike, fourcc: str = "mp4v") -> None:
        if len(fourcc) != 4:
            raise ValueError(f"fourcc must have 4 characters: {fourcc!r}")
        self.output_path = Path(output_path)
        self.fourcc = fourcc

    def _temp_path(self) -> Path:
        return self.output_path.with_name(f".{self.output_path.stem}.partial{self.output_path.suffix}")

    def write(
        self,
        video: Video,
        fps: Optional[float] = None,
        progress: Optional[ProgressListener] = None,
        cancel: Optional[CancelToken] = None,
    ) -> Path:
        """Persist every frame of `video`; return the final path.

        Raises:
            OutputUnavailableError: If the writer cannot be opened.
        """

        import cv2  # type: ignore

        if video.frame_count == 0:
            raise OutputUnavailableError("Nothing to write: video has no frames", stage=VIDEO_SAVING)
        try:
            self.output_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OutputUnavailableError(
                f"Cannot create output directory {self.output_path.parent}: {exc}",
                stage=VIDEO_SAVING,
            ) from exc

        temp_path = self._temp_path()
        width, height = video.frame_size
        writer = cv2.VideoWriter(
            str(temp_path),
            cv2.VideoWriter_fourcc(*self.fourcc),
            float(fps if fps is not None else video.fps),
            (int(width), int(height)),
        )
        if not writer.isOpened():
            writer.release()
            self._discard(temp_path)
            raise OutputUnavailableError(
                f"Failed to open video writer: {self.output_path} (fourcc={self.fourcc})",
                stage=VIDEO_SAVING,
            )

        reporter = StageReporter(VIDEO_SAVING, progress, cancel)
        completed = False
        try:
            reporter.start()
            for i, frame in enumerate(video):
                reporter.step(i + 1, video.frame_count, frame_index=i)
                writer.write(_as_bgr(frame.image))
            completed = True
        finally:
            writer.release()
            if not completed:
                self._discard(temp_path)
        os.replace(temp_path, self.output_path)
        reporter.finish()
        logger.info("Wrote %d frames to %s", video.frame_count, self.output_path)
        return self.output_path

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass


def _as_bgr(image):
    import cv2  # type: ignore

    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    return image


# --- Frame path resolution ---

def _resolve_frame_paths(frame_dir: Path) -> List[Path]:
    """List image frames in a directory in numeric order."""
    frame_paths: List[Path] = []
    for pattern in IMAGE_PATTERNS:
        frame_paths.extend(Path(p) for p in glob.glob(str(frame_dir / pattern)))
    if not frame_paths:
        raise InputUnavailableError(f"No frames found in directory: {frame_dir}", stage=VIDEO_LOADING)
    # Numeric order keeps time order stable; fall back to lexicographic.
    return sorted(frame_paths, key=_frame_sort_key)


def _frame_sort_key(path: Path):
    """Sort key for globbed frames: numeric order if possible, else lexicographic."""
    numbers = _extract_numbers(path.name)
    if numbers:
        return (0, numbers, path.name)
    return (1, [], path.name)


def _extract_numbers(name: str) -> List[int]:
    return [int(n) for n in re.findall(r"\d+", name)]
