"""Crop window helpers and the crop/render stage.

Coordinate notes:
- A `Rectangle` is in source-frame pixel coordinates, `(x, y)` top-left.
- Corrective transforms map crop-window coordinates into source-frame
  coordinates, so containment means every transformed window corner lies in
  `[0, W-1] x [0, H-1]`.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import List, Optional, Sequence, Tuple

from stabilization.errors import CropWindowError
from stabilization.progress import CROP_RENDER, CancelToken, ProgressListener, StageReporter
from stabilization.video_state import Frame, Video


logger = logging.getLogger(__name__)

CROP_POLICIES = ("static", "warp")


@dataclass(frozen=True)
class Rectangle:
    """Axis-aligned rectangle in integer pixel coordinates."""

    x: int
    y: int
    w: int
    h: int

    @property
    def area(self) -> int:
        return int(max(0, self.w) * max(0, self.h))

    @property
    def corner(self) -> Tuple[int, int]:
        return int(self.x), int(self.y)

    @property
    def size(self) -> Tuple[int, int]:
        return int(self.w), int(self.h)

    @property
    def x2(self) -> int:
        return int(self.x + self.w)

    @property
    def y2(self) -> int:
        return int(self.y + self.h)

    def corners(self) -> List[Tuple[float, float]]:
        """Pixel-center corners: first and last pixel in each direction."""
        x0, y0 = float(self.x), float(self.y)
        x1, y1 = float(self.x2 - 1), float(self.y2 - 1)
        return [(x0, y0), (x1, y0), (x1, y1), (x0, y1)]

    def fits_in(self, frame_size: Tuple[int, int]) -> bool:
        width, height = int(frame_size[0]), int(frame_size[1])
        return self.w > 0 and self.h > 0 and self.x >= 0 and self.y >= 0 and self.x2 <= width and self.y2 <= height

    def as_dict(self) -> dict:
        return {"x": int(self.x), "y": int(self.y), "w": int(self.w), "h": int(self.h)}

    def draw_on(self, img, color=(0, 0, 255), size: int = 1):
        """Draw the rectangle on a BGR/gray image."""

        import cv2  # type: ignore

        if len(img.shape) == 2:
            img = cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)
        cv2.rectangle(img, (int(self.x), int(self.y)), (int(self.x2 - 1), int(self.y2 - 1)), color, int(size))
        return img


def centered_crop(frame_size: Tuple[int, int], ratio: float) -> Rectangle:
    """Centered window covering `ratio` of each frame dimension."""

    if not 0.0 < float(ratio) <= 1.0:
        raise CropWindowError(f"crop ratio must be in (0, 1]: {ratio}", stage=CROP_RENDER)
    width, height = int(frame_size[0]), int(frame_size[1])
    w = max(1, int(round(width * float(ratio))))
    h = max(1, int(round(height * float(ratio))))
    return Rectangle((width - w) // 2, (height - h) // 2, w, h)


def validate_crop_window(window: Rectangle, frame_size: Tuple[int, int]) -> Rectangle:
    """Reject a crop window that is empty or not inside the frame.

    Raises:
        CropWindowError: If the window does not fit.
    """

    if not window.fits_in(frame_size):
        raise CropWindowError(
            f"crop window {window.as_dict()} not inside frame {frame_size[0]}x{frame_size[1]}",
            stage=CROP_RENDER,
        )
    return window


def window_contained(window: Rectangle, transform, frame_size: Tuple[int, int], tol: float = 1e-6) -> bool:
    """True if `transform` maps every window corner inside the frame."""

    from stabilization.geometry import apply_affine

    width, height = int(frame_size[0]), int(frame_size[1])
    pts = apply_affine(transform, window.corners())
    return bool(
        (pts[:, 0] >= -tol).all()
        and (pts[:, 0] <= width - 1 + tol).all()
        and (pts[:, 1] >= -tol).all()
        and (pts[:, 1] <= height - 1 + tol).all()
    )


def largest_contained_window(
    transforms: Sequence[Optional[object]],
    frame_size: Tuple[int, int],
    aspect: Optional[float] = None,
    iterations: int = 30,
) -> Rectangle:
    """Largest centered window whose corners stay inside the frame under every transform.

    Args:
        transforms: Corrective 2x3 transforms; None entries are treated as identity.
        frame_size: (width, height).
        aspect: Width/height ratio of the window (defaults to the frame's).
        iterations: Binary-search steps on the window scale.

    Raises:
        CropWindowError: If not even a 1-pixel window fits.
    """

    from stabilization.geometry import identity_affine

    width, height = int(frame_size[0]), int(frame_size[1])
    aspect = float(aspect) if aspect else width / float(height)
    mats = [identity_affine() if m is None else m for m in transforms] or [identity_affine()]
    base_w = min(float(width), height * aspect)
    base_h = base_w / aspect

    def _window(scale: float) -> Rectangle:
        w = max(1, int(base_w * scale))
        h = max(1, int(base_h * scale))
        return Rectangle((width - w) // 2, (height - h) // 2, w, h)

    def _ok(rect: Rectangle) -> bool:
        return all(window_contained(rect, m, frame_size) for m in mats)

    if _ok(_window(1.0)):
        return _window(1.0)
    lo, hi = 0.0, 1.0
    for _ in range(max(1, int(iterations))):
        mid = 0.5 * (lo + hi)
        if _ok(_window(mid)):
            lo = mid
        else:
            hi = mid
    best = _window(lo)
    if lo <= 0.0 and not _ok(best):
        raise CropWindowError("no crop window fits under the corrective transforms", stage=CROP_RENDER)
    return best


class CropRenderer:
    """Extract the crop window from every frame into a new video.

    Policies:
    - static: the same rectangle is cut from every source frame.
    - warp: the window is moved by each frame's corrective transform and
      resampled with `cv2.warpAffine`.
    Both produce `window.h x window.w` frames, one per source frame, in order.
    """

    def __init__(
        self,
        policy: str = "static",
        progress: Optional[ProgressListener] = None,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        policy = str(policy).lower().strip()
        if policy not in CROP_POLICIES:
            raise ValueError(f"Unsupported crop policy: {policy}")
        self.policy = policy
        self.progress = progress
        self.cancel = cancel

    def _extract(self, frame: Frame, window: Rectangle):
        if self.policy == "static" or frame.update_transform is None:
            return frame.image[window.y:window.y2, window.x:window.x2].copy()

        import cv2  # type: ignore

        from stabilization.geometry import compose_affine

        shift = [[1.0, 0.0, float(window.x)], [0.0, 1.0, float(window.y)]]
        M = compose_affine(frame.update_transform, shift)
        return cv2.warpAffine(
            frame.image,
            M,
            (int(window.w), int(window.h)),
            flags=cv2.INTER_LINEAR | cv2.WARP_INVERSE_MAP,
            borderMode=cv2.BORDER_REPLICATE,
        )

    def render(self, video: Video, window: Optional[Rectangle] = None) -> Video:
        """Return a new Video of cropped frames with the source fps.

        Raises:
            CropWindowError: If no window is known or it does not fit every
                source frame. Checked before any frame is rendered.
        """

        window = window if window is not None else video.crop_window
        if window is None:
            raise CropWindowError("no crop window configured", stage=CROP_RENDER)
        for frame in video:
            if not window.fits_in(frame.size):
                raise CropWindowError(
                    f"crop window {window.as_dict()} not inside frame {frame.size[0]}x{frame.size[1]}",
                    stage=CROP_RENDER,
                    frame_index=frame.index,
                )

        reporter = StageReporter(CROP_RENDER, self.progress, self.cancel)
        reporter.start()
        images = []
        for i, frame in enumerate(video):
            reporter.step(i + 1, video.frame_count, frame_index=i)
            images.append(self._extract(frame, window))
        cropped = Video.from_images(images, fps=video.fps)
        cropped.crop_window = Rectangle(0, 0, window.w, window.h)
        logger.info(
            "Rendered %d frames with %s crop %s", cropped.frame_count, self.policy, window.as_dict()
        )
        reporter.finish()
        return cropped
