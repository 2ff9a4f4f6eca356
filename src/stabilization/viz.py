"""Visualization helpers for stabilization debug snapshots."""

from __future__ import annotations

from pathlib import Path


def save_image(path: Path, image) -> None:
    """Save a BGR image to disk, creating parent directories if needed."""

    import cv2  # type: ignore

    path.parent.mkdir(parents=True, exist_ok=True)
    cv2.imwrite(str(path), image)


def draw_displacements(frame, inlier_color=(0, 255, 0), outlier_color=(0, 0, 255)):
    """Draw every displacement of `frame` as an arrow from src to dst.

    Inliers and outliers get separate colors; returns a new BGR image.
    """

    import cv2  # type: ignore

    img = frame.image.copy()
    if img.ndim == 2:
        img = cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)
    for d in frame.displacements:
        start = (int(round(d.src[0])), int(round(d.src[1])))
        end = (int(round(d.dst[0])), int(round(d.dst[1])))
        color = inlier_color if d.inlier else outlier_color
        cv2.arrowedLine(img, start, end, color, 1, tipLength=0.3)
    return img
