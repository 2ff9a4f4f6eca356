"""Frame store shared by every pipeline stage.

Each stage owns a disjoint set of per-frame fields:
- detection writes `Frame.features`
- tracking writes `Frame.displacements`
- outlier rejection writes `Displacement.inlier` and `Frame.consensus_model`
- motion estimation writes `Frame.observed_transform` / `Frame.motion_status`
- path optimization writes `Frame.update_transform` / `Frame.bridged`
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple


MOTION_PENDING = "pending"
MOTION_OK = "ok"
MOTION_UNAVAILABLE = "unavailable"
MOTION_ANCHOR = "anchor"


@dataclass
class Displacement:
    """One tracked correspondence: `src` in frame t, `dst` in frame t-1."""

    src: Tuple[float, float]
    dst: Tuple[float, float]
    inlier: bool = False

    @property
    def delta(self) -> Tuple[float, float]:
        return (self.dst[0] - self.src[0], self.dst[1] - self.src[1])


@dataclass
class Frame:
    """Image buffer plus all geometric state derived for it."""

    index: int
    image: object
    features: Optional[object] = None
    displacements: List[Displacement] = field(default_factory=list)
    consensus_model: Optional[object] = None
    observed_transform: Optional[object] = None
    motion_status: str = MOTION_PENDING
    update_transform: Optional[object] = None
    bridged: bool = False

    @property
    def size(self) -> Tuple[int, int]:
        """(width, height) of the image buffer."""
        shape = self.image.shape
        return int(shape[1]), int(shape[0])

    @property
    def n_features(self) -> int:
        return 0 if self.features is None else int(len(self.features))

    @property
    def n_inliers(self) -> int:
        return sum(1 for d in self.displacements if d.inlier)

    def register_displacement(self, displacement: Displacement) -> None:
        self.displacements.append(displacement)

    def displacement_arrays(self):
        """Return (src, dst) float64 arrays of shape [N, 2] for all displacements."""
        import numpy as np  # type: ignore

        if not self.displacements:
            empty = np.zeros((0, 2), dtype=np.float64)
            return empty, empty.copy()
        src = np.array([d.src for d in self.displacements], dtype=np.float64)
        dst = np.array([d.dst for d in self.displacements], dtype=np.float64)
        return src, dst

    def inlier_pairs(self):
        """Return (src, dst) arrays restricted to inlier displacements."""
        import numpy as np  # type: ignore

        src, dst = self.displacement_arrays()
        if not len(src):
            return src, dst
        mask = np.array([d.inlier for d in self.displacements], dtype=bool)
        return src[mask], dst[mask]


@dataclass
class Video:
    """Ordered frames plus stream metadata and the shared crop window."""

    frames: List[Frame]
    fps: float
    crop_window: Optional[object] = None

    @classmethod
    def from_images(cls, images: Sequence[object], fps: float) -> "Video":
        return cls(frames=[Frame(index=i, image=img) for i, img in enumerate(images)], fps=float(fps))

    def __len__(self) -> int:
        return len(self.frames)

    def __iter__(self):
        return iter(self.frames)

    def __getitem__(self, index: int) -> Frame:
        return self.frames[index]

    @property
    def frame_count(self) -> int:
        return len(self.frames)

    @property
    def frame_size(self) -> Tuple[int, int]:
        """(width, height) of the first frame; all frames share it."""
        if not self.frames:
            raise ValueError("Video has no frames.")
        return self.frames[0].size

    def images(self) -> List[object]:
        return [f.image for f in self.frames]

    def observed_transforms(self) -> List[Optional[object]]:
        return [f.observed_transform for f in self.frames]

    def update_transforms(self) -> List[Optional[object]]:
        return [f.update_transform for f in self.frames]
