"""Stabilizer configuration: dataclass defaults plus YAML overrides.

A config file holds the sections below, optionally nested under a top-level
`stabilizer:` key:

    tracker:  {detector: corner, max_corners: 1000, ...}
    ransac:   {model: similarity, threshold: 2.0, seed: 7, ...}
    path:     {weights: [10, 1, 100], max_gap: 10, ...}
    crop:     {ratio: 0.8, policy: static, ...}
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


@dataclass
class TrackerConfig:
    detector: str = "corner"
    max_corners: int = 1000
    quality: float = 0.01
    min_distance: float = 8.0
    fast_threshold: int = 20
    win_size: int = 21
    max_level: int = 3


@dataclass
class RansacConfig:
    model: str = "similarity"
    threshold: float = 2.0
    max_iterations: int = 500
    confidence: float = 0.99
    seed: Optional[int] = None


@dataclass
class PathConfig:
    """Camera-path LP weights and bounds.

    `weights` are the (first, second, third) derivative weights. Translation
    entries are weighted 1 and affine entries `affine_weight`.
    """

    weights: Tuple[float, float, float] = (10.0, 1.0, 100.0)
    affine_weight: float = 100.0
    proximity: float = 0.01
    max_shift_x: Optional[float] = None
    max_shift_y: Optional[float] = None
    max_scale: float = 0.1
    max_rotation: float = 0.1
    max_skew: float = 0.05
    max_gap: int = 10
    solver_method: str = "highs-ds"
    time_limit: Optional[float] = None


@dataclass
class CropConfig:
    ratio: float = 0.8
    window: Optional[List[int]] = None
    policy: str = "static"
    fit_largest: bool = False


@dataclass
class StabilizerConfig:
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    ransac: RansacConfig = field(default_factory=RansacConfig)
    path: PathConfig = field(default_factory=PathConfig)
    crop: CropConfig = field(default_factory=CropConfig)


_SECTIONS = {
    "tracker": TrackerConfig,
    "ransac": RansacConfig,
    "path": PathConfig,
    "crop": CropConfig,
}


def _build_section(name: str, cls, values: Any):
    if values is None:
        return cls()
    if not isinstance(values, dict):
        raise ValueError(f"Config section '{name}' must be a mapping.")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ValueError(f"Unknown keys in config section '{name}': {', '.join(unknown)}")
    section = cls(**values)
    if isinstance(section, PathConfig):
        weights = tuple(float(w) for w in section.weights)
        if len(weights) != 3 or any(w < 0 for w in weights):
            raise ValueError(f"path.weights must be three non-negative numbers: {section.weights}")
        section.weights = weights
    return section


def config_from_dict(data: Optional[Dict[str, Any]]) -> StabilizerConfig:
    """Build a StabilizerConfig from a plain mapping.

    Raises:
        ValueError: On unknown sections/keys or malformed values.
    """

    data = dict(data or {})
    if "stabilizer" in data:
        data = dict(data["stabilizer"] or {})
    unknown = sorted(set(data) - set(_SECTIONS))
    if unknown:
        raise ValueError(f"Unknown config sections: {', '.join(unknown)}")
    return StabilizerConfig(**{name: _build_section(name, cls, data.get(name)) for name, cls in _SECTIONS.items()})


def load_config(path: str | os.PathLike) -> StabilizerConfig:
    """Load a YAML config file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML root is not a mapping or keys are invalid.
    """

    import yaml  # type: ignore

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError("YAML root must be a mapping.")
    return config_from_dict(data)


def config_to_dict(config: StabilizerConfig) -> Dict[str, Any]:
    payload = asdict(config)
    payload["path"]["weights"] = list(payload["path"]["weights"])
    return payload
