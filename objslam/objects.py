"""Objects detected in images and placed in the map."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np


@dataclass
class DetectedObject:
    """A detected object with a 3D centre and an image bounding box."""

    position: np.ndarray
    class_id: int
    id: int = 0
    confidence: float = 0.0
    add_id: int = 0
    last_add_id: int = 0
    bad: bool = False
    current: bool = False
    left: float = 0.0
    right: float = 0.0
    top: float = 0.0
    bottom: float = 0.0
    map_points: list = field(default_factory=list)
    camera_points: list = field(default_factory=list)

    def __post_init__(self):
        position = np.array(self.position, dtype=float).reshape(-1)
        if position.shape != (3,):
            raise ValueError("position must hold three coordinates")
        self.position = position

    def contains(self, x, y) -> bool:
        """True if the pixel lies strictly inside the bounding box."""
        return self.left < x < self.right and self.top < y < self.bottom

    def distance_to(self, other: DetectedObject) -> float:
        """Euclidean distance between the two object centres."""
        return float(np.linalg.norm(self.position - other.position))