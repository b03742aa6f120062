"""Building blocks shared by the ORB feature matchers.

This module holds the Hamming distance between binary descriptors, the
search radius chosen from the viewing angle, and the epipolar distance test.
It also holds the rotation histogram, which keeps only matches whose change
in keypoint orientation agrees with the dominant ones.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

TH_HIGH = 100
TH_LOW = 50
HISTO_LENGTH = 30

# Chi-square value at 95% for one degree of freedom.
_EPIPOLAR_CHI2 = 3.84
_MAXIMA_RATIO = 0.1

# Cosine above which a point counts as seen almost head-on.
_HEAD_ON_COS = 0.998
_NARROW_RADIUS = 2.5
_WIDE_RADIUS = 4.0


@dataclass
class KeyPoint:
    """An undistorted keypoint: pixel position, orientation in degrees and pyramid level."""

    x: float
    y: float
    angle: float = 0.0
    octave: int = 0
    class_id: int = -1


def _as_bytes(descriptor) -> np.ndarray:
    if isinstance(descriptor, (bytes, bytearray, memoryview)):
        return np.frombuffer(bytes(descriptor), dtype=np.uint8)
    array = np.asarray(descriptor)
    if array.dtype != np.uint8:
        if np.any(array < 0) or np.any(array > 255):
            raise ValueError("descriptor values must be bytes in 0..255")
        array = array.astype(np.uint8)
    return array.reshape(-1)


def descriptor_distance(a, b) -> int:
    """Number of differing bits between two binary descriptors of equal length."""
    first = _as_bytes(a)
    second = _as_bytes(b)
    if first.shape != second.shape:
        raise ValueError("descriptors differ in length")
    return int(np.unpackbits(np.bitwise_xor(first, second)).sum())


def compute_three_maxima(counts) -> tuple[int, int, int]:
    """Indices of the three largest counts, -1 where a bin is missing or too small.

    A second or third bin is dropped when it holds less than a tenth of the
    largest. Ties keep the earlier bin.
    """
    max1 = max2 = max3 = 0
    ind1 = ind2 = ind3 = -1
    for index, size in enumerate(counts):
        if size > max1:
            max3, max2, max1 = max2, max1, size
            ind3, ind2, ind1 = ind2, ind1, index
        elif size > max2:
            max3, max2 = max2, size
            ind3, ind2 = ind2, index
        elif size > max3:
            max3 = size
            ind3 = index

    if max2 < _MAXIMA_RATIO * max1:
        ind2 = ind3 = -1
    elif max3 < _MAXIMA_RATIO * max1:
        ind3 = -1
    return ind1, ind2, ind3


def radius_by_viewing_cos(view_cos) -> float:
    """Search window size: narrow when the point is seen almost head-on.

    ``view_cos`` is the cosine between the viewing direction and the mean
    viewing direction of the point; values that are not above the head-on
    threshold (including NaN) give the wide window.
    """
    cosine = float(view_cos)
    if cosine > _HEAD_ON_COS:
        return _NARROW_RADIUS
    return _WIDE_RADIUS


def check_dist_epipolar_line(kp1: KeyPoint, kp2: KeyPoint, f12, sigma2) -> bool:
    """True if ``kp2`` lies close to the epipolar line of ``kp1``.

    ``f12`` is the 3x3 fundamental matrix from image 1 to image 2 and
    ``sigma2`` the squared scale factor of ``kp2``'s pyramid level.
    """
    f = np.asarray(f12, dtype=float)
    if f.shape != (3, 3):
        raise ValueError("fundamental matrix must be 3x3")
    a = kp1.x * f[0, 0] + kp1.y * f[1, 0] + f[2, 0]
    b = kp1.x * f[0, 1] + kp1.y * f[1, 1] + f[2, 1]
    c = kp1.x * f[0, 2] + kp1.y * f[1, 2] + f[2, 2]

    num = a * kp2.x + b * kp2.y + c
    den = a * a + b * b
    if den == 0:
        return False
    return num * num / den < _EPIPOLAR_CHI2 * sigma2


def rotation_bin(angle1, angle2, length=HISTO_LENGTH) -> int:
    """Histogram bin of the orientation change between two keypoints."""
    if length <= 0:
        raise ValueError("histogram length must be positive")
    rot = angle1 - angle2
    if rot < 0.0:
        rot += 360.0
    # Half-way values round away from zero.
    index = math.floor(rot * (1.0 / length) + 0.5)
    if index == length:
        index = 0
    if not 0 <= index < length:
        raise ValueError("orientation change falls outside the histogram")
    return index


class RotationHistogram:
    """Collects match indices by orientation change and rejects the inconsistent ones."""

    def __init__(self, length=HISTO_LENGTH):
        if length <= 0:
            raise ValueError("histogram length must be positive")
        self.length = length
        self.bins: list[list[int]] = [[] for _ in range(length)]

    def add(self, angle1, angle2, index) -> int:
        """Record match ``index`` and return the bin it went into."""
        slot = rotation_bin(angle1, angle2, self.length)
        self.bins[slot].append(index)
        return slot

    def three_maxima(self) -> tuple[int, int, int]:
        """The bins that hold the dominant orientation changes."""
        return compute_three_maxima(len(entries) for entries in self.bins)

    def rejected(self) -> list[int]:
        """Indices recorded outside the dominant bins, in bin order."""
        kept = set(self.three_maxima())
        return [
            index
            for slot, entries in enumerate(self.bins)
            if slot not in kept
            for index in entries
        ]