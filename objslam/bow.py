"""Feature matching guided by a bag-of-words vocabulary.

Only features filed under the same vocabulary node are compared. This keeps
the number of descriptor comparisons small. The views carry a feature
vector that maps each node id to the indices of the features under it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence

import numpy as np

from objslam.matching import (
    HISTO_LENGTH,
    TH_LOW,
    KeyPoint,
    RotationHistogram,
    check_dist_epipolar_line,
    descriptor_distance,
)

_NO_MATCH_DISTANCE = 256
# Minimum squared pixel distance to the epipole, per unit of scale factor.
_EPIPOLE_MARGIN = 100


@dataclass
class FeatureView:
    """The features of a frame or keyframe.

    ``keypoints`` and ``descriptors`` are indexed alike. ``feature_vector``
    maps a vocabulary node id to the feature indices filed under it.
    ``map_points`` holds the map point seen at each feature, or None. A
    map point counts as bad when it has a true ``bad`` attribute.
    """

    keypoints: Sequence[KeyPoint]
    descriptors: Sequence[Any]
    feature_vector: Mapping[int, Sequence[int]]
    map_points: Sequence[Any] | None = None

    def __post_init__(self):
        n = len(self.keypoints)
        if len(self.descriptors) != n:
            raise ValueError("descriptors and keypoints differ in length")
        if self.map_points is None:
            self.map_points = [None] * n
        elif len(self.map_points) != n:
            raise ValueError("map points and keypoints differ in length")
        for indices in self.feature_vector.values():
            if any(not 0 <= index < n for index in indices):
                raise ValueError("feature vector refers to a missing feature")

    def __len__(self) -> int:
        return len(self.keypoints)


@dataclass(kw_only=True)
class TriangulationView(FeatureView):
    """A keyframe's features with the data that triangulation matching needs.

    ``right`` holds each feature's right-image coordinate, negative when the
    feature has no stereo measurement. ``scale_factors`` and ``level_sigma2``
    are indexed by pyramid level.
    """

    right: Sequence[float]
    scale_factors: Sequence[float]
    level_sigma2: Sequence[float]

    def __post_init__(self):
        super().__post_init__()
        if len(self.right) != len(self.keypoints):
            raise ValueError("right coordinates and keypoints differ in length")

    def is_stereo(self, index) -> bool:
        """True if the feature has a right-image measurement."""
        return self.right[index] >= 0


def _shared_words(first: Mapping, second: Mapping) -> list:
    return sorted(set(first) & set(second))


def _usable(point) -> bool:
    return point is not None and not getattr(point, "bad", False)


def search_by_bow(source: FeatureView, target: FeatureView, nn_ratio=0.6, check_orientation=True) -> list:
    """Match the map points of a keyframe to the features of a frame.

    Returns a list indexed like ``target``'s features holding the matched map
    point or None.
    """
    matches: list = [None] * len(target)
    histogram = RotationHistogram(HISTO_LENGTH)

    for word in _shared_words(source.feature_vector, target.feature_vector):
        target_indices = target.feature_vector[word]
        for source_index in source.feature_vector[word]:
            point = source.map_points[source_index]
            if not _usable(point):
                continue
            descriptor = source.descriptors[source_index]

            best1 = best2 = _NO_MATCH_DISTANCE
            best_index = -1
            for target_index in target_indices:
                if matches[target_index] is not None:
                    continue
                dist = descriptor_distance(descriptor, target.descriptors[target_index])
                if dist < best1:
                    best2, best1, best_index = best1, dist, target_index
                elif dist < best2:
                    best2 = dist

            if best1 <= TH_LOW and float(best1) < nn_ratio * float(best2):
                matches[best_index] = point
                if check_orientation:
                    histogram.add(
                        source.keypoints[source_index].angle,
                        target.keypoints[best_index].angle,
                        best_index,
                    )

    if check_orientation:
        for index in histogram.rejected():
            matches[index] = None
    return matches


def search_by_bow_keyframes(view1: FeatureView, view2: FeatureView, nn_ratio=0.6, check_orientation=True) -> list:
    """Match the map points of two keyframes.

    Returns a list indexed like ``view1``'s features holding the map point of
    ``view2`` it was matched to, or None.
    """
    matches: list = [None] * len(view1)
    matched2 = [False] * len(view2)
    histogram = RotationHistogram(HISTO_LENGTH)

    for word in _shared_words(view1.feature_vector, view2.feature_vector):
        indices2 = view2.feature_vector[word]
        for idx1 in view1.feature_vector[word]:
            if not _usable(view1.map_points[idx1]):
                continue
            descriptor = view1.descriptors[idx1]

            best1 = best2 = _NO_MATCH_DISTANCE
            best_index = -1
            for idx2 in indices2:
                if matched2[idx2] or not _usable(view2.map_points[idx2]):
                    continue
                dist = descriptor_distance(descriptor, view2.descriptors[idx2])
                if dist < best1:
                    best2, best1, best_index = best1, dist, idx2
                elif dist < best2:
                    best2 = dist

            if best1 < TH_LOW and float(best1) < nn_ratio * float(best2):
                matches[idx1] = view2.map_points[best_index]
                matched2[best_index] = True
                if check_orientation:
                    histogram.add(
                        view1.keypoints[idx1].angle,
                        view2.keypoints[best_index].angle,
                        idx1,
                    )

    if check_orientation:
        for index in histogram.rejected():
            matches[index] = None
    return matches


def search_for_triangulation(
    view1: TriangulationView,
    view2: TriangulationView,
    f12,
    epipole,
    only_stereo=False,
    check_orientation=True,
) -> list[tuple[int, int]]:
    """Pair features without map points that satisfy the epipolar constraint.

    ``f12`` is the fundamental matrix from image 1 to image 2 and ``epipole``
    the pixel position of camera 1's centre in image 2. Returns the
    ``(index1, index2)`` pairs in order of ``index1``.
    """
    f = np.asarray(f12, dtype=float)
    if f.shape != (3, 3):
        raise ValueError("fundamental matrix must be 3x3")
    ex, ey = (float(value) for value in epipole)

    matches12 = [-1] * len(view1)
    histogram = RotationHistogram(HISTO_LENGTH)

    for word in _shared_words(view1.feature_vector, view2.feature_vector):
        indices2 = view2.feature_vector[word]
        for idx1 in view1.feature_vector[word]:
            if view1.map_points[idx1] is not None:
                continue
            stereo1 = view1.is_stereo(idx1)
            if only_stereo and not stereo1:
                continue
            kp1 = view1.keypoints[idx1]
            descriptor = view1.descriptors[idx1]

            best_dist = TH_LOW
            best_index = -1
            for idx2 in indices2:
                if view2.map_points[idx2] is not None:
                    continue
                stereo2 = view2.is_stereo(idx2)
                if only_stereo and not stereo2:
                    continue
                dist = descriptor_distance(descriptor, view2.descriptors[idx2])
                if dist > TH_LOW or dist > best_dist:
                    continue
                kp2 = view2.keypoints[idx2]
                if not stereo1 and not stereo2:
                    dx = ex - kp2.x
                    dy = ey - kp2.y
                    if dx * dx + dy * dy < _EPIPOLE_MARGIN * view2.scale_factors[kp2.octave]:
                        continue
                if check_dist_epipolar_line(kp1, kp2, f, view2.level_sigma2[kp2.octave]):
                    best_index = idx2
                    best_dist = dist

            if best_index >= 0:
                matches12[idx1] = best_index
                if check_orientation:
                    histogram.add(kp1.angle, view2.keypoints[best_index].angle, idx1)

    if check_orientation:
        for index in histogram.rejected():
            matches12[index] = -1

    return [(idx1, idx2) for idx1, idx2 in enumerate(matches12) if idx2 >= 0]