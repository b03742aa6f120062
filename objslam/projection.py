"""Feature matching by projecting map points into an image.

Each map point is projected with a known or predicted camera pose. It is
then compared only with the keypoints in a small window around its
projection, on the pyramid levels where it can be expected. Matches may also
be checked for consistency with detected objects: a keypoint inside an
object's box, at the object's depth, takes that object's id. A map point
tied to a far-away object is then not matched to it.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

import numpy as np

from objslam.epnp import Camera
from objslam.matching import (
    HISTO_LENGTH,
    TH_HIGH,
    TH_LOW,
    KeyPoint,
    RotationHistogram,
    descriptor_distance,
    radius_by_viewing_cos,
)

_NO_MATCH_DISTANCE = 256
# Largest gap between a keypoint's depth and an object's centre depth.
_OBJECT_DEPTH_TOLERANCE = 0.1
# Largest distance between two objects that may share a map point.
_OBJECT_DISTANCE_LIMIT = 0.6
# A map point seen this often with an object is trusted to belong to it.
_OBJECT_TRUSTED_COUNT = 10


@dataclass
class Candidate:
    """A map point offered for matching.

    ``point`` is the map point itself and ends up in the target's match list.
    ``min_distance`` and ``max_distance`` bound the distances at which its
    descriptor stays valid, and ``normal`` is its mean viewing direction.
    ``octave`` and ``angle`` describe the keypoint it was seen at in the
    previous frame or keyframe. The ``proj_*``, ``level``, ``view_cos`` and
    ``in_view`` fields hold a projection prepared beforehand for local map
    tracking. ``object_id`` is the object the point belongs to, and
    ``object_ids`` counts how often it was seen with each object.
    """

    point: Any
    position: np.ndarray
    descriptor: Any
    min_distance: float = 0.0
    max_distance: float = math.inf
    normal: np.ndarray | None = None
    bad: bool = False
    octave: int = 0
    angle: float = 0.0
    outlier: bool = False
    in_view: bool = True
    proj_x: float = 0.0
    proj_y: float = 0.0
    proj_right: float = -1.0
    level: int = 0
    view_cos: float = 1.0
    object_id: int = -1
    object_ids: dict = field(default_factory=dict)

    def __post_init__(self):
        position = np.array(self.position, dtype=float).reshape(-1)
        if position.shape != (3,):
            raise ValueError("position must hold three coordinates")
        self.position = position
        if self.normal is not None:
            normal = np.array(self.normal, dtype=float).reshape(-1)
            if normal.shape != (3,):
                raise ValueError("normal must hold three coordinates")
            self.normal = normal


@dataclass
class ProjectionTarget:
    """A frame or keyframe in which map points are searched.

    ``keypoints``, ``descriptors``, ``right``, ``depth`` and ``map_points``
    are indexed alike. ``right`` is negative for features without a stereo
    measurement and ``depth`` is non-positive where the depth is unknown.
    ``map_points`` receives the matches. ``rotation`` and ``translation``
    give the world-to-camera pose. ``objects`` are the objects detected in
    this image.
    """

    keypoints: Sequence[KeyPoint]
    descriptors: Sequence[Any]
    camera: Camera
    scale_factors: Sequence[float]
    min_x: float = 0.0
    max_x: float = math.inf
    min_y: float = 0.0
    max_y: float = math.inf
    right: Sequence[float] | None = None
    depth: Sequence[float] | None = None
    bf: float = 0.0
    map_points: list | None = None
    rotation: np.ndarray = field(default_factory=lambda: np.eye(3))
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))
    objects: list = field(default_factory=list)

    def __post_init__(self):
        n = len(self.keypoints)
        if len(self.descriptors) != n:
            raise ValueError("descriptors and keypoints differ in length")
        if not self.scale_factors:
            raise ValueError("at least one scale factor is needed")
        self.right = [-1.0] * n if self.right is None else list(self.right)
        self.depth = [-1.0] * n if self.depth is None else list(self.depth)
        self.map_points = [None] * n if self.map_points is None else list(self.map_points)
        for name in ("right", "depth", "map_points"):
            if len(getattr(self, name)) != n:
                raise ValueError(f"{name} and keypoints differ in length")
        self.rotation = np.array(self.rotation, dtype=float).reshape(3, 3)
        self.translation = np.array(self.translation, dtype=float).reshape(3)

    def __len__(self) -> int:
        return len(self.keypoints)

    def features_in_area(self, x, y, radius, min_level=None, max_level=None) -> list[int]:
        """Indices of keypoints within ``radius`` of (x, y) on the allowed levels."""
        return [
            index
            for index, kp in enumerate(self.keypoints)
            if abs(kp.x - x) < radius
            and abs(kp.y - y) < radius
            and (min_level is None or kp.octave >= min_level)
            and (max_level is None or kp.octave <= max_level)
        ]

    def project(self, rotation, translation, point) -> tuple[float, float, float]:
        """Pixel position and camera-frame depth of a point moved by (rotation, translation)."""
        pc = np.asarray(rotation, dtype=float) @ np.asarray(point, dtype=float) + np.asarray(
            translation, dtype=float
        )
        z = float(pc[2])
        with np.errstate(divide="ignore", invalid="ignore"):
            inv_z = _inverse(z)
            u = self.camera.uc + self.camera.fu * pc[0] * inv_z
            v = self.camera.vc + self.camera.fv * pc[1] * inv_z
        return float(u), float(v), z

    def _in_bounds(self, u, v) -> bool:
        return self.min_x <= u <= self.max_x and self.min_y <= v <= self.max_y

    def _camera_centre(self) -> np.ndarray:
        return -self.rotation.T @ self.translation

    def _unproject(self, index) -> np.ndarray:
        kp = self.keypoints[index]
        z = self.depth[index]
        pc = np.array([
            (kp.x - self.camera.uc) * z / self.camera.fu,
            (kp.y - self.camera.vc) * z / self.camera.fv,
            z,
        ])
        return self.rotation.T @ (pc - self.translation)


def _inverse(z) -> float:
    with np.errstate(divide="ignore"):
        return float(np.float64(1.0) / np.float64(z))


def _usable(point) -> bool:
    return point is not None and not getattr(point, "bad", False)


def _occupied(point) -> bool:
    return point is not None and getattr(point, "observations", 1) > 0


def _predict_level(candidate: Candidate, dist, scale_factors) -> int:
    levels = len(scale_factors)
    if levels < 2:
        return 0
    log_factor = math.log(scale_factors[1] / scale_factors[0])
    with np.errstate(divide="ignore"):
        ratio = float(np.float64(candidate.max_distance) / np.float64(dist))
    if not math.isfinite(ratio) or log_factor <= 0:
        return levels - 1
    level = math.ceil(math.log(ratio) / log_factor)
    return min(max(level, 0), levels - 1)


def _object_position(objects, object_id):
    found = None
    for obj in objects:
        if obj.id == object_id:
            found = obj.position
    return found


def _label_keypoint(target: ProjectionTarget, index) -> None:
    kp = target.keypoints[index]
    for obj in target.objects:
        if not obj.contains(kp.x, kp.y):
            continue
        if target.depth[index] > 0:
            depth = target._unproject(index)[2]
            if abs(depth - obj.position[2]) < _OBJECT_DEPTH_TOLERANCE:
                kp.class_id = obj.id
                break


def _consistent_with_objects(candidate: Candidate, class_id, objects) -> bool:
    if class_id == -1 or not candidate.object_ids:
        return True
    if candidate.object_ids.get(class_id, 0) > _OBJECT_TRUSTED_COUNT:
        return True
    keypoint_position = _object_position(objects, class_id)
    point_positions = [
        obj.position for obj in objects if obj.id in candidate.object_ids
    ]
    if not point_positions or keypoint_position is None:
        return True
    return any(
        np.linalg.norm(position - keypoint_position) <= _OBJECT_DISTANCE_LIMIT
        for position in point_positions
    )


def _same_object_region(candidate: Candidate, class_id, objects) -> bool:
    if candidate.object_id == class_id or candidate.object_id == -1 or class_id == -1:
        return True
    point_position = _object_position(objects, candidate.object_id)
    keypoint_position = _object_position(objects, class_id)
    if point_position is None or keypoint_position is None:
        return True
    return np.linalg.norm(point_position - keypoint_position) <= _OBJECT_DISTANCE_LIMIT


def best_match(descriptor, target: ProjectionTarget, indices, skip: Callable[[int], bool] | None = None) -> tuple[int, int]:
    """The (distance, index) of the closest descriptor among ``indices``.

    Indices for which ``skip`` returns True are passed over. Returns
    (256, -1) when nothing is left to compare.
    """
    best_dist = _NO_MATCH_DISTANCE
    best_index = -1
    for index in indices:
        if skip is not None and skip(index):
            continue
        dist = descriptor_distance(descriptor, target.descriptors[index])
        if dist < best_dist:
            best_dist = dist
            best_index = index
    return best_dist, best_index


def _apply_histogram(histogram: RotationHistogram, target: ProjectionTarget) -> int:
    rejected = histogram.rejected()
    for index in rejected:
        target.map_points[index] = None
    return len(rejected)


def search_by_projection(candidates, target: ProjectionTarget, objects=(), threshold=1.0, nn_ratio=0.8) -> int:
    """Match local map points, already projected, to the target's features.

    ``objects`` are the objects placed in the map. Returns the number of
    matches written into ``target.map_points``.
    """
    n_matches = 0
    for candidate in candidates:
        if not candidate.in_view or candidate.bad:
            continue
        level = candidate.level
        r = radius_by_viewing_cos(candidate.view_cos)
        if threshold != 1.0:
            r *= threshold
        window = r * target.scale_factors[level]
        indices = target.features_in_area(
            candidate.proj_x, candidate.proj_y, window, level - 1, level
        )
        if not indices:
            continue

        best_dist = best_dist2 = _NO_MATCH_DISTANCE
        best_level = best_level2 = -1
        best_index = -1
        for index in indices:
            if _occupied(target.map_points[index]):
                continue
            if target.right[index] > 0:
                if abs(candidate.proj_right - target.right[index]) > window:
                    continue
            dist = descriptor_distance(candidate.descriptor, target.descriptors[index])
            octave = target.keypoints[index].octave
            if dist < best_dist:
                best_dist2, best_level2 = best_dist, best_level
                best_dist, best_level, best_index = dist, octave, index
            elif dist < best_dist2:
                best_dist2, best_level2 = dist, octave

        if best_dist > TH_HIGH:
            continue
        if best_level == best_level2 and best_dist > nn_ratio * best_dist2:
            continue
        _label_keypoint(target, best_index)
        class_id = target.keypoints[best_index].class_id
        if not _consistent_with_objects(candidate, class_id, objects):
            continue
        target.map_points[best_index] = candidate.point
        n_matches += 1
    return n_matches


def search_by_projection_motion(
    candidates,
    target: ProjectionTarget,
    objects=(),
    forward=False,
    backward=False,
    threshold=7.0,
    check_orientation=True,
) -> int:
    """Match the previous frame's map points into the target under its predicted pose.

    ``forward`` and ``backward`` tell whether the camera moved towards or
    away from the scene, which decides the pyramid levels searched.
    ``objects`` are the objects placed in the map.
    """
    histogram = RotationHistogram(HISTO_LENGTH)
    n_matches = 0
    for candidate in candidates:
        if candidate.point is None or candidate.outlier:
            continue
        u, v, z = target.project(target.rotation, target.translation, candidate.position)
        if z < 0:
            continue
        inv_z = _inverse(z)
        if not target._in_bounds(u, v):
            continue

        last_octave = candidate.octave
        radius = threshold * target.scale_factors[last_octave]
        if forward:
            indices = target.features_in_area(u, v, radius, last_octave)
        elif backward:
            indices = target.features_in_area(u, v, radius, 0, last_octave)
        else:
            indices = target.features_in_area(u, v, radius, last_octave - 1, last_octave + 1)
        if not indices:
            continue

        def skip(index, u=u, inv_z=inv_z, radius=radius):
            if _occupied(target.map_points[index]):
                return True
            if target.right[index] > 0:
                ur = u - target.bf * inv_z
                return abs(ur - target.right[index]) > radius
            return False

        best_dist, best_index = best_match(candidate.descriptor, target, indices, skip)
        if best_dist > TH_HIGH:
            continue
        _label_keypoint(target, best_index)
        keypoint = target.keypoints[best_index]
        if not _same_object_region(candidate, keypoint.class_id, objects):
            continue
        target.map_points[best_index] = candidate.point
        n_matches += 1
        if check_orientation:
            histogram.add(candidate.angle, keypoint.angle, best_index)

    if check_orientation:
        n_matches -= _apply_histogram(histogram, target)
    return n_matches


def search_by_projection_relocalisation(
    candidates,
    target: ProjectionTarget,
    rotation,
    translation,
    threshold=10.0,
    orb_dist=64,
    check_orientation=True,
) -> int:
    """Match a keyframe's map points into a frame posed by (rotation, translation).

    Candidates already matched should be left out by the caller.
    """
    rotation = np.asarray(rotation, dtype=float)
    translation = np.asarray(translation, dtype=float)
    centre = -rotation.T @ translation
    histogram = RotationHistogram(HISTO_LENGTH)
    n_matches = 0
    for candidate in candidates:
        if candidate is None or not _usable(candidate.point) or candidate.bad:
            continue
        u, v, _ = target.project(rotation, translation, candidate.position)
        if not target._in_bounds(u, v):
            continue
        dist3d = float(np.linalg.norm(candidate.position - centre))
        if dist3d < candidate.min_distance or dist3d > candidate.max_distance:
            continue
        level = _predict_level(candidate, dist3d, target.scale_factors)
        radius = threshold * target.scale_factors[level]
        indices = target.features_in_area(u, v, radius, level - 1, level + 1)
        if not indices:
            continue
        best_dist, best_index = best_match(
            candidate.descriptor, target, indices,
            lambda index: target.map_points[index] is not None,
        )
        if best_dist > orb_dist or best_index < 0:
            continue
        target.map_points[best_index] = candidate.point
        n_matches += 1
        if check_orientation:
            histogram.add(candidate.angle, target.keypoints[best_index].angle, best_index)

    if check_orientation:
        n_matches -= _apply_histogram(histogram, target)
    return n_matches


def _search_in_radius(candidate, target, u, v, level, threshold) -> tuple[int, int]:
    radius = threshold * target.scale_factors[level]
    indices = target.features_in_area(u, v, radius)
    return best_match(
        candidate.descriptor, target, indices,
        lambda index: not level - 1 <= target.keypoints[index].octave <= level,
    )


def fuse(candidates, target: ProjectionTarget, rotation, translation, threshold=3.0) -> tuple[int, dict]:
    """Project map points into a keyframe and merge them with its features.

    A matched feature without a map point takes the candidate. A matched
    feature that already holds a good map point is reported in the returned
    dict, keyed by candidate position, for the caller to merge. Returns
    (number fused, replacements).
    """
    rotation = np.asarray(rotation, dtype=float)
    translation = np.asarray(translation, dtype=float)
    centre = -rotation.T @ translation
    already_found = {id(point) for point in target.map_points if point is not None}
    replacements: dict[int, Any] = {}
    n_fused = 0
    for position, candidate in enumerate(candidates):
        if candidate.bad or id(candidate.point) in already_found:
            continue
        u, v, z = target.project(rotation, translation, candidate.position)
        if z < 0 or not target._in_bounds(u, v):
            continue
        offset = candidate.position - centre
        dist3d = float(np.linalg.norm(offset))
        if dist3d < candidate.min_distance or dist3d > candidate.max_distance:
            continue
        if candidate.normal is not None and offset @ candidate.normal < 0.5 * dist3d:
            continue
        level = _predict_level(candidate, dist3d, target.scale_factors)
        best_dist, best_index = _search_in_radius(candidate, target, u, v, level, threshold)
        if best_dist > TH_LOW or best_index < 0:
            continue
        existing = target.map_points[best_index]
        if existing is not None:
            if _usable(existing):
                replacements[position] = existing
        else:
            target.map_points[best_index] = candidate.point
        n_fused += 1
    return n_fused, replacements


def search_by_sim3(
    candidates1,
    candidates2,
    target1: ProjectionTarget,
    target2: ProjectionTarget,
    scale,
    rotation,
    translation,
    threshold=7.5,
) -> int:
    """Find new matches between two keyframes related by a similarity transform.

    ``scale``, ``rotation`` and ``translation`` map camera 2 coordinates to
    camera 1. ``candidates1`` and ``candidates2`` hold each keyframe's map
    point per feature, or None. ``target1.map_points`` holds the matches of
    keyframe 1's features to keyframe 2's map points and is extended in
    place. Only matches found in both directions are kept. Returns the
    number of new matches.
    """
    if len(candidates1) != len(target1) or len(candidates2) != len(target2):
        raise ValueError("candidates must be indexed like the target features")
    rotation = np.asarray(rotation, dtype=float)
    translation = np.asarray(translation, dtype=float)
    sr12 = scale * rotation
    sr21 = (1.0 / scale) * rotation.T
    t21 = -sr21 @ translation

    matched1 = [point is not None for point in target1.map_points]
    matched2 = [False] * len(candidates2)
    for point in target1.map_points:
        if point is None:
            continue
        for index, candidate in enumerate(candidates2):
            if candidate is not None and candidate.point is point:
                matched2[index] = True

    def search(candidates, already, source, dest, s_rot, s_trans):
        found = [-1] * len(candidates)
        for index, candidate in enumerate(candidates):
            if candidate is None or already[index] or not _usable(candidate.point) or candidate.bad:
                continue
            pc_source = source.rotation @ candidate.position + source.translation
            pc_dest = s_rot @ pc_source + s_trans
            u, v, z = target1.project(np.eye(3), np.zeros(3), pc_dest)
            if z < 0 or not dest._in_bounds(u, v):
                continue
            dist3d = float(np.linalg.norm(pc_dest))
            if dist3d < candidate.min_distance or dist3d > candidate.max_distance:
                continue
            level = _predict_level(candidate, dist3d, dest.scale_factors)
            best_dist, best_index = _search_in_radius(candidate, dest, u, v, level, threshold)
            if best_dist <= TH_HIGH and best_index >= 0:
                found[index] = best_index
        return found

    match1 = search(candidates1, matched1, target1, target2, sr21, t21)
    match2 = search(candidates2, matched2, target2, target1, sr12, translation)

    n_found = 0
    for index1, index2 in enumerate(match1):
        if index2 >= 0 and match2[index2] == index1:
            target1.map_points[index1] = candidates2[index2].point
            n_found += 1
    return n_found