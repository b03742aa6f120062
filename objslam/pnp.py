"""RANSAC camera relocalisation from 2D-3D correspondences.

Minimal sets of correspondences are drawn at random and solved with EPnP.
The hypothesis with the most inliers is kept. Whenever a hypothesis passes
the inlier threshold, the pose is refined on all of the best inliers.
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass

import numpy as np

from objslam.epnp import Camera, estimate_pose

_DEFAULT_PROBABILITY = 0.99
_DEFAULT_MIN_INLIERS = 8
_DEFAULT_MAX_ITERATIONS = 300
_DEFAULT_MIN_SET = 4
_DEFAULT_EPSILON = 0.4
_DEFAULT_TH2 = 5.991


@dataclass(frozen=True)
class Correspondence:
    """A world point observed at a pixel.

    ``sigma2`` is the squared scale factor of the keypoint's pyramid level.
    ``index`` is the keypoint's position in the frame's match list.
    """

    point3d: tuple[float, float, float]
    point2d: tuple[float, float]
    sigma2: float
    index: int


@dataclass(frozen=True)
class IterationResult:
    """Outcome of a batch of RANSAC iterations.

    ``pose`` is a 4x4 world-to-camera transform, or None when no pose was
    accepted. ``inliers`` is indexed like the frame's match list.
    """

    pose: np.ndarray | None
    no_more: bool
    inliers: list[bool]
    n_inliers: int


def _to_pose(rotation, translation) -> np.ndarray:
    pose = np.eye(4)
    pose[:3, :3] = rotation
    pose[:3, 3] = translation
    return pose


class PnPSolver:
    """RANSAC EPnP solver over a fixed set of correspondences."""

    def __init__(self, correspondences, camera: Camera, n_matches=None, rng=None):
        self.correspondences = tuple(correspondences)
        self.camera = camera
        indices = [c.index for c in self.correspondences]
        if n_matches is None:
            n_matches = max(indices, default=-1) + 1
        if any(i < 0 or i >= n_matches for i in indices):
            raise ValueError("correspondence index outside the match list")
        self.n_matches = n_matches
        self._points3d = np.array(
            [c.point3d for c in self.correspondences], dtype=float
        ).reshape(-1, 3)
        self._points2d = np.array(
            [c.point2d for c in self.correspondences], dtype=float
        ).reshape(-1, 2)
        self._sigma2 = np.array([c.sigma2 for c in self.correspondences], dtype=float)
        self._rng = rng if rng is not None else random.Random()

        self.iterations = 0
        self.best_inlier_count = 0
        self._best_inliers: np.ndarray | None = None
        self._best_pose: np.ndarray | None = None
        self.refined_inlier_count = 0
        self._refined_inliers: np.ndarray | None = None
        self._refined_pose: np.ndarray | None = None

        self.set_ransac_parameters()

    def set_ransac_parameters(
        self,
        probability=_DEFAULT_PROBABILITY,
        min_inliers=_DEFAULT_MIN_INLIERS,
        max_iterations=_DEFAULT_MAX_ITERATIONS,
        min_set=_DEFAULT_MIN_SET,
        epsilon=_DEFAULT_EPSILON,
        th2=_DEFAULT_TH2,
    ) -> None:
        """Set the RANSAC parameters, adjusted to the number of correspondences."""
        if min_set < 4:
            raise ValueError("EPnP needs a minimal set of at least four points")
        n = len(self.correspondences)
        self.probability = probability
        self.min_set = min_set

        n_min = max(int(n * epsilon), min_inliers, min_set)
        self.min_inliers = n_min
        if n and epsilon < n_min / n:
            epsilon = n_min / n
        self.epsilon = epsilon

        if n_min >= n:
            n_iterations = 1
        elif probability >= 1:
            n_iterations = max_iterations
        else:
            n_iterations = math.ceil(
                math.log(1 - probability) / math.log(1 - epsilon**3)
            )
        self.max_iterations = max(1, min(n_iterations, max_iterations))
        self.max_errors = self._sigma2 * th2

    def check_inliers(self, rotation, translation) -> np.ndarray:
        """Mark correspondences whose squared reprojection error is within bounds."""
        rotation = np.asarray(rotation, dtype=float)
        translation = np.asarray(translation, dtype=float)
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            pcs = self._points3d @ rotation.T + translation
            projected = self.camera.project(pcs)
            error2 = np.sum((self._points2d - projected) ** 2, axis=1)
            return error2 < self.max_errors

    def _match_mask(self, mask) -> list[bool]:
        result = [False] * self.n_matches
        for correspondence, inlier in zip(self.correspondences, mask):
            if inlier:
                result[correspondence.index] = True
        return result

    def _solve(self, indices) -> tuple[np.ndarray, np.ndarray]:
        estimate = estimate_pose(
            self._points3d[indices], self._points2d[indices], self.camera
        )
        return estimate.rotation, estimate.translation

    def refine(self) -> bool:
        """Re-estimate the pose on all best inliers; True if it is accepted."""
        if self._best_inliers is None:
            raise RuntimeError("no hypothesis has been accepted yet")
        indices = np.flatnonzero(self._best_inliers)
        rotation, translation = self._solve(indices)
        mask = self.check_inliers(rotation, translation)
        self.refined_inlier_count = int(mask.sum())
        self._refined_inliers = mask
        if self.refined_inlier_count > self.min_inliers:
            self._refined_pose = _to_pose(rotation, translation)
            return True
        return False

    def iterate(self, n_iterations) -> IterationResult:
        """Run RANSAC iterations until a refined pose is found or the budget runs out."""
        if len(self.correspondences) < self.min_inliers:
            return IterationResult(None, True, [], 0)

        all_indices = list(range(len(self.correspondences)))
        current = 0
        while self.iterations < self.max_iterations or current < n_iterations:
            current += 1
            self.iterations += 1

            sample = self._rng.sample(all_indices, self.min_set)
            rotation, translation = self._solve(sample)
            mask = self.check_inliers(rotation, translation)
            count = int(mask.sum())

            if count >= self.min_inliers:
                if count > self.best_inlier_count:
                    self._best_inliers = mask
                    self.best_inlier_count = count
                    self._best_pose = _to_pose(rotation, translation)
                if self.refine():
                    return IterationResult(
                        self._refined_pose.copy(),
                        False,
                        self._match_mask(self._refined_inliers),
                        self.refined_inlier_count,
                    )

        if self.iterations >= self.max_iterations:
            if self.best_inlier_count >= self.min_inliers and self._best_pose is not None:
                return IterationResult(
                    self._best_pose.copy(),
                    True,
                    self._match_mask(self._best_inliers),
                    self.best_inlier_count,
                )
            return IterationResult(None, True, [], 0)

        return IterationResult(None, False, [], 0)