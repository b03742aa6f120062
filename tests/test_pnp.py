import random

import numpy as np
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from objslam.epnp import Camera
from objslam.pnp import Correspondence, PnPSolver

CAMERA = Camera(500.0, 500.0, 320.0, 240.0)


def _rotation(ax, ay, az):
    cx, sx = np.cos(ax), np.sin(ax)
    cy, sy = np.cos(ay), np.sin(ay)
    cz, sz = np.cos(az), np.sin(az)
    rx = np.array([[1, 0, 0], [0, cx, -sx], [0, sx, cx]])
    ry = np.array([[cy, 0, sy], [0, 1, 0], [-sy, 0, cy]])
    rz = np.array([[cz, -sz, 0], [sz, cz, 0], [0, 0, 1]])
    return rz @ ry @ rx


ROTATION = _rotation(0.1, -0.2, 0.05)
TRANSLATION = np.array([0.3, -0.1, 0.5])


def _scene(n, seed=1):
    gen = np.random.default_rng(seed)
    pcs = np.column_stack([
        gen.uniform(-1.5, 1.5, n),
        gen.uniform(-1.0, 1.0, n),
        gen.uniform(4.0, 7.0, n),
    ])
    pws = (pcs - TRANSLATION) @ ROTATION
    pixels = CAMERA.project(pcs)
    return pws, pixels


def _correspondences(pws, pixels):
    return [
        Correspondence(tuple(p), tuple(q), 1.0, 2 * i)
        for i, (p, q) in enumerate(zip(pws, pixels))
    ]


def _solver(n=20, seed=1, outliers=0):
    pws, pixels = _scene(n + outliers, seed)
    pixels = pixels.copy()
    if outliers:
        pixels[n:] += 60.0
    corr = _correspondences(pws, pixels)
    return PnPSolver(corr, CAMERA, 2 * len(corr) + 1, random.Random(0))


def test_iterate_recovers_pose_without_outliers():
    solver = _solver(20)
    result = solver.iterate(5)
    assert result.no_more is False
    assert result.n_inliers == 20
    assert np.allclose(result.pose[:3, :3], ROTATION, atol=1e-4)
    assert np.allclose(result.pose[:3, 3], TRANSLATION, atol=1e-4)
    assert np.allclose(result.pose[3], [0, 0, 0, 1])


def test_inlier_mask_uses_match_indices():
    solver = _solver(20)
    result = solver.iterate(5)
    assert len(result.inliers) == solver.n_matches
    assert all(result.inliers[2 * i] for i in range(20))
    assert not any(result.inliers[2 * i + 1] for i in range(20))


def test_iterate_rejects_outliers():
    solver = _solver(20, outliers=4)
    result = solver.iterate(50)
    assert result.pose is not None
    assert result.n_inliers == 20
    assert all(result.inliers[2 * i] for i in range(20))
    assert not any(result.inliers[2 * i] for i in range(20, 24))
    assert np.allclose(result.pose[:3, 3], TRANSLATION, atol=1e-3)


def test_too_few_correspondences_gives_no_more():
    pws, pixels = _scene(6)
    solver = PnPSolver(_correspondences(pws, pixels), CAMERA, rng=random.Random(0))
    result = solver.iterate(5)
    assert result.no_more is True
    assert result.pose is None
    assert result.n_inliers == 0
    assert solver.iterations == 0


def test_exhausted_budget_without_pose():
    gen = np.random.default_rng(3)
    pws, _ = _scene(10)
    pixels = gen.uniform(0, 640, (10, 2))
    solver = PnPSolver(_correspondences(pws, pixels), CAMERA, rng=random.Random(0))
    solver.set_ransac_parameters(min_inliers=10)
    assert solver.max_iterations == 1
    result = solver.iterate(3)
    assert result.no_more is True
    assert result.pose is None
    assert solver.iterations == 3


def test_parameters_adjusted_to_correspondences():
    solver = _solver(20)
    assert solver.min_inliers == 8
    solver.set_ransac_parameters(min_inliers=15)
    assert solver.min_inliers == 15
    assert solver.epsilon == pytest.approx(15 / 20)
    assert 1 <= solver.max_iterations <= 300


def test_max_errors_scale_sigma():
    solver = _solver(5)
    solver.set_ransac_parameters(th2=2.0)
    assert np.allclose(solver.max_errors, 2.0)


def test_check_inliers_with_true_and_wrong_pose():
    solver = _solver(20)
    assert solver.check_inliers(ROTATION, TRANSLATION).all()
    shifted = TRANSLATION + np.array([0.5, 0.0, 0.0])
    assert not solver.check_inliers(ROTATION, shifted).any()


def test_refine_without_hypothesis_raises():
    solver = _solver(20)
    with pytest.raises(RuntimeError):
        solver.refine()


def test_small_minimal_set_rejected():
    solver = _solver(20)
    with pytest.raises(ValueError):
        solver.set_ransac_parameters(min_set=3)


def test_index_outside_match_list_rejected():
    pws, pixels = _scene(5)
    with pytest.raises(ValueError):
        PnPSolver(_correspondences(pws, pixels), CAMERA, 3)


@settings(max_examples=50, deadline=None)
@given(
    n=st.integers(4, 120),
    epsilon=st.floats(0.01, 1.0),
    min_inliers=st.integers(0, 60),
    max_iterations=st.integers(1, 500),
)
def test_parameter_invariants(n, epsilon, min_inliers, max_iterations):
    corr = [Correspondence((0.0, 0.0, float(i)), (0.0, 0.0), 1.0, i) for i in range(n)]
    solver = PnPSolver(corr, CAMERA, n, random.Random(0))
    solver.set_ransac_parameters(
        min_inliers=min_inliers, max_iterations=max_iterations, epsilon=epsilon
    )
    assert solver.min_inliers >= max(min_inliers, 4)
    assert 1 <= solver.max_iterations <= max_iterations
    assert solver.epsilon >= solver.min_inliers / n - 1e-12