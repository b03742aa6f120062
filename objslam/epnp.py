"""Efficient Perspective-n-Point (EPnP) camera pose estimation.

The pose of a calibrated camera is recovered from correspondences between
world points and their pixel observations. The world points are expressed as
weighted sums of four control points. The camera-frame control points are
found in the null space of a linear system. Three approximations of the
null-space coefficients are refined by Gauss-Newton. The one with the lowest
reprojection error wins.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

# Pairs of control points, in the order used by the distance constraints.
_PAIRS = ((0, 1), (0, 2), (0, 3), (1, 2), (1, 3), (2, 3))

_GAUSS_NEWTON_ITERATIONS = 5


@dataclass(frozen=True)
class Camera:
    """Pinhole intrinsics: focal lengths and principal point in pixels."""

    fu: float
    fv: float
    uc: float
    vc: float

    def project(self, points) -> np.ndarray:
        """Project camera-frame points of shape (N, 3) to pixels of shape (N, 2)."""
        pts = np.atleast_2d(np.asarray(points, dtype=float))
        inv_z = 1.0 / pts[:, 2]
        u = self.uc + self.fu * pts[:, 0] * inv_z
        v = self.vc + self.fv * pts[:, 1] * inv_z
        return np.column_stack([u, v])


@dataclass(frozen=True)
class PoseEstimate:
    """A camera pose (world to camera) and its mean reprojection error."""

    rotation: np.ndarray
    translation: np.ndarray
    error: float


def choose_control_points(points3d) -> np.ndarray:
    """Return four control points: the centroid plus the principal axes."""
    pws = np.asarray(points3d, dtype=float)
    n = len(pws)
    centroid = pws.mean(axis=0)
    centred = pws - centroid
    u, singular, _ = np.linalg.svd(centred.T @ centred)
    scales = np.sqrt(singular / n)
    axes = centroid + scales[:, None] * u.T
    return np.vstack([centroid, axes])


def barycentric_coordinates(points3d, control_points) -> np.ndarray:
    """Express each point as weights (N, 4) over the control points."""
    pws = np.asarray(points3d, dtype=float)
    cws = np.asarray(control_points, dtype=float)
    cc = (cws[1:] - cws[0]).T
    cc_inv = np.linalg.pinv(cc)
    rest = (pws - cws[0]) @ cc_inv.T
    first = 1.0 - rest.sum(axis=1)
    return np.column_stack([first, rest])


def build_measurement_matrix(alphas, points2d, camera: Camera) -> np.ndarray:
    """Build the (2N, 12) system whose null space holds the camera-frame control points."""
    alphas = np.asarray(alphas, dtype=float)
    pts = np.asarray(points2d, dtype=float)
    n = len(alphas)
    m = np.zeros((2 * n, 12))
    m[0::2, 0::3] = alphas * camera.fu
    m[0::2, 2::3] = alphas * (camera.uc - pts[:, 0])[:, None]
    m[1::2, 1::3] = alphas * camera.fv
    m[1::2, 2::3] = alphas * (camera.vc - pts[:, 1])[:, None]
    return m


def compute_l_6x10(ut) -> np.ndarray:
    """Coefficients relating the ten beta products to the six squared distances.

    ``ut`` holds the singular vectors of MᵀM as rows, in decreasing order of
    singular value; the last four rows span the null space.
    """
    ut = np.asarray(ut, dtype=float)
    vectors = [ut[11 - i].reshape(4, 3) for i in range(4)]
    dv = np.array([[v[a] - v[b] for a, b in _PAIRS] for v in vectors])

    def dot(i, j):
        return np.einsum("pk,pk->p", dv[i], dv[j])

    return np.column_stack([
        dot(0, 0),
        2.0 * dot(0, 1),
        dot(1, 1),
        2.0 * dot(0, 2),
        2.0 * dot(1, 2),
        dot(2, 2),
        2.0 * dot(0, 3),
        2.0 * dot(1, 3),
        2.0 * dot(2, 3),
        dot(3, 3),
    ])


def compute_rho(control_points) -> np.ndarray:
    """Squared distances between every pair of control points."""
    cws = np.asarray(control_points, dtype=float)
    return np.array([float(np.sum((cws[a] - cws[b]) ** 2)) for a, b in _PAIRS])


def _least_squares(l_6x10, rho, columns) -> np.ndarray:
    lhs = np.asarray(l_6x10, dtype=float)[:, columns]
    solution, *_ = np.linalg.lstsq(lhs, np.asarray(rho, dtype=float), rcond=None)
    return solution


def find_betas_approx_1(l_6x10, rho) -> np.ndarray:
    """Initial betas from the products B11, B12, B13, B14."""
    b4 = _least_squares(l_6x10, rho, [0, 1, 3, 6])
    with np.errstate(divide="ignore", invalid="ignore"):
        if b4[0] < 0:
            first = np.sqrt(-b4[0])
            rest = -b4[1:] / first
        else:
            first = np.sqrt(b4[0])
            rest = b4[1:] / first
    return np.array([first, *rest], dtype=float)


def _two_betas(b) -> tuple[float, float]:
    if b[0] < 0:
        first = np.sqrt(-b[0])
        second = np.sqrt(-b[2]) if b[2] < 0 else 0.0
    else:
        first = np.sqrt(b[0])
        second = np.sqrt(b[2]) if b[2] > 0 else 0.0
    if b[1] < 0:
        first = -first
    return float(first), float(second)


def find_betas_approx_2(l_6x10, rho) -> np.ndarray:
    """Initial betas from the products B11, B12, B22."""
    b3 = _least_squares(l_6x10, rho, [0, 1, 2])
    first, second = _two_betas(b3)
    return np.array([first, second, 0.0, 0.0])


def find_betas_approx_3(l_6x10, rho) -> np.ndarray:
    """Initial betas from the products B11, B12, B22, B13, B23."""
    b5 = _least_squares(l_6x10, rho, [0, 1, 2, 3, 4])
    first, second = _two_betas(b5)
    with np.errstate(divide="ignore", invalid="ignore"):
        third = np.float64(b5[3]) / np.float64(first)
    return np.array([first, second, third, 0.0])


def _beta_products(betas) -> np.ndarray:
    b0, b1, b2, b3 = betas
    return np.array([
        b0 * b0, b0 * b1, b1 * b1, b0 * b2, b1 * b2,
        b2 * b2, b0 * b3, b1 * b3, b2 * b3, b3 * b3,
    ])


def _gauss_newton_system(l, rho, betas) -> tuple[np.ndarray, np.ndarray]:
    b0, b1, b2, b3 = betas
    jacobian = np.column_stack([
        2 * l[:, 0] * b0 + l[:, 1] * b1 + l[:, 3] * b2 + l[:, 6] * b3,
        l[:, 1] * b0 + 2 * l[:, 2] * b1 + l[:, 4] * b2 + l[:, 7] * b3,
        l[:, 3] * b0 + l[:, 4] * b1 + 2 * l[:, 5] * b2 + l[:, 8] * b3,
        l[:, 6] * b0 + l[:, 7] * b1 + l[:, 8] * b2 + 2 * l[:, 9] * b3,
    ])
    residual = rho - l @ _beta_products(betas)
    return jacobian, residual


def gauss_newton(l_6x10, rho, betas) -> np.ndarray:
    """Refine four betas so that the control point distances match ``rho``.

    Stops early if the linearised system becomes singular.
    """
    l = np.asarray(l_6x10, dtype=float)
    rho = np.asarray(rho, dtype=float)
    current = np.array(betas, dtype=float)
    for _ in range(_GAUSS_NEWTON_ITERATIONS):
        jacobian, residual = _gauss_newton_system(l, rho, current)
        try:
            step = qr_solve(jacobian, residual)
        except np.linalg.LinAlgError:
            break
        current = current + step
    return current


def qr_solve(a, b) -> np.ndarray:
    """Solve ``a @ x = b`` in the least-squares sense by Householder QR.

    Raises numpy.linalg.LinAlgError if a column of ``a`` is zero below the
    diagonal.
    """
    a = np.array(a, dtype=float)
    b = np.array(b, dtype=float).ravel()
    nr, nc = a.shape
    if nr < nc:
        raise ValueError("qr_solve needs at least as many rows as columns")
    if len(b) != nr:
        raise ValueError("right-hand side does not match the matrix rows")

    a1 = np.zeros(nc)
    a2 = np.zeros(nc)
    for k in range(nc):
        eta = np.max(np.abs(a[k:, k]))
        if eta == 0:
            raise np.linalg.LinAlgError("matrix is singular")
        a[k:, k] /= eta
        sigma = np.sqrt(np.sum(a[k:, k] ** 2))
        if a[k, k] < 0:
            sigma = -sigma
        a[k, k] += sigma
        a1[k] = sigma * a[k, k]
        a2[k] = -eta * sigma
        if k + 1 < nc:
            tau = (a[k:, k] @ a[k:, k + 1:]) / a1[k]
            a[k:, k + 1:] -= np.outer(a[k:, k], tau)

    for j in range(nc):
        tau = (a[j:, j] @ b[j:]) / a1[j]
        b[j:] -= tau * a[j:, j]

    x = np.zeros(nc)
    for i in reversed(range(nc)):
        x[i] = (b[i] - a[i, i + 1:] @ x[i + 1:]) / a2[i]
    return x


def reprojection_error(points3d, points2d, rotation, translation, camera: Camera) -> float:
    """Mean pixel distance between observations and reprojected world points."""
    pws = np.asarray(points3d, dtype=float)
    pts = np.asarray(points2d, dtype=float)
    pcs = pws @ np.asarray(rotation, dtype=float).T + np.asarray(translation, dtype=float)
    projected = camera.project(pcs)
    return float(np.mean(np.linalg.norm(pts - projected, axis=1)))


def _absolute_orientation(pcs, pws) -> tuple[np.ndarray, np.ndarray]:
    pc0 = pcs.mean(axis=0)
    pw0 = pws.mean(axis=0)
    abt = (pcs - pc0).T @ (pws - pw0)
    u, _, vt = np.linalg.svd(abt)
    rotation = u @ vt
    if np.linalg.det(rotation) < 0:
        rotation[2] = -rotation[2]
    translation = pc0 - rotation @ pw0
    return rotation, translation


def _pose_from_betas(ut, betas, alphas, pws) -> tuple[np.ndarray, np.ndarray]:
    ccs = sum(beta * ut[11 - i].reshape(4, 3) for i, beta in enumerate(betas))
    pcs = alphas @ ccs
    if pcs[0, 2] < 0.0:
        pcs = -pcs
    return _absolute_orientation(pcs, pws)


def estimate_pose(points3d, points2d, camera: Camera) -> PoseEstimate:
    """Estimate the world-to-camera pose from at least four correspondences."""
    pws = np.asarray(points3d, dtype=float)
    pts = np.asarray(points2d, dtype=float)
    if pws.ndim != 2 or pws.shape[1] != 3:
        raise ValueError("points3d must have shape (N, 3)")
    if pts.ndim != 2 or pts.shape[1] != 2:
        raise ValueError("points2d must have shape (N, 2)")
    if len(pws) != len(pts):
        raise ValueError("points3d and points2d differ in length")
    if len(pws) < 4:
        raise ValueError("at least four correspondences are needed")

    cws = choose_control_points(pws)
    alphas = barycentric_coordinates(pws, cws)
    m = build_measurement_matrix(alphas, pts, camera)
    u, _, _ = np.linalg.svd(m.T @ m)
    ut = u.T

    l_6x10 = compute_l_6x10(ut)
    rho = compute_rho(cws)

    candidates = []
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        for approximate in (find_betas_approx_1, find_betas_approx_2, find_betas_approx_3):
            betas = gauss_newton(l_6x10, rho, approximate(l_6x10, rho))
            rotation, translation = _pose_from_betas(ut, betas, alphas, pws)
            error = reprojection_error(pws, pts, rotation, translation, camera)
            candidates.append(PoseEstimate(rotation, translation, error))

    return min(candidates, key=lambda pose: pose.error)