# src/hybridpose/geom/epipolar.py
"""
Two-view epipolar relations.

Convention: x1^T F x0 = 0 for homogeneous points x0 (image 0) and x1
(image 1), with E = [t]x R and F = diag(1/f1, 1/f1, 1) E diag(1/f0, 1/f0, 1).
"""
from __future__ import annotations

import cv2
import numpy as np
from numpy.polynomial import polynomial as P

from .se3 import skew


def essential_from_pose(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    return skew(t) @ np.asarray(R, dtype=np.float64)


def fundamental_from_pose(R: np.ndarray, t: np.ndarray, focal0: float, focal1: float) -> np.ndarray:
    E = essential_from_pose(R, t)
    K0_inv = np.diag([1.0 / focal0, 1.0 / focal0, 1.0])
    K1_inv = np.diag([1.0 / focal1, 1.0 / focal1, 1.0])
    return K1_inv @ E @ K0_inv


def sampson_terms(F: np.ndarray, x0h: np.ndarray, x1h: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Algebraic error and first-order gradient norm of x1^T F x0.

    Args:
        F: (3,3) fundamental matrix.
        x0h, x1h: (N,3) homogeneous points.

    Returns:
        C: (N,) algebraic residuals.
        denom: (N,) squared gradient norm; the Sampson distance is C / sqrt(denom).
    """
    Fx0 = x0h @ F.T
    Ftx1 = x1h @ F
    C = np.sum(x1h * Fx0, axis=1)
    denom = Fx0[:, 0] ** 2 + Fx0[:, 1] ** 2 + Ftx1[:, 0] ** 2 + Ftx1[:, 1] ** 2
    return C, denom


def sampson_squared(F: np.ndarray, x0h: np.ndarray, x1h: np.ndarray) -> np.ndarray:
    C, denom = sampson_terms(F, x0h, x1h)
    with np.errstate(divide="ignore", invalid="ignore"):
        r = C * C / denom
    return np.where(np.isfinite(r), r, np.inf)


def _design_matrix(x0h: np.ndarray, x1h: np.ndarray) -> np.ndarray:
    # row i: x1_i ⊗ x0_i, matching F.ravel() in row-major order
    return np.einsum("ni,nj->nij", x1h, x0h).reshape(-1, 9)


def seven_point_fundamental(x0h: np.ndarray, x1h: np.ndarray, *, rank_tol: float = 1e-10) -> list[np.ndarray]:
    """
    Fundamental matrices through seven correspondences.

    Returns:
        Up to three (3,3) rank-2 solutions, [] for degenerate configurations.
    """
    A = _design_matrix(x0h[:7], x1h[:7])
    _, s, Vt = np.linalg.svd(A, full_matrices=True)
    if s[0] <= 0.0 or s[6] / s[0] < rank_tol:
        return []

    F1 = Vt[8].reshape(3, 3)
    F2 = Vt[7].reshape(3, 3)

    # det(a F1 + (1 - a) F2) is cubic in a; four samples determine it exactly
    alphas = np.array([-1.0, 0.0, 1.0, 2.0])
    dets = [np.linalg.det(a * F1 + (1.0 - a) * F2) for a in alphas]
    coeffs = np.polyfit(alphas, dets, 3)

    out = []
    for a in real_roots(coeffs):
        F = a * F1 + (1.0 - a) * F2
        n = np.linalg.norm(F)
        if n > 0.0 and np.all(np.isfinite(F)):
            out.append(F / n)
    return out


def linear_fundamental(x0h: np.ndarray, x1h: np.ndarray, *, rank_tol: float = 1e-10) -> list[np.ndarray]:
    """Least-squares fundamental matrix from eight or more points, rank 2 enforced."""
    A = _design_matrix(x0h, x1h)
    _, s, Vt = np.linalg.svd(A, full_matrices=True)
    if s[0] <= 0.0 or s[7] / s[0] < rank_tol:
        return []
    F = Vt[8].reshape(3, 3)
    U, S, Vt_F = np.linalg.svd(F)
    S[2] = 0.0
    F = U @ np.diag(S) @ Vt_F
    return [F / np.linalg.norm(F)]


def _kruppa_terms(F: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Kruppa equations F w0 F^T ~ [e1]x w1 [e1]x^T with w_k = diag(f_k^2, f_k^2, 1),
    restricted to the plane orthogonal to the epipole e1 in image 1:

        L0 + f0^2 L1 = lam (R0 + f1^2 R1)

    Each term holds the three distinct entries of a symmetric 2x2 block.
    """
    U, _, _ = np.linalg.svd(F)
    e1 = U[:, 2]
    Q = U[:, :2]

    I_tilde = np.diag([1.0, 1.0, 0.0])
    I_z = np.diag([0.0, 0.0, 1.0])
    ex = skew(e1)

    def _vec(X: np.ndarray) -> np.ndarray:
        Y = Q.T @ X @ Q
        return np.array([Y[0, 0], Y[0, 1], Y[1, 1]])

    return _vec(F @ I_z @ F.T), _vec(F @ I_tilde @ F.T), _vec(ex @ I_z @ ex.T), _vec(ex @ I_tilde @ ex.T)


def focal_lengths_from_fundamental(F: np.ndarray, *, cond_max: float = 1e12) -> tuple[float, float] | None:
    """
    Focal lengths of both images from F, principal points at the origin.

    The Kruppa equations are linear in (f0^2, lam, lam * f1^2).

    Returns:
        (f0, f1), or None when the configuration does not determine them
        (e.g. coplanar optical axes) or a squared focal is not positive.
    """
    L0, L1, R0, R1 = _kruppa_terms(F)
    A = np.stack([L1, -R0, -R1], axis=1)
    if not np.all(np.isfinite(A)) or np.linalg.cond(A) > cond_max:
        return None
    f0_sq, lam, mu = np.linalg.solve(A, -L0)
    if lam == 0.0:
        return None
    f1_sq = mu / lam
    if not (f0_sq > 0.0 and f1_sq > 0.0):
        return None
    return float(np.sqrt(f0_sq)), float(np.sqrt(f1_sq))


def shared_focal_from_fundamental(F: np.ndarray, *, rel_tol: float = 1e-10) -> list[float]:
    """
    Candidate focal lengths when both images share one focal length.

    With f0 = f1 the Kruppa equations are bilinear in (w = f^2, lam).
    Eliminating lam from each pair of components gives three quadratics in w;
    the candidates are the positive minimizers of their sum of squares, which
    coincide with the common root on exact data. Unlike the two-focal
    system this stays determined for coplanar optical axes.

    Returns:
        Focal lengths ordered by residual, [] when F does not constrain w.
    """
    L0, L1, R0, R1 = _kruppa_terms(F)
    ref = (np.abs(L0).max() + np.abs(L1).max()) * (np.abs(R0).max() + np.abs(R1).max())
    if not np.isfinite(ref) or ref <= 0.0:
        return []

    cost = np.zeros(1)
    largest = 0.0
    for i, j in ((0, 1), (0, 2), (1, 2)):
        q = P.polysub(P.polymul([L0[i], L1[i]], [R0[j], R1[j]]), P.polymul([L0[j], L1[j]], [R0[i], R1[i]]))
        largest = max(largest, float(np.abs(q).max()))
        cost = P.polyadd(cost, P.polymul(q, q))
    if largest <= rel_tol * ref:
        return []

    cost = cost / (largest * largest)
    slope = P.polyder(cost)
    curvature = P.polyder(slope)
    found = []
    for w in real_roots(slope[::-1]):
        if w > 0.0 and P.polyval(w, curvature) > 0.0:
            found.append((float(P.polyval(w, cost)), float(np.sqrt(w))))
    return [f for _, f in sorted(found)]


def decompose_essential(E: np.ndarray) -> list[tuple[np.ndarray, np.ndarray]]:
    """The four (R, t) pairs consistent with E, |t| = 1."""
    R1, R2, t = cv2.decomposeEssentialMat(np.asarray(E, dtype=np.float64))
    t = t.reshape(3)
    return [(R1, t), (R1, -t), (R2, t), (R2, -t)]


def real_roots(coeffs: np.ndarray, *, imag_tol: float = 1e-8) -> list[float]:
    coeffs = np.trim_zeros(np.asarray(coeffs, dtype=np.float64), "f")
    if coeffs.size < 2:
        return []
    roots = np.roots(coeffs)
    return [float(r.real) for r in roots if abs(r.imag) <= imag_tol * max(1.0, abs(r.real))]
