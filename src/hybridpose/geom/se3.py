# src/hybridpose/geom/se3.py
from __future__ import annotations

import numpy as np


def Rt_to_T(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    T = np.eye(4)
    T[:3, :3] = R
    T[:3, 3] = t.reshape(3)
    return T


def inv_Rt(R: np.ndarray, t: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    # (R, t) maps image-0 points into image 1; the inverse maps back
    return R.T, -R.T @ t.reshape(3)


def skew(v: np.ndarray) -> np.ndarray:
    v = np.asarray(v, dtype=np.float64).reshape(3)
    return np.array(
        [
            [0.0, -v[2], v[1]],
            [v[2], 0.0, -v[0]],
            [-v[1], v[0], 0.0],
        ],
        dtype=np.float64,
    )


def is_rotation(R: np.ndarray, *, tol: float = 1e-6) -> bool:
    R = np.asarray(R, dtype=np.float64)
    if R.shape != (3, 3) or not np.all(np.isfinite(R)):
        return False
    if not np.allclose(R.T @ R, np.eye(3), atol=tol):
        return False
    return bool(abs(np.linalg.det(R) - 1.0) < tol)


def kabsch(
    src: np.ndarray,
    dst: np.ndarray,
    weights: np.ndarray | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Rigid alignment dst ~ R @ src + t (no scale).

    Args:
        src, dst: (N,3) corresponding points, N >= 3 and not collinear.
        weights: optional (N,) non-negative weights.

    Returns:
        R (3,3) proper rotation, t (3,).
    """
    src = np.asarray(src, dtype=np.float64)
    dst = np.asarray(dst, dtype=np.float64)
    w = np.ones(src.shape[0]) if weights is None else np.asarray(weights, dtype=np.float64)
    w = w / (w.sum() + 1e-300)

    mu_src = w @ src
    mu_dst = w @ dst
    H = (src - mu_src).T @ ((dst - mu_dst) * w[:, None])
    U, _, Vt = np.linalg.svd(H)

    # reflection fix
    D = np.eye(3)
    D[2, 2] = np.sign(np.linalg.det(Vt.T @ U.T)) or 1.0
    R = Vt.T @ D @ U.T
    t = mu_dst - R @ mu_src
    return R, t
