# src/hybridpose/modules/triangulate.py
from __future__ import annotations
import numpy as np
import cv2


def triangulate_two_view(
    rays0: np.ndarray,   # (N,2) calibrated coordinates in image 0
    rays1: np.ndarray,   # (N,2) calibrated coordinates in image 1
    R: np.ndarray,       # (3,3) image 0 -> image 1
    t: np.ndarray,       # (3,)
) -> tuple[np.ndarray, np.ndarray]:
    """
    Returns:
      X0: (N,3) points in the image-0 camera frame
      mask_front: (N,) True where the point lies in front of both cameras
    """
    r0 = np.asarray(rays0, dtype=np.float64)
    r1 = np.asarray(rays1, dtype=np.float64)
    R = np.asarray(R, dtype=np.float64)
    t = np.asarray(t, dtype=np.float64).reshape(3, 1)

    P0 = np.hstack([np.eye(3), np.zeros((3, 1))])
    P1 = np.hstack([R, t])

    # cv2.triangulatePoints expects 2xN
    X_h = cv2.triangulatePoints(P0, P1, r0.T.copy(), r1.T.copy())    # 4xN
    w = X_h[3:4, :]
    w = np.where(np.abs(w) < 1e-12, 1e-12, w)
    X0 = (X_h[:3, :] / w).T

    # Cheirality: depth > 0 in both cameras
    z0 = X0[:, 2]
    z1 = (X0 @ R.T + t.reshape(1, 3))[:, 2]
    mask_front = (z0 > 1e-9) & (z1 > 1e-9)
    return X0, mask_front


def select_by_cheirality(
    rays0: np.ndarray,
    rays1: np.ndarray,
    candidates: list[tuple[np.ndarray, np.ndarray]],
) -> tuple[np.ndarray, np.ndarray, int] | None:
    """
    Pick the (R, t) decomposition that places most points in front of both cameras.

    Returns:
        (R, t, num_front), or None if no candidate has any point in front.
    """
    best = None
    for R, t in candidates:
        _, mask = triangulate_two_view(rays0, rays1, R, t)
        n_front = int(mask.sum())
        if n_front > 0 and (best is None or n_front > best[2]):
            best = (R, t, n_front)
    return best
