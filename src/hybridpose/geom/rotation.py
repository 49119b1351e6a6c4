# src/hybridpose/geom/rotation.py
"""
Quaternion helpers in (w, x, y, z) order.

The functions only use elementwise arithmetic, so they accept python floats,
numpy scalars or object arrays alike; np.ndarray in, np.ndarray out.
"""
from __future__ import annotations

import numpy as np


def _sqrt(v):
    return v ** 0.5


def normalize_quaternion(q):
    n = _sqrt(q[0] * q[0] + q[1] * q[1] + q[2] * q[2] + q[3] * q[3])
    return np.array([q[0] / n, q[1] / n, q[2] / n, q[3] / n])


def quaternion_multiply(a, b):
    # Hamilton product a ⊗ b
    return np.array(
        [
            a[0] * b[0] - a[1] * b[1] - a[2] * b[2] - a[3] * b[3],
            a[0] * b[1] + a[1] * b[0] + a[2] * b[3] - a[3] * b[2],
            a[0] * b[2] - a[1] * b[3] + a[2] * b[0] + a[3] * b[1],
            a[0] * b[3] + a[1] * b[2] - a[2] * b[1] + a[3] * b[0],
        ]
    )


def quaternion_to_rotation_matrix(q):
    q = normalize_quaternion(q)
    w, x, y, z = q[0], q[1], q[2], q[3]
    return np.array(
        [
            [1 - 2 * (y * y + z * z), 2 * (x * y - w * z), 2 * (x * z + w * y)],
            [2 * (x * y + w * z), 1 - 2 * (x * x + z * z), 2 * (y * z - w * x)],
            [2 * (x * z - w * y), 2 * (y * z + w * x), 1 - 2 * (x * x + y * y)],
        ]
    )


def rotation_matrix_to_quaternion(R) -> np.ndarray:
    # Shepperd's method, largest diagonal term first
    m = np.asarray(R, dtype=np.float64)
    trace = float(np.trace(m))
    if trace > 0.0:
        s = np.sqrt(trace + 1.0) * 2.0
        qw = 0.25 * s
        qx = (m[2, 1] - m[1, 2]) / s
        qy = (m[0, 2] - m[2, 0]) / s
        qz = (m[1, 0] - m[0, 1]) / s
    elif m[0, 0] > m[1, 1] and m[0, 0] > m[2, 2]:
        s = np.sqrt(1.0 + m[0, 0] - m[1, 1] - m[2, 2]) * 2.0
        qw = (m[2, 1] - m[1, 2]) / s
        qx = 0.25 * s
        qy = (m[0, 1] + m[1, 0]) / s
        qz = (m[0, 2] + m[2, 0]) / s
    elif m[1, 1] > m[2, 2]:
        s = np.sqrt(1.0 + m[1, 1] - m[0, 0] - m[2, 2]) * 2.0
        qw = (m[0, 2] - m[2, 0]) / s
        qx = (m[0, 1] + m[1, 0]) / s
        qy = 0.25 * s
        qz = (m[1, 2] + m[2, 1]) / s
    else:
        s = np.sqrt(1.0 + m[2, 2] - m[0, 0] - m[1, 1]) * 2.0
        qw = (m[1, 0] - m[0, 1]) / s
        qx = (m[0, 2] + m[2, 0]) / s
        qy = (m[1, 2] + m[2, 1]) / s
        qz = 0.25 * s

    q = normalize_quaternion(np.array([qw, qx, qy, qz], dtype=np.float64))
    # canonical hemisphere
    return q if q[0] >= 0.0 else -q


def quaternion_exp(delta):
    """Unit quaternion of the rotation vector `delta` (tangent increment)."""
    theta_sq = delta[0] * delta[0] + delta[1] * delta[1] + delta[2] * delta[2]
    if float(theta_sq) < 1e-16:
        # first-order expansion near the identity
        return normalize_quaternion(np.array([1.0, 0.5 * delta[0], 0.5 * delta[1], 0.5 * delta[2]]))
    theta = _sqrt(theta_sq)
    k = np.sin(0.5 * theta) / theta
    return np.array([np.cos(0.5 * theta), k * delta[0], k * delta[1], k * delta[2]])


def rotation_from_tangent(q0, delta) -> np.ndarray:
    """R(exp(delta) ⊗ q0): the left-multiplicative update used by the refiner."""
    return quaternion_to_rotation_matrix(quaternion_multiply(quaternion_exp(delta), q0))


def rotation_angle(R_a: np.ndarray, R_b: np.ndarray) -> float:
    # geodesic distance in radians
    c = 0.5 * (np.trace(R_a.T @ R_b) - 1.0)
    return float(np.arccos(np.clip(c, -1.0, 1.0)))
