# src/hybridpose/modules/minimal.py
"""
Closed-form minimal solvers.

Depth-anchored samples use distance preservation between lifted points:
for every pair (i, j) the squared distance of the image-0 lifts equals the
squared distance of the image-1 lifts. Hiding offset1 leaves a system that is
linear in monomials of the remaining unknowns, so offset1 is a root of a
small determinant polynomial. Rotation and translation follow from a rigid
alignment of the lifted points.

Epipolar samples go through the fundamental matrix, focal recovery, and a
cheirality-checked decomposition of the essential matrix; depth scale and
offsets are then lifted linearly from the sample's depths.
"""
from __future__ import annotations

import logging

import numpy as np
from numpy.polynomial import polynomial as P

from ..geom.epipolar import (
    decompose_essential,
    focal_lengths_from_fundamental,
    linear_fundamental,
    real_roots,
    seven_point_fundamental,
    shared_focal_from_fundamental,
)
from ..geom.se3 import kabsch
from ..system.model import ModelVariant, PoseScaleOffset
from .evaluate import lift
from .least_squares import solve_depth_linear
from .triangulate import select_by_cheirality

logger = logging.getLogger(__name__)

EPIPOLAR_SAMPLE_SIZE = 7


def depth_sample_size(variant: ModelVariant) -> int:
    return 3 if variant is ModelVariant.SCALE_ONLY else 4


def _collinear(p: np.ndarray, *, tol: float = 1e-9) -> bool:
    s = np.linalg.svd(p - p.mean(axis=0), compute_uv=False)
    return bool(s.shape[0] < 2 or s[0] <= 0.0 or s[1] < tol * s[0])


def _degenerate_depth_sample(x0h, x1h, d0, d1) -> bool:
    if not (np.all(np.isfinite(d0)) and np.all(np.isfinite(d1))):
        return True
    if np.any(d0 <= 0.0) or np.any(d1 <= 0.0):
        return True
    return _collinear(x0h[:, :2]) or _collinear(x1h[:, :2])


def _pair_terms(xh: np.ndarray, d: np.ndarray):
    """
    Per pair (i<j): dd = (d_i - d_j)^2 and the coefficients of
    |(d_i + o) p_i - (d_j + o) p_j|^2 = aa + ab * o + bb * o^2.
    """
    i, j = np.triu_indices(xh.shape[0], k=1)
    p = xh[:, :2]
    a = d[i, None] * p[i] - d[j, None] * p[j]
    b = p[i] - p[j]
    return (d[i] - d[j]) ** 2, np.sum(a * a, axis=1), 2.0 * np.sum(a * b, axis=1), np.sum(b * b, axis=1)


def _det_poly_in_column(M: np.ndarray, col: int, col_poly: np.ndarray) -> np.ndarray:
    """
    det(M) as a polynomial when column `col` holds polynomial entries.

    Args:
        M: (n,n) matrix; column `col` is ignored.
        col_poly: (n, k) coefficients (low to high) of the entries of that column.

    Returns:
        (k,) coefficients, low to high.
    """
    out = np.zeros(col_poly.shape[1])
    for r in range(M.shape[0]):
        minor = np.delete(np.delete(M, r, axis=0), col, axis=1)
        out += ((-1.0) ** (r + col)) * np.linalg.det(minor) * col_poly[r]
    return out


def _align(x0h, x1h, d0, d1, o0, o1, s, f0, f1, variant) -> PoseScaleOffset | None:
    P0 = lift(x0h, d0, o0, f0)
    P1 = lift(x1h, d1, o1, f1, s)
    if _collinear(P0) or _collinear(P1):
        return None
    R, t = kabsch(P0, P1)
    if not (np.all(np.isfinite(R)) and np.all(np.isfinite(t))):
        return None
    return PoseScaleOffset(R, t, scale=s, offset0=o0, offset1=o1, focal0=f0, focal1=f1, variant=variant)


def solve_depth_scale_only(x0h, x1h, d0, d1) -> list[PoseScaleOffset]:
    """
    Three calibrated depth-anchored correspondences.

    Unknowns X = o0^2, Y = o0, u = s^2 enter each pair equation linearly; the
    coefficient of u is quadratic in the hidden o1. X = Y^2 turns Cramer's
    rule into a quartic in o1.
    """
    x0h, x1h, d0, d1 = x0h[:3], x1h[:3], d0[:3], d1[:3]
    if _degenerate_depth_sample(x0h, x1h, d0, d1):
        return []

    dd0, aa0, ab0, bb0 = _pair_terms(x0h, d0)
    dd1, aa1, ab1, bb1 = _pair_terms(x1h, d1)
    c = -(aa0 + dd0)
    u_poly = -np.column_stack([dd1 + aa1, ab1, bb1])
    zeros = np.zeros(3)

    D = _det_poly_in_column(np.column_stack([bb0, ab0, zeros]), 2, u_poly)
    DX = _det_poly_in_column(np.column_stack([c, ab0, zeros]), 2, u_poly)
    DY = _det_poly_in_column(np.column_stack([bb0, c, zeros]), 2, u_poly)
    quartic = P.polysub(P.polymul(DX, D), P.polymul(DY, DY))

    out = []
    for o1 in real_roots(quartic[::-1]):
        A = np.column_stack([bb0, ab0, u_poly @ np.array([1.0, o1, o1 * o1])])
        if abs(np.linalg.det(A)) < 1e-14 * max(1.0, np.abs(A).max() ** 3):
            continue
        _, o0, u = np.linalg.solve(A, c)
        if not u > 0.0:
            continue
        model = _align(x0h, x1h, d0, d1, o0, o1, float(np.sqrt(u)), 1.0, 1.0, ModelVariant.SCALE_ONLY)
        if model is not None:
            out.append(model)
    return out


def solve_depth_focal(x0h, x1h, d0, d1, variant: ModelVariant) -> list[PoseScaleOffset]:
    """
    Four depth-anchored correspondences with unknown focal length(s).

    With w = 1/f^2 and u = s^2, each of the six pair equations is linear in
    [w0, w0 o0, w0 o0^2, u, u w1, 1]; only the u w1 column depends on the
    hidden o1 (quadratically), so det = 0 is a quadratic in o1.
    """
    x0h, x1h, d0, d1 = x0h[:4], x1h[:4], d0[:4], d1[:4]
    if _degenerate_depth_sample(x0h, x1h, d0, d1):
        return []

    dd0, aa0, ab0, bb0 = _pair_terms(x0h, d0)
    dd1, aa1, ab1, bb1 = _pair_terms(x1h, d1)
    M = np.column_stack([aa0, ab0, bb0, -dd1, np.zeros(6), dd0])
    uw_poly = -np.column_stack([aa1, ab1, bb1])

    out = []
    for o1 in real_roots(_det_poly_in_column(M, 4, uw_poly)[::-1]):
        M[:, 4] = uw_poly @ np.array([1.0, o1, o1 * o1])
        _, _, Vt = np.linalg.svd(M)
        v = Vt[-1]
        if abs(v[5]) < 1e-12 * np.linalg.norm(v):
            continue
        v = v / v[5]
        w0, w0o0, _, u, uw1 = v[:5]
        if not (w0 > 0.0 and u > 0.0 and uw1 > 0.0):
            continue
        w1 = uw1 / u
        o0 = w0o0 / w0
        if variant is ModelVariant.SHARED_FOCAL:
            f0 = f1 = float(1.0 / np.sqrt(np.sqrt(w0 * w1)))
        else:
            f0, f1 = float(1.0 / np.sqrt(w0)), float(1.0 / np.sqrt(w1))
        model = _align(x0h, x1h, d0, d1, float(o0), float(o1), float(np.sqrt(u)), f0, f1, variant)
        if model is not None:
            out.append(model)
    return out


def solve_depth_anchored(x0h, x1h, d0, d1, variant: ModelVariant) -> list[PoseScaleOffset]:
    if x0h.shape[0] < depth_sample_size(variant):
        return []
    if variant is ModelVariant.SCALE_ONLY:
        return solve_depth_scale_only(x0h, x1h, d0, d1)
    return solve_depth_focal(x0h, x1h, d0, d1, variant)


def _focal_candidates(F: np.ndarray, variant: ModelVariant) -> list[tuple[float, float]]:
    if variant is ModelVariant.SHARED_FOCAL:
        return [(f, f) for f in shared_focal_from_fundamental(F)]
    if variant is ModelVariant.TWO_FOCAL:
        focals = focal_lengths_from_fundamental(F)
        return [] if focals is None else [focals]
    return [(1.0, 1.0)]


def solve_epipolar(x0h, x1h, d0, d1, weights, variant: ModelVariant) -> list[PoseScaleOffset]:
    """
    Seven (or more) epipolar correspondences.

    Returns:
        One model per admissible fundamental matrix and focal candidate.
        Scale and offsets are lifted from the sample's depths; when that fails
        the model keeps scale 1, zero offsets and a unit translation.
    """
    n = x0h.shape[0]
    if n < EPIPOLAR_SAMPLE_SIZE:
        return []
    Fs = seven_point_fundamental(x0h, x1h) if n == EPIPOLAR_SAMPLE_SIZE else linear_fundamental(x0h, x1h)

    out = []
    for F in Fs:
        candidates = _focal_candidates(F, variant)
        if not candidates:
            logger.debug("epipolar sample: focal length not determined by F")
        for f0, f1 in candidates:
            E = np.diag([f1, f1, 1.0]) @ F @ np.diag([f0, f0, 1.0])
            best = select_by_cheirality(x0h[:, :2] / f0, x1h[:, :2] / f1, decompose_essential(E))
            if best is None:
                continue
            R, t_dir, _ = best

            lifted = solve_depth_linear(x0h, x1h, d0, d1, weights, R, t_dir, f0, f1)
            if lifted is not None and lifted[3] > 0.0:
                o0, s, o1, lam = lifted
                out.append(PoseScaleOffset(R, lam * t_dir, scale=s, offset0=o0, offset1=o1,
                                           focal0=f0, focal1=f1, variant=variant))
            else:
                out.append(PoseScaleOffset(R, t_dir, focal0=f0, focal1=f1, variant=variant))
    return out
