# src/hybridpose/modules/least_squares.py
"""
Non-minimal fitting of a pose/scale/offset model to many correspondences.

One round alternates three steps on the depth-anchored points:
  1) with R and the translation direction fixed, solve the linear system in
     (offset0, scale, scale * offset1, |t|);
  2) for unknown focal lengths, one damped Gauss-Newton step on all depth
     parameters and 1 / focal (optionally with Sampson rows);
  3) weighted rigid alignment of the lifted point sets for R, t.
"""
from __future__ import annotations

import logging

import numpy as np

from ..geom.epipolar import essential_from_pose, sampson_terms
from ..geom.se3 import kabsch
from ..system.model import ModelVariant, PoseScaleOffset
from .evaluate import lift

logger = logging.getLogger(__name__)

_MIN_T_NORM = 1e-12
_MAX_BACKTRACKS = 8


def _rays(xh: np.ndarray, g: float) -> np.ndarray:
    return np.column_stack([g * xh[:, 0], g * xh[:, 1], np.ones(xh.shape[0])])


def solve_depth_linear(
    x0h: np.ndarray,
    x1h: np.ndarray,
    d0: np.ndarray,
    d1: np.ndarray,
    weights: np.ndarray,
    R: np.ndarray,
    t_dir: np.ndarray | None,
    focal0: float,
    focal1: float,
) -> tuple[float, float, float, float] | None:
    """
    Depth correction and translation magnitude for a fixed rotation.

    Solves s (d1 + o1) r1 - (d0 + o0) R r0 - lam * t_dir = 0 in the weighted
    least-squares sense; linear in (o0, s, s * o1, lam).

    Returns:
        (offset0, scale, offset1, lam), or None if the system is rank
        deficient or the scale is not positive. lam is 0 when t_dir is None.
    """
    n = x0h.shape[0]
    if n == 0:
        return None
    r0 = _rays(x0h, 1.0 / focal0) @ R.T
    r1 = _rays(x1h, 1.0 / focal1)
    sw = np.sqrt(weights)[:, None]

    cols = [-r0, d1[:, None] * r1, r1]
    if t_dir is not None:
        cols.append(np.broadcast_to(-t_dir, (n, 3)))
    A = np.stack([(c * sw).reshape(-1) for c in cols], axis=1)
    b = (d0[:, None] * r0 * sw).reshape(-1)
    if not (np.all(np.isfinite(A)) and np.all(np.isfinite(b))):
        return None

    sol, _, rank, _ = np.linalg.lstsq(A, b, rcond=None)
    if rank < A.shape[1]:
        return None
    o0, s, so1 = sol[:3]
    lam = float(sol[3]) if t_dir is not None else 0.0
    if not s > 0.0:
        return None
    return float(o0), float(s), float(so1 / s), lam


class _DepthProblem:
    """Alignment residuals of the lifted points as a function of theta."""

    def __init__(self, x0h, x1h, d0, d1, weights, variant: ModelVariant):
        self.x0h, self.x1h = x0h, x1h
        self.d0, self.d1 = d0, d1
        self.sw = np.sqrt(weights)
        self.variant = variant
        self.epipolar = None

    def add_epipolar(self, x0h, x1h, weights, epipolar_weight: float) -> None:
        if x0h.shape[0] > 0 and epipolar_weight > 0.0:
            self.epipolar = (x0h, x1h, np.sqrt(epipolar_weight * weights))

    def _g(self, theta):
        # theta = (o0, s, o1, lam, g0[, g1]) with g = 1 / focal
        g0 = theta[4]
        g1 = theta[5] if self.variant is ModelVariant.TWO_FOCAL else theta[4]
        return g0, g1

    def residuals(self, theta, R, t_dir) -> np.ndarray:
        o0, s, o1, lam = theta[:4]
        g0, g1 = self._g(theta)
        P0 = (self.d0 + o0)[:, None] * _rays(self.x0h, g0)
        P1 = s * (self.d1 + o1)[:, None] * _rays(self.x1h, g1)
        e = (P1 - P0 @ R.T - lam * t_dir) * self.sw[:, None]
        out = [e.reshape(-1)]
        if self.epipolar is not None:
            out.append(self._sampson(g0, g1, R, t_dir))
        return np.concatenate(out)

    def _sampson(self, g0, g1, R, t_dir) -> np.ndarray:
        x0h, x1h, sw = self.epipolar
        F = np.diag([g1, g1, 1.0]) @ essential_from_pose(R, t_dir) @ np.diag([g0, g0, 1.0])
        C, denom = sampson_terms(F, x0h, x1h)
        return sw * C / np.sqrt(np.maximum(denom, 1e-300))

    def jacobian(self, theta, R, t_dir) -> np.ndarray:
        o0, s, o1, _ = theta[:4]
        g0, g1 = self._g(theta)
        n = self.x0h.shape[0]
        r0 = _rays(self.x0h, g0) @ R.T
        r1 = _rays(self.x1h, g1)
        p0 = np.column_stack([self.x0h[:, :2], np.zeros(n)]) @ R.T
        p1 = np.column_stack([self.x1h[:, :2], np.zeros(n)])

        cols = [
            -r0,
            (self.d1 + o1)[:, None] * r1,
            s * r1,
            np.broadcast_to(-t_dir, (n, 3)),
        ]
        dg0 = -(self.d0 + o0)[:, None] * p0
        dg1 = s * (self.d1 + o1)[:, None] * p1
        if self.variant is ModelVariant.TWO_FOCAL:
            cols += [dg0, dg1]
        else:
            cols.append(dg0 + dg1)
        J = np.stack([(c * self.sw[:, None]).reshape(-1) for c in cols], axis=1)

        if self.epipolar is not None:
            # Sampson rows depend on the focal terms only
            J_ep = np.zeros((self.epipolar[0].shape[0], J.shape[1]))
            for k in range(4, len(theta)):
                h = 1e-6 * max(1.0, abs(theta[k]))
                tp = np.array(theta, dtype=np.float64)
                tm = np.array(theta, dtype=np.float64)
                tp[k] += h
                tm[k] -= h
                J_ep[:, k] = (self._sampson(*self._g(tp), R, t_dir) - self._sampson(*self._g(tm), R, t_dir)) / (2.0 * h)
            J = np.vstack([J, J_ep])
        return J


def _gauss_newton_step(problem: _DepthProblem, theta: np.ndarray, R, t_dir) -> np.ndarray:
    e = problem.residuals(theta, R, t_dir)
    cost = float(e @ e)
    J = problem.jacobian(theta, R, t_dir)
    active = np.any(J != 0.0, axis=0)
    delta_active, _, rank, _ = np.linalg.lstsq(J[:, active], -e, rcond=None)
    if rank < int(active.sum()):
        return theta
    delta = np.zeros_like(theta)
    delta[active] = delta_active

    step = 1.0
    for _ in range(_MAX_BACKTRACKS):
        cand = theta + step * delta
        e_c = problem.residuals(cand, R, t_dir)
        if np.all(np.isfinite(e_c)) and float(e_c @ e_c) <= cost and np.all(cand[4:] > 0.0):
            return cand
        step *= 0.5
    return theta


def fit_pose_scale_offset(
    x0h: np.ndarray,
    x1h: np.ndarray,
    d0: np.ndarray,
    d1: np.ndarray,
    weights: np.ndarray,
    warm_start: PoseScaleOffset,
    min_depth: np.ndarray,
    *,
    rounds: int = 3,
    epipolar: tuple[np.ndarray, np.ndarray, np.ndarray] | None = None,
    epipolar_weight: float = 1.0,
) -> PoseScaleOffset | None:
    """
    Refit a model to the depth-anchored points of a sample.

    Args:
        x0h, x1h, d0, d1, weights: depth-anchored correspondences.
        warm_start: model providing the initial rotation, translation
            direction and focal length(s).
        min_depth: (2,) admissible depth floor per image.
        rounds: alternation rounds (at least one).
        epipolar: optional (x0h, x1h, weights) whose Sampson residuals join
            the focal update.
        epipolar_weight: weight of the Sampson rows.

    Returns:
        The fitted model, or None when the system is rank deficient or the
        result violates the model invariants.
    """
    variant = warm_start.variant
    if x0h.shape[0] < 2 or not np.any(weights > 0.0):
        return None

    problem = _DepthProblem(x0h, x1h, d0, d1, weights, variant)
    if epipolar is not None and variant.has_focal:
        problem.add_epipolar(*epipolar, epipolar_weight)

    R = np.array(warm_start.R)
    t = np.array(warm_start.t)
    g0, g1 = 1.0 / warm_start.focal0, 1.0 / warm_start.focal1
    model = None

    for _ in range(max(1, rounds)):
        t_norm = float(np.linalg.norm(t))
        t_dir = t / t_norm if t_norm > _MIN_T_NORM else None
        lin = solve_depth_linear(x0h, x1h, d0, d1, weights, R, t_dir, 1.0 / g0, 1.0 / g1)
        if lin is None:
            return None
        o0, s, o1, lam = lin

        if variant.has_focal and t_dir is not None:
            theta = np.array([o0, s, o1, lam, g0] + ([g1] if variant is ModelVariant.TWO_FOCAL else []))
            theta = _gauss_newton_step(problem, theta, R, t_dir)
            o0, s, o1, lam = (float(v) for v in theta[:4])
            g0 = float(theta[4])
            g1 = float(theta[5]) if variant is ModelVariant.TWO_FOCAL else g0

        if not (s > 0.0 and g0 > 0.0 and g1 > 0.0):
            return None

        P0 = lift(x0h, d0, o0, 1.0 / g0)
        P1 = lift(x1h, d1, o1, 1.0 / g1, s)
        if _well_spread(P0):
            R, t = kabsch(P0, P1, weights)
        else:
            t = lam * t_dir if t_dir is not None else np.zeros(3)

        model = warm_start.replace(R=R, t=t, scale=s, offset0=o0, offset1=o1).with_focal(1.0 / g0, 1.0 / g1)

    if model is None or not model.is_valid(min_depth):
        logger.debug("non-minimal fit rejected: invalid model")
        return None
    return model


def _well_spread(P: np.ndarray) -> bool:
    if P.shape[0] < 3:
        return False
    s = np.linalg.svd(P - P.mean(axis=0), compute_uv=False)
    return bool(s[0] > 0.0 and s[1] > 1e-9 * s[0])
