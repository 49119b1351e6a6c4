# src/hybridpose/modules/refine.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

import numpy as np
from scipy.optimize import least_squares

from ..geom.epipolar import fundamental_from_pose, sampson_terms
from ..geom.rotation import rotation_from_tangent, rotation_matrix_to_quaternion
from ..system.config import LossConfig, RefinerConfig
from ..system.correspondences import CorrespondenceSet
from ..system.model import ModelVariant, PoseScaleOffset
from .evaluate import lift, project

logger = logging.getLogger(__name__)


class RefinerState(Enum):
    CREATED = "created"
    PROBLEM_ASSEMBLED = "problem_assembled"
    SOLVED = "solved"
    SOLUTION_EXTRACTED = "solution_extracted"


@dataclass
class RefinementSummary:
    performed: bool = False
    initial_cost: float = 0.0
    final_cost: float = 0.0
    num_function_evaluations: int = 0
    status: int = 0
    message: str = ""
    converged: bool = False


class RobustLoss:
    """rho(s) on squared block norms, with scipy's f_scale convention."""

    def __init__(self, cfg: LossConfig):
        self.name = cfg.name
        self.c2 = float(cfg.scale) ** 2

    def rho(self, s: np.ndarray) -> np.ndarray:
        z = s / self.c2
        if self.name == "trivial":
            r = z
        elif self.name == "huber":
            r = np.where(z <= 1.0, z, 2.0 * np.sqrt(z) - 1.0)
        elif self.name == "soft_l1":
            r = 2.0 * (np.sqrt(1.0 + z) - 1.0)
        elif self.name == "cauchy":
            r = np.log1p(z)
        else:
            r = np.arctan(z)
        return self.c2 * r

    def apply(self, r: np.ndarray, weights: np.ndarray) -> np.ndarray:
        """
        Rescale (N,k) residual blocks so their squared norms sum to
        sum_i w_i rho(|r_i|^2).
        """
        s = np.sum(r * r, axis=1)
        if self.name == "trivial":
            factor = np.sqrt(weights)
        else:
            # rho'(0) = 1 for every supported loss
            s_safe = np.where(s > 0.0, s, 1.0)
            factor = np.where(s > 0.0, np.sqrt(weights * self.rho(s_safe) / s_safe), np.sqrt(weights))
        return (r * factor[:, None]).reshape(-1)


class NonlinearRefiner:
    """
    Bounded nonlinear least-squares refinement of one model.

    Single use: set_up() -> solve() -> get_solution(). Residual blocks:
      reprojection_0: image-0 lift projected into image 1 (offset0, pose, focal)
      reprojection_1: image-1 lift projected into image 0 (scale, offset1, pose, focal)
      epipolar:       Sampson distance (pose, focal), weighted by epipolar_weight
    """

    def __init__(
        self,
        data: CorrespondenceSet,
        model: PoseScaleOffset,
        *,
        indices_reprojection0: np.ndarray,
        indices_reprojection1: np.ndarray,
        indices_epipolar: np.ndarray,
        config: RefinerConfig,
        epipolar_weight: float = 1.0,
    ):
        self.data = data
        self.model = model
        self.config = config
        self.epipolar_weight = float(epipolar_weight)
        self.idx0 = np.asarray(indices_reprojection0, dtype=np.int64).reshape(-1) if config.use_reprojection else np.zeros(0, np.int64)
        self.idx1 = np.asarray(indices_reprojection1, dtype=np.int64).reshape(-1) if config.use_reprojection else np.zeros(0, np.int64)
        self.idx_ep = np.asarray(indices_epipolar, dtype=np.int64).reshape(-1) if config.use_epipolar else np.zeros(0, np.int64)
        if self.epipolar_weight <= 0.0:
            self.idx_ep = np.zeros(0, np.int64)

        self.reprojection_loss = RobustLoss(config.reprojection_loss)
        self.epipolar_loss = RobustLoss(config.epipolar_loss)

        self.state = RefinerState.CREATED
        self.summary = RefinementSummary()
        self._slices: dict[str, slice] = {}
        self._x0 = np.zeros(0)
        self._lb = np.zeros(0)
        self._ub = np.zeros(0)
        self._x = None
        self._q0 = rotation_matrix_to_quaternion(model.R)

    def _require(self, state: RefinerState, op: str) -> None:
        if self.state is not state:
            raise RuntimeError(f"{op}() called in state {self.state.value}, expected {state.value}")

    @property
    def num_residual_blocks(self) -> int:
        return int(self.idx0.size + self.idx1.size + self.idx_ep.size)

    def set_up(self) -> None:
        self._require(RefinerState.CREATED, "set_up")
        m = self.model
        cfg = self.config
        eps = cfg.bound_epsilon
        inf = np.inf

        used = set()
        pose = [] if cfg.constant_pose else ["rotation", "translation"]
        focal = []
        if m.variant is ModelVariant.SHARED_FOCAL:
            focal = ["focal0"]
        elif m.variant is ModelVariant.TWO_FOCAL:
            focal = ["focal0", "focal1"]
        if self.idx0.size:
            used.update(["offset0", *pose, *focal])
        if self.idx1.size:
            used.update(["scale", "offset1", *pose, *focal])
        if self.idx_ep.size:
            used.update([*pose, *focal])

        layout = [
            ("rotation", np.zeros(3), -inf, inf),
            ("translation", m.t, -inf, inf),
            ("scale", [m.scale], eps, inf),
            ("offset0", [m.offset0], -float(self.data.min_depth[0]) + eps, inf),
            ("offset1", [m.offset1], -float(self.data.min_depth[1]) + eps, inf),
            ("focal0", [m.focal0], eps, inf),
            ("focal1", [m.focal1], eps, inf),
        ]
        x0, lb, ub = [], [], []
        start = 0
        for name, value, lo, hi in layout:
            if name not in used:
                continue
            value = np.asarray(value, dtype=np.float64).reshape(-1)
            self._slices[name] = slice(start, start + value.size)
            start += value.size
            x0.append(value)
            lb.append(np.full(value.size, lo))
            ub.append(np.full(value.size, hi))

        if x0:
            self._lb = np.concatenate(lb)
            self._ub = np.concatenate(ub)
            self._x0 = np.clip(np.concatenate(x0), self._lb, self._ub)
        self.state = RefinerState.PROBLEM_ASSEMBLED
        logger.debug(
            f"refiner problem: {self._x0.size} parameters, blocks "
            f"reproj0={self.idx0.size} reproj1={self.idx1.size} epipolar={self.idx_ep.size}"
        )

    def _value(self, x: np.ndarray, name: str, default: float) -> float:
        sl = self._slices.get(name)
        return default if sl is None else float(x[sl][0])

    def _unpack(self, x: np.ndarray):
        m = self.model
        if "rotation" in self._slices:
            R = rotation_from_tangent(self._q0, x[self._slices["rotation"]])
            t = x[self._slices["translation"]]
        else:
            R, t = m.R, m.t
        scale = self._value(x, "scale", m.scale)
        o0 = self._value(x, "offset0", m.offset0)
        o1 = self._value(x, "offset1", m.offset1)
        f0 = self._value(x, "focal0", m.focal0)
        f1 = f0 if m.variant is ModelVariant.SHARED_FOCAL else self._value(x, "focal1", m.focal1)
        return R, t, scale, o0, o1, f0, f1

    def _residuals(self, x: np.ndarray) -> np.ndarray:
        d = self.data
        R, t, scale, o0, o1, f0, f1 = self._unpack(x)
        out = []
        if self.idx0.size:
            i = self.idx0
            X1 = lift(d.x0[i], d.depth0[i], o0, f0) @ R.T + t
            uv, _ = project(X1, f1)
            out.append(self.reprojection_loss.apply(uv - d.x1[i, :2], d.weights[i]))
        if self.idx1.size:
            i = self.idx1
            X0 = (lift(d.x1[i], d.depth1[i], o1, f1, scale) - t) @ R
            uv, _ = project(X0, f0)
            out.append(self.reprojection_loss.apply(uv - d.x0[i, :2], d.weights[i]))
        if self.idx_ep.size:
            i = self.idx_ep
            F = fundamental_from_pose(R, t, f0, f1)
            C, denom = sampson_terms(F, d.x0[i], d.x1[i])
            r = C / np.sqrt(np.maximum(denom, 1e-300))
            out.append(self.epipolar_loss.apply(r[:, None], self.epipolar_weight * d.weights[i]))
        return np.concatenate(out)

    def solve(self) -> bool:
        """
        Run the bounded solve.

        Returns:
            False when the problem has no residual blocks or no free
            parameters (nothing to refine); True otherwise, including when
            the iteration budget ran out (see summary.converged).
        """
        self._require(RefinerState.PROBLEM_ASSEMBLED, "solve")
        if self.num_residual_blocks == 0 or self._x0.size == 0:
            self.summary = RefinementSummary(performed=False, message="empty problem")
            self._x = self._x0
            self.state = RefinerState.SOLVED
            return False

        cfg = self.config
        r0 = self._residuals(self._x0)
        result = least_squares(
            self._residuals,
            self._x0,
            jac="2-point",
            bounds=(self._lb, self._ub),
            method="trf",
            tr_solver="exact",
            x_scale="jac",
            ftol=cfg.function_tolerance,
            xtol=cfg.parameter_tolerance,
            gtol=cfg.gradient_tolerance,
            max_nfev=cfg.max_num_iterations,
        )
        self._x = result.x
        self.summary = RefinementSummary(
            performed=True,
            initial_cost=0.5 * float(r0 @ r0),
            final_cost=float(result.cost),
            num_function_evaluations=int(result.nfev),
            status=int(result.status),
            message=str(result.message),
            converged=bool(result.status > 0),
        )
        self.state = RefinerState.SOLVED
        logger.debug(
            f"refiner: cost {self.summary.initial_cost:.6g} -> {self.summary.final_cost:.6g} "
            f"({self.summary.num_function_evaluations} evals, status {self.summary.status})"
        )
        return True

    def get_solution(self) -> PoseScaleOffset:
        self._require(RefinerState.SOLVED, "get_solution")
        self.state = RefinerState.SOLUTION_EXTRACTED
        if not self.summary.performed:
            return self.model
        R, t, scale, o0, o1, f0, f1 = self._unpack(self._x)
        return self.model.replace(
            R=R, t=np.array(t), scale=scale, offset0=o0, offset1=o1
        ).with_focal(f0, f1)


def refine_model(
    data: CorrespondenceSet,
    model: PoseScaleOffset,
    *,
    indices_reprojection0: np.ndarray,
    indices_reprojection1: np.ndarray,
    indices_epipolar: np.ndarray,
    config: RefinerConfig,
    epipolar_weight: float = 1.0,
) -> tuple[PoseScaleOffset, RefinementSummary]:
    """Build a fresh refiner, run it once and return (model, summary)."""
    refiner = NonlinearRefiner(
        data,
        model,
        indices_reprojection0=indices_reprojection0,
        indices_reprojection1=indices_reprojection1,
        indices_epipolar=indices_epipolar,
        config=config,
        epipolar_weight=epipolar_weight,
    )
    refiner.set_up()
    refiner.solve()
    return refiner.get_solution(), refiner.summary
