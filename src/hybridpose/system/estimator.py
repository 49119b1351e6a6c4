# src/hybridpose/system/estimator.py
from __future__ import annotations

import logging

import numpy as np

from ..modules.evaluate import ModelEvaluator
from ..modules.least_squares import fit_pose_scale_offset
from ..modules.minimal import EPIPOLAR_SAMPLE_SIZE, depth_sample_size, solve_depth_anchored, solve_epipolar
from ..modules.refine import RefinementSummary, refine_model
from .config import EstimatorConfig
from .correspondences import CorrespondenceSet
from .model import DataType, ModelVariant, PoseScaleOffset

logger = logging.getLogger(__name__)

# data-type pools per layout; pool index t of a sample refers to POOL_LAYOUTS[layout][t]
POOL_LAYOUTS = {
    "two_pool": (DataType.REPROJECTION, DataType.EPIPOLAR),
    "three_pool": (DataType.REPROJECTION_0, DataType.REPROJECTION_1, DataType.EPIPOLAR),
}

DEPTH_SOLVER = 0
EPIPOLAR_SOLVER = 1


class HybridPoseEstimator:
    """
    Solver interface consumed by the hybrid RANSAC driver.

    Minimal solver 0 draws depth-anchored samples (3 points for calibrated
    cameras, 4 with unknown focal length), solver 1 draws 7 epipolar samples.
    In the three-pool layout only the first reprojection pool feeds the
    depth-anchored solver; the second pool still counts towards scoring.
    """

    def __init__(
        self,
        data: CorrespondenceSet,
        variant: ModelVariant = ModelVariant.SHARED_FOCAL,
        config: EstimatorConfig | None = None,
    ):
        self.data = data
        self.variant = ModelVariant(variant)
        self.config = config if config is not None else EstimatorConfig()
        self.pools = POOL_LAYOUTS[self.config.pool_layout]
        # the cutoff is a three-pool behaviour only
        self.evaluator = ModelEvaluator(
            data, gradient_cutoff=self.config.gradient_cutoff and self.config.pool_layout == "three_pool"
        )

        k = depth_sample_size(self.variant)
        self._sample_sizes = [
            [k if t.is_depth_anchored else 0 for t in self.pools],
            [EPIPOLAR_SAMPLE_SIZE if t is DataType.EPIPOLAR else 0 for t in self.pools],
        ]
        self._solvers = {
            DEPTH_SOLVER: self._solve_depth_anchored,
            EPIPOLAR_SOLVER: self._solve_epipolar,
        }
        self._depth_pool = next(i for i, t in enumerate(self.pools) if t.is_depth_anchored)
        self._epipolar_pool = self.pools.index(DataType.EPIPOLAR)

    # --- driver queries

    def num_minimal_solvers(self) -> int:
        return len(self._sample_sizes)

    def min_sample_sizes(self) -> list[list[int]]:
        return [list(row) for row in self._sample_sizes]

    def num_data_types(self) -> int:
        return len(self.pools)

    def num_data(self) -> list[int]:
        return [len(self.data)] * len(self.pools)

    def solver_probabilities(self) -> list[float]:
        return [1.0] * self.num_minimal_solvers()

    def non_minimal_sample_size(self) -> int:
        return self.config.non_minimal_sample_size

    def weights(self, t: int) -> np.ndarray:
        # every pool spans all correspondences
        return self.data.weights

    def default_data_type_weights(self) -> list[float]:
        return [self.config.epipolar_weight if t is DataType.EPIPOLAR else 1.0 for t in self.pools]

    # --- solvers

    def _reduce(self, sample) -> tuple[np.ndarray, np.ndarray]:
        # pools after the first depth-anchored one do not feed the minimal solver
        depth = np.asarray(sample[self._depth_pool], dtype=np.int64)
        epi = np.asarray(sample[self._epipolar_pool], dtype=np.int64)
        return depth, epi

    def _solve_depth_anchored(self, idx: np.ndarray) -> list[PoseScaleOffset]:
        d = self.data
        return solve_depth_anchored(d.x0[idx], d.x1[idx], d.depth0[idx], d.depth1[idx], self.variant)

    def _solve_epipolar(self, idx: np.ndarray) -> list[PoseScaleOffset]:
        d = self.data
        return solve_epipolar(d.x0[idx], d.x1[idx], d.depth0[idx], d.depth1[idx], d.weights[idx], self.variant)

    def minimal_solver(self, sample, solver_idx: int) -> list[PoseScaleOffset]:
        """
        Candidate models from one sample (one index array per pool).

        Mixed samples run both strategies. Candidates violating the model
        invariants are dropped here, before any scoring.
        """
        depth, epi = self._reduce(sample)
        parts = {DEPTH_SOLVER: depth, EPIPOLAR_SOLVER: epi}
        models = self._solvers[solver_idx](parts[solver_idx])
        other = EPIPOLAR_SOLVER if solver_idx == DEPTH_SOLVER else DEPTH_SOLVER
        if parts[other].size:
            models = models + self._solvers[other](parts[other])
        return [m for m in models if m.is_valid(self.data.min_depth)]

    def _split(self, sample) -> tuple[np.ndarray, np.ndarray]:
        depth = [np.asarray(sample[i], dtype=np.int64) for i, t in enumerate(self.pools) if t.is_depth_anchored]
        depth = np.unique(np.concatenate(depth)) if depth else np.zeros(0, np.int64)
        return depth, np.asarray(sample[self._epipolar_pool], dtype=np.int64)

    def _fit(self, depth: np.ndarray, epi: np.ndarray, model: PoseScaleOffset, *, final: bool) -> PoseScaleOffset | None:
        d = self.data
        cfg = self.config
        epipolar = (d.x0[epi], d.x1[epi], d.weights[epi]) if final and epi.size else None
        return fit_pose_scale_offset(
            d.x0[depth], d.x1[depth], d.depth0[depth], d.depth1[depth], d.weights[depth],
            model,
            d.min_depth,
            rounds=cfg.final_linearization_steps if final else cfg.linearization_steps,
            epipolar=epipolar,
            epipolar_weight=cfg.epipolar_weight,
        )

    def non_minimal_solver(self, sample, solver_idx: int, warm_start: PoseScaleOffset | None = None) -> PoseScaleOffset | None:
        """
        Fit to a sample larger than minimal.

        Without a warm start, one is taken from the minimal solvers run on the
        leading indices of the sample. None means the caller keeps its model.
        """
        depth, epi = self._split(sample)
        if warm_start is None:
            k = depth_sample_size(self.variant)
            seeds = self._solve_depth_anchored(depth[:k]) if depth.size >= k else []
            if not seeds and epi.size >= EPIPOLAR_SAMPLE_SIZE:
                seeds = self._solve_epipolar(epi[:EPIPOLAR_SAMPLE_SIZE])
            seeds = [m for m in seeds if m.is_valid(self.data.min_depth)]
            if not seeds:
                return None
            warm_start = min(seeds, key=lambda m: self._sample_cost(m, depth, epi))
        return self._fit(depth, epi, warm_start, final=False)

    def least_squares(self, sample, solver_idx: int, model: PoseScaleOffset, *, final: bool = False) -> PoseScaleOffset | None:
        depth, epi = self._split(sample)
        return self._fit(depth, epi, model, final=final)

    def _sample_cost(self, model: PoseScaleOffset, depth: np.ndarray, epi: np.ndarray) -> float:
        cost = 0.0
        for t, idx in ((DataType.REPROJECTION, depth), (DataType.EPIPOLAR, epi)):
            if idx.size:
                r = self.evaluator.residuals(model, t, idx)
                cost += float(np.sum(np.minimum(r, 1e12)))
        return cost

    # --- evaluation

    def evaluate_model_on_point(self, model: PoseScaleOffset, t: int, index: int) -> float:
        return self.evaluator.evaluate(model, self.pools[t], index)

    def residuals(self, model: PoseScaleOffset, t: int) -> np.ndarray:
        return self.evaluator.residuals(model, self.pools[t])

    # --- refinement

    def refine(self, model: PoseScaleOffset, inliers: list[np.ndarray]) -> tuple[PoseScaleOffset, RefinementSummary]:
        """Nonlinear refinement on per-pool inlier indices; keeps the input if the result is invalid."""
        if self.config.pool_layout == "two_pool":
            idx0 = idx1 = inliers[0]
        else:
            idx0, idx1 = inliers[0], inliers[1]
        refined, summary = refine_model(
            self.data,
            model,
            indices_reprojection0=idx0,
            indices_reprojection1=idx1,
            indices_epipolar=inliers[self._epipolar_pool],
            config=self.config.refiner,
            epipolar_weight=self.config.epipolar_weight,
        )
        if summary.performed and not refined.is_valid(self.data.min_depth):
            logger.warning("refined model violates the model invariants; keeping the unrefined model")
            return model, summary
        return refined, summary
