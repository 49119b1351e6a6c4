# src/hybridpose/system/ransac.py
"""
Hybrid LO-MSAC over several data-type pools.

Each iteration picks one minimal solver, draws its sample (a per-pool number
of indices, without replacement within a pool), and scores every candidate on
all pools with a truncated quadratic cost. Improvements of the best model
trigger local optimization through the non-minimal solver.
"""
from __future__ import annotations

import logging
import math
from typing import Optional, Protocol, Sequence, TypeVar

import numpy as np

from .config import RansacOptions
from .telemetry import HybridRansacStatistics, Telemetry

logger = logging.getLogger(__name__)

M = TypeVar("M")


class HybridSolver(Protocol[M]):
    """Interface a problem must implement to be usable by HybridLOMSAC."""

    def num_minimal_solvers(self) -> int: ...

    def min_sample_sizes(self) -> list[list[int]]:
        """Per solver, the number of indices drawn from each pool."""
        ...

    def num_data_types(self) -> int: ...

    def num_data(self) -> list[int]: ...

    def solver_probabilities(self) -> list[float]: ...

    def non_minimal_sample_size(self) -> int: ...

    def minimal_solver(self, sample: Sequence[np.ndarray], solver_idx: int) -> list[M]:
        """All candidate models for a sample; [] if degenerate."""
        ...

    def non_minimal_solver(self, sample: Sequence[np.ndarray], solver_idx: int, warm_start: Optional[M] = None) -> Optional[M]: ...

    def least_squares(self, sample: Sequence[np.ndarray], solver_idx: int, model: M, *, final: bool = False) -> Optional[M]: ...

    def residuals(self, model: M, t: int) -> np.ndarray:
        """Squared residuals of all points of pool t."""
        ...

    def weights(self, t: int) -> np.ndarray:
        """Per-point score weights of pool t."""
        ...

class _Hypothesis:
    __slots__ = ("model", "score", "inliers", "solver_idx")

    def __init__(self, model: M, score: float, inliers: list[np.ndarray], solver_idx: int):
        self.model = model
        self.score = score
        self.inliers = inliers
        self.solver_idx = solver_idx


class HybridLOMSAC:
    def __init__(self, options: RansacOptions, telemetry: Telemetry | None = None):
        self.options = options
        self.telemetry = telemetry

    def _score(self, solver: HybridSolver, model, thresholds, weights) -> tuple[float, list[np.ndarray]]:
        score = 0.0
        inliers = []
        for t, (thr, w) in enumerate(zip(thresholds, weights)):
            r = solver.residuals(model, t)
            score += w * float(np.sum(solver.weights(t) * np.minimum(r, thr)))
            inliers.append(np.flatnonzero(r <= thr))
        return score, inliers

    def _sample_sizes(self, solver: HybridSolver) -> list[list[int]]:
        declared = solver.min_sample_sizes()
        override = self.options.min_sample_sizes
        if override is None:
            return declared
        if len(override) != len(declared) or any(len(a) != len(b) for a, b in zip(override, declared)):
            raise ValueError(f"min_sample_sizes must have shape {[len(r) for r in declared]} per solver")
        for row, base in zip(override, declared):
            if any(int(a) < b for a, b in zip(row, base)):
                raise ValueError(f"min_sample_sizes {override} below the solver minimum {declared}")
        return [[int(v) for v in row] for row in override]

    @staticmethod
    def _all_inlier_probability(sizes: list[int], ratios: list[float]) -> float:
        p = 1.0
        for m, eps in zip(sizes, ratios):
            if m:
                p *= eps ** m
        return p

    def _choose_solver(self, rng, priors, sizes, ratios, feasible, have_model) -> int:
        p = np.array([priors[s] if feasible[s] else 0.0 for s in range(len(priors))])
        if have_model:
            q = p * np.array([self._all_inlier_probability(sizes[s], ratios) for s in range(len(priors))])
            if q.sum() > 0.0:
                p = q
        return int(rng.choice(len(p), p=p / p.sum()))

    def _required_iterations(self, sizes, ratios, feasible) -> int:
        opts = self.options
        p = max(self._all_inlier_probability(sizes[s], ratios) for s in range(len(sizes)) if feasible[s])
        if p >= 1.0 - 1e-12:
            return opts.min_num_iterations
        if p <= 0.0:
            return opts.max_num_iterations
        n = math.log1p(-opts.success_probability) / math.log1p(-p)
        return int(min(opts.max_num_iterations, math.ceil(n)))

    def _local_optimization(self, solver: HybridSolver, best: _Hypothesis, rng, thresholds, weights) -> _Hypothesis:
        cap = solver.non_minimal_sample_size()

        refit = solver.least_squares(best.inliers, best.solver_idx, best.model)
        if refit is not None:
            score, inliers = self._score(solver, refit, thresholds, weights)
            if score < best.score:
                best = _Hypothesis(refit, score, inliers, best.solver_idx)

        for _ in range(self.options.num_lo_steps):
            subset = [
                rng.choice(idx, size=min(cap, idx.size), replace=False) if idx.size else idx
                for idx in best.inliers
            ]
            cand = solver.non_minimal_solver(subset, best.solver_idx, best.model)
            if cand is None:
                continue
            score, inliers = self._score(solver, cand, thresholds, weights)
            refit = solver.least_squares(inliers, best.solver_idx, cand)
            if refit is not None:
                score_ls, inliers_ls = self._score(solver, refit, thresholds, weights)
                if score_ls < score:
                    cand, score, inliers = refit, score_ls, inliers_ls
            if score < best.score:
                best = _Hypothesis(cand, score, inliers, best.solver_idx)
        return best

    def estimate_model(self, solver: HybridSolver, data_type_weights: Sequence[float] | None = None):
        """
        Run hybrid LO-MSAC.

        Args:
            solver: problem implementing HybridSolver.
            data_type_weights: per-pool weights of the score; overrides
                options.data_type_weights, defaults to all ones.

        Returns:
            (best_model or None, HybridRansacStatistics).
        """
        opts = self.options
        num_types = solver.num_data_types()
        num_data = solver.num_data()
        num_solvers = solver.num_minimal_solvers()
        sizes = self._sample_sizes(solver)
        priors = solver.solver_probabilities()

        thresholds = list(opts.squared_inlier_thresholds)
        if len(thresholds) != num_types:
            raise ValueError(f"expected {num_types} squared_inlier_thresholds, got {len(thresholds)}")
        if data_type_weights is None:
            data_type_weights = opts.data_type_weights or [1.0] * num_types
        weights = [float(w) for w in data_type_weights]

        stats = HybridRansacStatistics(
            num_minimal_solver_calls=[0] * num_solvers,
            num_data=list(num_data),
            best_num_inliers=[0] * num_types,
            inlier_ratios=[0.0] * num_types,
            inlier_indices=[np.zeros(0, np.int64) for _ in range(num_types)],
        )

        feasible = [
            priors[s] > 0.0 and all(sizes[s][t] <= num_data[t] for t in range(num_types)) and sum(sizes[s]) > 0
            for s in range(num_solvers)
        ]
        if not any(feasible):
            logger.info(f"no minimal solver can draw a sample from pools of size {num_data}")
            return None, stats

        rng = np.random.default_rng(opts.random_seed)
        best: _Hypothesis | None = None
        ratios = [0.0] * num_types
        lo_pending = False
        it = 0

        while it < opts.max_num_iterations:
            it += 1
            s = self._choose_solver(rng, priors, sizes, ratios, feasible, best is not None)
            sample = [
                rng.choice(num_data[t], size=sizes[s][t], replace=False) if sizes[s][t] else np.zeros(0, np.int64)
                for t in range(num_types)
            ]
            stats.num_minimal_solver_calls[s] += 1

            for model in solver.minimal_solver(sample, s):
                score, inliers = self._score(solver, model, thresholds, weights)
                if best is None or score < best.score:
                    best = _Hypothesis(model, score, inliers, s)
                    lo_pending = True
                    self._log(it, "best", best)

            if lo_pending and opts.lo_frequency > 0 and it % opts.lo_frequency == 0:
                best = self._local_optimization(solver, best, rng, thresholds, weights)
                stats.num_lo_runs += 1
                lo_pending = False
                self._log(it, "lo", best)

            if best is not None:
                ratios = [best.inliers[t].size / max(1, num_data[t]) for t in range(num_types)]
                required = self._required_iterations(sizes, ratios, feasible)
                if it >= opts.min_num_iterations and it >= required:
                    break

        stats.num_iterations = it
        if best is None:
            logger.info(f"no model found after {it} iterations")
            return None, stats

        if lo_pending and opts.lo_frequency > 0:
            best = self._local_optimization(solver, best, rng, thresholds, weights)
            stats.num_lo_runs += 1

        if opts.final_least_squares:
            refit = solver.least_squares(best.inliers, best.solver_idx, best.model, final=True)
            if refit is not None:
                score, inliers = self._score(solver, refit, thresholds, weights)
                if score <= best.score:
                    best = _Hypothesis(refit, score, inliers, best.solver_idx)
                    self._log(it, "final_least_squares", best)

        stats.best_model_score = best.score
        stats.best_solver_type = best.solver_idx
        stats.inlier_indices = best.inliers
        stats.best_num_inliers = [int(idx.size) for idx in best.inliers]
        stats.inlier_ratios = [idx.size / max(1, num_data[t]) for t, idx in enumerate(best.inliers)]
        logger.info(
            f"hybrid LO-MSAC: {it} iterations, inliers {stats.best_num_inliers} of {num_data}, "
            f"solver {best.solver_idx}, score {best.score:.6g}"
        )
        return best.model, stats

    def _log(self, iteration: int, event: str, hyp: _Hypothesis) -> None:
        logger.debug(f"iter {iteration}: {event} score={hyp.score:.6g} inliers={[int(i.size) for i in hyp.inliers]}")
        if self.telemetry is not None:
            self.telemetry.log_event(iteration, {
                "event": event,
                "solver": int(hyp.solver_idx),
                "score": float(hyp.score),
                "num_inliers": [int(i.size) for i in hyp.inliers],
            })
