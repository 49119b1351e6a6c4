# src/hybridpose/system/telemetry.py
from __future__ import annotations

from dataclasses import asdict, dataclass, field

import numpy as np

from ..modules.refine import RefinementSummary


@dataclass
class HybridRansacStatistics:
    num_iterations: int = 0
    best_model_score: float = float("inf")
    best_solver_type: int = -1
    num_lo_runs: int = 0
    num_minimal_solver_calls: list[int] = field(default_factory=list)
    num_data: list[int] = field(default_factory=list)             # per data type
    best_num_inliers: list[int] = field(default_factory=list)     # per data type
    inlier_ratios: list[float] = field(default_factory=list)      # per data type
    inlier_indices: list[np.ndarray] = field(default_factory=list)
    refinement: RefinementSummary = field(default_factory=RefinementSummary)

    @property
    def inlier_ratio(self) -> float:
        """Inlier ratio over all pools combined."""
        total = sum(self.num_data)
        return float(sum(self.best_num_inliers)) / float(total) if total else 0.0

    def to_dict(self) -> dict:
        return {
            "num_iterations": int(self.num_iterations),
            "best_model_score": float(self.best_model_score),
            "best_solver_type": int(self.best_solver_type),
            "num_lo_runs": int(self.num_lo_runs),
            "num_minimal_solver_calls": [int(v) for v in self.num_minimal_solver_calls],
            "num_data": [int(v) for v in self.num_data],
            "best_num_inliers": [int(v) for v in self.best_num_inliers],
            "inlier_ratios": [float(v) for v in self.inlier_ratios],
            "refinement": asdict(self.refinement),
        }


class Telemetry:
    def __init__(self):
        self.events = []

    def log_event(self, iteration: int, rec: dict):
        rec["iteration"] = iteration
        self.events.append(rec)
