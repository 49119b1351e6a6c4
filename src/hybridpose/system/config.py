# src/hybridpose/system/config.py
"""
Configuration for the hybrid estimator, its refiner and the RANSAC driver.

Every dataclass validates itself on construction; `from_dict` accepts the
nested plain-dict form used by the YAML files of the command line tool.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

LOSS_NAMES = ["trivial", "huber", "soft_l1", "cauchy", "arctan"]
POOL_LAYOUTS = ["two_pool", "three_pool"]


@dataclass
class LossConfig:
    """Robust loss applied to one residual family."""
    name: str = "trivial"
    scale: float = 1.0  # residual magnitude where the loss starts to flatten

    def __post_init__(self) -> None:
        if self.name not in LOSS_NAMES:
            raise ValueError(f"Invalid loss: {self.name}. Must be one of {LOSS_NAMES}")
        if self.scale <= 0:
            raise ValueError("loss scale must be positive")


@dataclass
class RefinerConfig:
    """Configuration for the nonlinear refinement."""
    use_reprojection: bool = True
    use_epipolar: bool = True
    constant_pose: bool = False  # keep R, t fixed; refine scale, offsets, focal only

    reprojection_loss: LossConfig = field(default_factory=LossConfig)
    epipolar_loss: LossConfig = field(default_factory=LossConfig)

    # Solver budget
    max_num_iterations: int = 100
    function_tolerance: float = 1e-6
    gradient_tolerance: float = 1e-10
    parameter_tolerance: float = 1e-8

    # scale >= eps, offset_k >= -min_depth_k + eps, focal >= eps
    bound_epsilon: float = 1e-2

    def __post_init__(self) -> None:
        if isinstance(self.reprojection_loss, dict):
            self.reprojection_loss = LossConfig(**self.reprojection_loss)
        if isinstance(self.epipolar_loss, dict):
            self.epipolar_loss = LossConfig(**self.epipolar_loss)
        if self.max_num_iterations <= 0:
            raise ValueError("max_num_iterations must be positive")
        for name in ("function_tolerance", "gradient_tolerance", "parameter_tolerance"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")
        if self.bound_epsilon < 0:
            raise ValueError("bound_epsilon must be non-negative")


@dataclass
class EstimatorConfig:
    """Configuration of the hybrid pose/scale/offset estimator."""
    pool_layout: str = "two_pool"
    epipolar_weight: float = 1.0  # epipolar vs reprojection balance, in scoring and refinement
    norm_scale: Optional[float] = None  # None: largest centred pixel coordinate
    gradient_cutoff: bool = False  # three_pool only

    # Local optimization
    non_minimal_sample_size: int = 36
    linearization_steps: int = 3
    final_linearization_steps: int = 10

    refiner: RefinerConfig = field(default_factory=RefinerConfig)

    def __post_init__(self) -> None:
        if isinstance(self.refiner, dict):
            self.refiner = RefinerConfig(**self.refiner)
        if self.pool_layout not in POOL_LAYOUTS:
            raise ValueError(f"Invalid pool_layout: {self.pool_layout}. Must be one of {POOL_LAYOUTS}")
        if self.epipolar_weight < 0:
            raise ValueError("epipolar_weight must be non-negative")
        if self.norm_scale is not None and self.norm_scale <= 0:
            raise ValueError("norm_scale must be positive or None")
        if self.non_minimal_sample_size <= 0:
            raise ValueError("non_minimal_sample_size must be positive")
        if self.linearization_steps < 0 or self.final_linearization_steps < 0:
            raise ValueError("linearization steps must be non-negative")
        if self.gradient_cutoff and self.pool_layout != "three_pool":
            logger.warning("gradient_cutoff is only honoured by the three_pool layout; ignored")

    @classmethod
    def from_dict(cls, cfg: Dict[str, Any]) -> "EstimatorConfig":
        return cls(**(cfg or {}))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RansacOptions:
    """Options of the hybrid LO-MSAC driver. Thresholds are squared, one per pool."""
    squared_inlier_thresholds: List[float] = field(default_factory=list)
    data_type_weights: Optional[List[float]] = None  # None: 1 per reprojection pool, epipolar_weight for epipolar
    min_sample_sizes: Optional[List[List[int]]] = None  # None: as declared by the estimator

    min_num_iterations: int = 100
    max_num_iterations: int = 10000
    success_probability: float = 0.9999

    num_lo_steps: int = 10
    lo_frequency: int = 1  # run pending local optimization every N iterations; 0 disables it
    final_least_squares: bool = True

    random_seed: int = 0

    def __post_init__(self) -> None:
        self.squared_inlier_thresholds = [float(v) for v in self.squared_inlier_thresholds]
        if not self.squared_inlier_thresholds:
            raise ValueError("squared_inlier_thresholds must list one threshold per data type")
        if any(v <= 0 for v in self.squared_inlier_thresholds):
            raise ValueError("squared_inlier_thresholds must be positive")
        if self.data_type_weights is not None:
            self.data_type_weights = [float(v) for v in self.data_type_weights]
            if len(self.data_type_weights) != len(self.squared_inlier_thresholds):
                raise ValueError("data_type_weights must match squared_inlier_thresholds in length")
            if any(v < 0 for v in self.data_type_weights):
                raise ValueError("data_type_weights must be non-negative")
        if self.min_num_iterations < 0 or self.max_num_iterations <= 0:
            raise ValueError("iteration bounds must be non-negative (max positive)")
        if self.min_num_iterations > self.max_num_iterations:
            raise ValueError("min_num_iterations must not exceed max_num_iterations")
        if not 0.0 < self.success_probability < 1.0:
            raise ValueError("success_probability must be in (0, 1)")
        if self.num_lo_steps < 0 or self.lo_frequency < 0:
            raise ValueError("num_lo_steps and lo_frequency must be non-negative")

    @classmethod
    def from_dict(cls, cfg: Dict[str, Any]) -> "RansacOptions":
        return cls(**(cfg or {}))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def scaled(self, factor: float) -> "RansacOptions":
        """Copy with squared thresholds divided by factor**2 (pixel to normalized units)."""
        cfg = self.to_dict()
        cfg["squared_inlier_thresholds"] = [v / (factor * factor) for v in self.squared_inlier_thresholds]
        return RansacOptions(**cfg)
