# src/hybridpose/system/runner.py
from __future__ import annotations

import logging

import numpy as np

from .config import EstimatorConfig, RansacOptions
from .correspondences import CorrespondenceSet
from .estimator import HybridPoseEstimator
from .model import ModelVariant, PoseScaleOffset
from .ransac import HybridLOMSAC
from .telemetry import HybridRansacStatistics, Telemetry

logger = logging.getLogger(__name__)


def _run(
    data: CorrespondenceSet,
    variant: ModelVariant,
    options: RansacOptions,
    config: EstimatorConfig,
    telemetry: Telemetry | None,
) -> tuple[PoseScaleOffset | None, HybridRansacStatistics]:
    """
    Robust estimation followed by one refinement of the best model.

    Responsibilities:
      1) build the estimator for the configured pool layout
      2) run hybrid LO-MSAC
      3) refine on the final inlier sets and recount inliers
    """
    estimator = HybridPoseEstimator(data, variant, config)
    weights = options.data_type_weights or estimator.default_data_type_weights()
    best, stats = HybridLOMSAC(options, telemetry).estimate_model(estimator, weights)
    if best is None:
        return None, stats

    model, summary = estimator.refine(best, stats.inlier_indices)
    stats.refinement = summary
    if summary.performed:
        thresholds = options.squared_inlier_thresholds
        stats.inlier_indices = [
            np.flatnonzero(estimator.residuals(model, t) <= thresholds[t]) for t in range(estimator.num_data_types())
        ]
        stats.best_num_inliers = [int(idx.size) for idx in stats.inlier_indices]
        stats.inlier_ratios = [idx.size / max(1, n) for idx, n in zip(stats.inlier_indices, stats.num_data)]
        if telemetry is not None:
            telemetry.log_event(stats.num_iterations, {
                "event": "refine",
                "initial_cost": summary.initial_cost,
                "final_cost": summary.final_cost,
                "converged": summary.converged,
                "num_inliers": stats.best_num_inliers,
            })
    return model, stats


def _centred(x: np.ndarray, pp: np.ndarray) -> np.ndarray:
    return np.asarray(x, dtype=np.float64)[:, :2] - np.asarray(pp, dtype=np.float64).reshape(1, 2)


def _estimate_with_focal(
    variant: ModelVariant,
    x0, x1, depth0, depth1, min_depth, pp0, pp1,
    options: RansacOptions,
    config: EstimatorConfig | None,
    weights,
    telemetry: Telemetry | None,
) -> tuple[PoseScaleOffset, HybridRansacStatistics]:
    config = config if config is not None else EstimatorConfig()
    c0 = _centred(x0, pp0)
    c1 = _centred(x1, pp1)

    norm_scale = config.norm_scale
    if norm_scale is None:
        norm_scale = float(max(np.abs(c0).max(initial=0.0), np.abs(c1).max(initial=0.0)))
        if norm_scale <= 0.0:
            norm_scale = 1.0
    logger.info(f"{variant.value}: {c0.shape[0]} correspondences, norm_scale={norm_scale:.3f}")

    data = CorrespondenceSet.from_arrays(
        c0 / norm_scale, c1 / norm_scale, depth0, depth1, min_depth=min_depth, weights=weights
    )
    model, stats = _run(data, variant, options.scaled(norm_scale), config, telemetry)
    if model is None:
        return PoseScaleOffset.identity(variant), stats
    return model.with_focal(model.focal0 * norm_scale, model.focal1 * norm_scale), stats


def estimate_pose_scale_offset_shared_focal(
    x0: np.ndarray,
    x1: np.ndarray,
    depth0: np.ndarray,
    depth1: np.ndarray,
    min_depth: np.ndarray,
    pp0: np.ndarray,
    pp1: np.ndarray,
    options: RansacOptions,
    config: EstimatorConfig | None = None,
    weights: np.ndarray | None = None,
    telemetry: Telemetry | None = None,
) -> tuple[PoseScaleOffset, HybridRansacStatistics]:
    """
    Relative pose, depth scale/offsets and one focal length shared by both images.

    Args:
        x0, x1: (N,2) pixel coordinates.
        depth0, depth1: (N,) depth estimates.
        min_depth: (2,) smallest admissible depth per image.
        pp0, pp1: (2,) principal points.
        options: RANSAC options; thresholds are squared pixels.
        config: estimator configuration.
        weights: optional (N,) per-point confidences.
        telemetry: optional event log.

    Returns:
        (model with focal in pixels, statistics). The identity model with
        zero-inlier statistics when nothing was found.
    """
    return _estimate_with_focal(
        ModelVariant.SHARED_FOCAL, x0, x1, depth0, depth1, min_depth, pp0, pp1,
        options, config, weights, telemetry,
    )


def estimate_pose_scale_offset_two_focal(
    x0: np.ndarray,
    x1: np.ndarray,
    depth0: np.ndarray,
    depth1: np.ndarray,
    min_depth: np.ndarray,
    pp0: np.ndarray,
    pp1: np.ndarray,
    options: RansacOptions,
    config: EstimatorConfig | None = None,
    weights: np.ndarray | None = None,
    telemetry: Telemetry | None = None,
) -> tuple[PoseScaleOffset, HybridRansacStatistics]:
    """As estimate_pose_scale_offset_shared_focal, with one focal length per image."""
    return _estimate_with_focal(
        ModelVariant.TWO_FOCAL, x0, x1, depth0, depth1, min_depth, pp0, pp1,
        options, config, weights, telemetry,
    )


def estimate_pose_scale_offset(
    x0: np.ndarray,
    x1: np.ndarray,
    depth0: np.ndarray,
    depth1: np.ndarray,
    min_depth: np.ndarray,
    K0: np.ndarray,
    K1: np.ndarray,
    options: RansacOptions,
    config: EstimatorConfig | None = None,
    weights: np.ndarray | None = None,
    telemetry: Telemetry | None = None,
) -> tuple[PoseScaleOffset, HybridRansacStatistics]:
    """
    Calibrated variant: pose and depth scale/offsets with known intrinsics.

    Pixels are mapped through K^-1; squared pixel thresholds are divided by
    the squared mean focal length of the two cameras.
    """
    config = config if config is not None else EstimatorConfig()
    K0 = np.asarray(K0, dtype=np.float64)
    K1 = np.asarray(K1, dtype=np.float64)

    def _calibrate(x, K):
        xh = np.column_stack([np.asarray(x, dtype=np.float64)[:, :2], np.ones(len(x))])
        y = xh @ np.linalg.inv(K).T
        return y[:, :2] / y[:, 2:3]

    focal = 0.25 * (K0[0, 0] + K0[1, 1] + K1[0, 0] + K1[1, 1])
    data = CorrespondenceSet.from_arrays(
        _calibrate(x0, K0), _calibrate(x1, K1), depth0, depth1, min_depth=min_depth, weights=weights
    )
    logger.info(f"{ModelVariant.SCALE_ONLY.value}: {len(data)} correspondences, mean focal={focal:.3f}")
    model, stats = _run(data, ModelVariant.SCALE_ONLY, options.scaled(focal), config, telemetry)
    if model is None:
        return PoseScaleOffset.identity(ModelVariant.SCALE_ONLY), stats
    return model, stats
