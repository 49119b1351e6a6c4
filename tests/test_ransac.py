import numpy as np
import pytest

from hybridpose.system.config import EstimatorConfig, RansacOptions
from hybridpose.system.correspondences import CorrespondenceSet
from hybridpose.system.estimator import DEPTH_SOLVER, EPIPOLAR_SOLVER, HybridPoseEstimator
from hybridpose.system.model import ModelVariant
from hybridpose.system.ransac import HybridLOMSAC


def _estimator(scene, **cfg):
    return HybridPoseEstimator(scene.data, scene.model.variant, EstimatorConfig(**cfg))


def test_sample_sizes_per_layout(shared_scene):
    assert _estimator(shared_scene).min_sample_sizes() == [[4, 0], [0, 7]]
    assert _estimator(shared_scene, pool_layout="three_pool").min_sample_sizes() == [[4, 4, 0], [0, 0, 7]]


def test_sample_sizes_for_calibrated_cameras(make_scene):
    scene = make_scene(variant=ModelVariant.SCALE_ONLY)
    assert _estimator(scene).min_sample_sizes() == [[3, 0], [0, 7]]


def test_default_weights_use_epipolar_weight(shared_scene):
    assert _estimator(shared_scene, epipolar_weight=0.25).default_data_type_weights() == [1.0, 0.25]


def test_minimal_solver_dispatch_and_mixed_samples(shared_scene):
    estimator = _estimator(shared_scene)
    depth = [np.arange(4), np.zeros(0, np.int64)]
    epi = [np.zeros(0, np.int64), np.arange(10, 17)]
    mixed = [np.arange(4), np.arange(10, 17)]
    n_depth = len(estimator.minimal_solver(depth, DEPTH_SOLVER))
    n_epi = len(estimator.minimal_solver(epi, EPIPOLAR_SOLVER))
    assert n_depth > 0 and n_epi > 0
    assert len(estimator.minimal_solver(mixed, DEPTH_SOLVER)) == n_depth + n_epi


def test_evaluate_model_on_point(shared_scene):
    estimator = _estimator(shared_scene)
    assert estimator.evaluate_model_on_point(shared_scene.model, 0, 3) < 1e-20
    assert estimator.evaluate_model_on_point(shared_scene.model, 1, 3) < 1e-20


def test_all_inlier_data_finds_every_point(shared_scene):
    estimator = _estimator(shared_scene)
    options = RansacOptions(squared_inlier_thresholds=[1e-6, 1e-6], min_num_iterations=5, max_num_iterations=50)
    model, stats = HybridLOMSAC(options).estimate_model(estimator)
    assert model is not None
    assert stats.best_num_inliers == [len(shared_scene.data)] * 2
    assert stats.num_lo_runs >= 1
    assert sum(stats.num_minimal_solver_calls) == stats.num_iterations
    assert stats.best_solver_type in (DEPTH_SOLVER, EPIPOLAR_SOLVER)


def test_lo_frequency_zero_disables_local_optimization(shared_scene):
    estimator = _estimator(shared_scene)
    options = RansacOptions(squared_inlier_thresholds=[1e-6, 1e-6], min_num_iterations=5, max_num_iterations=20,
                            lo_frequency=0, final_least_squares=False)
    _, stats = HybridLOMSAC(options).estimate_model(estimator)
    assert stats.num_lo_runs == 0


def test_sample_size_override_below_minimum_is_rejected(shared_scene):
    options = RansacOptions(squared_inlier_thresholds=[1.0, 1.0], min_sample_sizes=[[3, 0], [0, 7]])
    with pytest.raises(ValueError):
        HybridLOMSAC(options).estimate_model(_estimator(shared_scene))


def test_larger_sample_size_override_is_used(shared_scene):
    options = RansacOptions(squared_inlier_thresholds=[1e-6, 1e-6], min_sample_sizes=[[6, 0], [0, 9]],
                            min_num_iterations=5, max_num_iterations=20)
    model, stats = HybridLOMSAC(options).estimate_model(_estimator(shared_scene))
    assert model is not None
    assert stats.best_num_inliers[0] == len(shared_scene.data)


def test_zero_weight_points_do_not_change_the_score(make_scene):
    scene = make_scene(n=40, outlier_ratio=0.5, seed=3)
    keep = scene.inlier
    model = scene.model.replace(offset0=scene.model.offset0 + 0.05)
    thresholds, weights = [1e-3, 1e-3], [1.0, 0.5]

    def score(data):
        estimator = HybridPoseEstimator(data, scene.model.variant, EstimatorConfig())
        return HybridLOMSAC(RansacOptions(squared_inlier_thresholds=thresholds))._score(
            estimator, model, thresholds, weights)[0]

    args = (scene.p0, scene.p1, scene.d0, scene.d1)
    weighted = CorrespondenceSet.from_arrays(*args, min_depth=scene.min_depth, weights=keep.astype(float))
    unweighted = CorrespondenceSet.from_arrays(*args, min_depth=scene.min_depth)
    subset = CorrespondenceSet.from_arrays(*(a[keep] for a in args), min_depth=scene.min_depth)
    assert score(weighted) == pytest.approx(score(subset), rel=1e-12)
    assert score(unweighted) > score(subset)
