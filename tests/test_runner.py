import numpy as np
import pytest

from hybridpose.geom.rotation import rotation_angle
from hybridpose.system.config import EstimatorConfig, RansacOptions
from hybridpose.system.model import ModelVariant
from hybridpose.system.runner import (
    estimate_pose_scale_offset,
    estimate_pose_scale_offset_shared_focal,
    estimate_pose_scale_offset_two_focal,
)
from hybridpose.system.telemetry import Telemetry

PIXELS = 500.0
PP = np.array([320.0, 240.0])


def _pixels(scene):
    return scene.p0 * PIXELS + PP, scene.p1 * PIXELS + PP


def _options(num_types=2, **kwargs):
    kwargs.setdefault("min_num_iterations", 50)
    kwargs.setdefault("max_num_iterations", 1000)
    return RansacOptions(squared_inlier_thresholds=[4.0] * num_types, **kwargs)


def test_shared_focal_with_outliers(make_scene):
    scene = make_scene(n=80, outlier_ratio=0.25, seed=21)
    x0, x1 = _pixels(scene)
    telemetry = Telemetry()
    model, stats = estimate_pose_scale_offset_shared_focal(
        x0, x1, scene.d0, scene.d1, scene.min_depth, PP, PP, _options(), telemetry=telemetry,
    )
    truth = scene.model
    assert model.variant is ModelVariant.SHARED_FOCAL
    assert model.focal0 == model.focal1
    assert model.focal0 == pytest.approx(truth.focal0 * PIXELS, rel=1e-2)
    assert rotation_angle(model.R, truth.R) < 1e-2
    assert model.scale == pytest.approx(truth.scale, rel=1e-2)
    assert model.is_valid(scene.min_depth)

    n_inliers = int(scene.inlier.sum())
    assert stats.best_num_inliers[0] >= n_inliers
    assert stats.num_iterations >= 50
    assert stats.refinement.performed
    assert stats.refinement.final_cost <= stats.refinement.initial_cost
    assert set(np.flatnonzero(scene.inlier)) <= set(stats.inlier_indices[0].tolist())
    assert telemetry.events
    assert all("iteration" in e for e in telemetry.events)


def test_two_focal_with_outliers(make_scene):
    scene = make_scene(n=80, variant=ModelVariant.TWO_FOCAL, focal0=1.2, focal1=0.9, outlier_ratio=0.2, seed=22)
    x0, x1 = _pixels(scene)
    model, stats = estimate_pose_scale_offset_two_focal(
        x0, x1, scene.d0, scene.d1, scene.min_depth, PP, PP, _options(),
    )
    assert model.variant is ModelVariant.TWO_FOCAL
    assert model.focal0 == pytest.approx(1.2 * PIXELS, rel=2e-2)
    assert model.focal1 == pytest.approx(0.9 * PIXELS, rel=2e-2)
    assert rotation_angle(model.R, scene.model.R) < 2e-2
    assert stats.best_num_inliers[0] >= int(scene.inlier.sum())


def test_calibrated_with_outliers(make_scene):
    scene = make_scene(n=60, variant=ModelVariant.SCALE_ONLY, outlier_ratio=0.3, seed=23)
    x0, x1 = _pixels(scene)
    K = np.array([[PIXELS, 0.0, PP[0]], [0.0, PIXELS, PP[1]], [0.0, 0.0, 1.0]])
    model, stats = estimate_pose_scale_offset(x0, x1, scene.d0, scene.d1, scene.min_depth, K, K, _options())
    assert model.variant is ModelVariant.SCALE_ONLY
    assert model.focal0 == 1.0
    assert rotation_angle(model.R, scene.model.R) < 1e-2
    assert np.allclose(model.t, scene.model.t, atol=1e-2)
    assert model.offset0 == pytest.approx(scene.model.offset0, abs=1e-2)
    assert model.offset1 == pytest.approx(scene.model.offset1, abs=1e-2)
    assert stats.inlier_ratios[0] >= scene.inlier.mean()


def test_three_pool_layout_with_gradient_cutoff(make_scene):
    scene = make_scene(n=60, outlier_ratio=0.2, seed=24)
    x0, x1 = _pixels(scene)
    config = EstimatorConfig(pool_layout="three_pool", gradient_cutoff=True)
    model, stats = estimate_pose_scale_offset_shared_focal(
        x0, x1, scene.d0, scene.d1, scene.min_depth, PP, PP, _options(num_types=3), config=config,
    )
    assert len(stats.best_num_inliers) == 3
    assert len(stats.num_data) == 3
    assert model.focal0 == pytest.approx(scene.model.focal0 * PIXELS, rel=1e-2)
    assert rotation_angle(model.R, scene.model.R) < 1e-2


def test_results_are_reproducible_for_a_seed(make_scene):
    scene = make_scene(n=40, outlier_ratio=0.3, seed=25)
    x0, x1 = _pixels(scene)
    runs = [
        estimate_pose_scale_offset_shared_focal(
            x0, x1, scene.d0, scene.d1, scene.min_depth, PP, PP, _options(random_seed=7),
        )
        for _ in range(2)
    ]
    (m_a, s_a), (m_b, s_b) = runs
    assert np.array_equal(m_a.R, m_b.R)
    assert m_a.focal0 == m_b.focal0
    assert s_a.num_iterations == s_b.num_iterations


def test_threshold_count_must_match_pools(shared_scene):
    x0, x1 = _pixels(shared_scene)
    with pytest.raises(ValueError):
        estimate_pose_scale_offset_shared_focal(
            x0, x1, shared_scene.d0, shared_scene.d1, shared_scene.min_depth, PP, PP, _options(num_types=3),
        )


def test_too_few_correspondences_give_identity(shared_scene):
    x0, x1 = _pixels(shared_scene)
    model, stats = estimate_pose_scale_offset_shared_focal(
        x0[:3], x1[:3], shared_scene.d0[:3], shared_scene.d1[:3], shared_scene.min_depth, PP, PP, _options(),
    )
    assert np.array_equal(model.R, np.eye(3))
    assert np.array_equal(model.t, np.zeros(3))
    assert model.focal0 == 1.0
    assert stats.best_num_inliers == [0, 0]
    assert stats.inlier_ratio == 0.0
    assert not stats.refinement.performed
