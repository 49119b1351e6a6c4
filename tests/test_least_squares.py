import cv2
import numpy as np
import pytest

from hybridpose.geom.rotation import rotation_angle
from hybridpose.modules.least_squares import fit_pose_scale_offset, solve_depth_linear
from hybridpose.system.config import EstimatorConfig
from hybridpose.system.estimator import DEPTH_SOLVER, HybridPoseEstimator
from hybridpose.system.model import ModelVariant


def _fit(scene, warm_start, idx=None, **kwargs):
    d = scene.data
    idx = np.arange(len(d)) if idx is None else idx
    return fit_pose_scale_offset(
        d.x0[idx], d.x1[idx], d.depth0[idx], d.depth1[idx], d.weights[idx],
        warm_start, d.min_depth, **kwargs,
    )


def test_linear_depth_system_is_exact_for_true_rotation(shared_scene):
    d, m = shared_scene.data, shared_scene.model
    t_norm = np.linalg.norm(m.t)
    o0, s, o1, lam = solve_depth_linear(d.x0, d.x1, d.depth0, d.depth1, d.weights, m.R, m.t / t_norm,
                                        m.focal0, m.focal1)
    assert o0 == pytest.approx(m.offset0, abs=1e-9)
    assert s == pytest.approx(m.scale, rel=1e-9)
    assert o1 == pytest.approx(m.offset1, abs=1e-9)
    assert lam == pytest.approx(t_norm, rel=1e-9)


def test_linear_depth_system_rejects_empty_input(shared_scene):
    m = shared_scene.model
    empty = np.zeros((0, 3))
    assert solve_depth_linear(empty, empty, np.zeros(0), np.zeros(0), np.zeros(0), m.R, None, 1.0, 1.0) is None


@pytest.mark.parametrize("variant,f0,f1", [
    (ModelVariant.SCALE_ONLY, 1.0, 1.0),
    (ModelVariant.SHARED_FOCAL, 1.2, 1.2),
    (ModelVariant.TWO_FOCAL, 1.2, 0.9),
])
def test_fit_is_stable_at_the_truth(make_scene, variant, f0, f1):
    scene = make_scene(variant=variant, focal0=f0, focal1=f1)
    fitted = _fit(scene, scene.model, rounds=3)
    assert fitted is not None
    assert rotation_angle(fitted.R, scene.model.R) < 1e-6
    assert np.allclose(fitted.t, scene.model.t, atol=1e-8)
    assert fitted.scale == pytest.approx(scene.model.scale, rel=1e-8)
    assert fitted.focal0 == pytest.approx(f0, rel=1e-8)
    assert fitted.focal1 == pytest.approx(f1, rel=1e-8)


def test_fit_improves_a_perturbed_warm_start(shared_scene):
    truth = shared_scene.model
    dR, _ = cv2.Rodrigues(np.array([0.01, -0.01, 0.005]))
    warm = truth.replace(R=dR @ truth.R, t=truth.t + 0.02, scale=1.5, offset0=0.0, offset1=0.0).with_focal(1.25)
    fitted = _fit(shared_scene, warm, rounds=10)
    assert fitted is not None
    assert rotation_angle(fitted.R, truth.R) < rotation_angle(warm.R, truth.R)
    assert abs(fitted.focal0 - truth.focal0) < abs(warm.focal0 - truth.focal0)
    assert abs(fitted.scale - truth.scale) < abs(warm.scale - truth.scale)


def test_fit_uses_epipolar_rows_when_final(shared_scene):
    d, truth = shared_scene.data, shared_scene.model
    fitted = _fit(shared_scene, truth, rounds=2, epipolar=(d.x0, d.x1, d.weights), epipolar_weight=0.5)
    assert fitted is not None
    assert fitted.focal0 == pytest.approx(truth.focal0, rel=1e-8)


def test_fit_rejects_tiny_or_weightless_samples(shared_scene):
    truth = shared_scene.model
    assert _fit(shared_scene, truth, idx=np.arange(1)) is None
    d = shared_scene.data
    assert fit_pose_scale_offset(d.x0, d.x1, d.depth0, d.depth1, np.zeros(len(d)), truth, d.min_depth) is None


def test_non_minimal_solver_without_warm_start(shared_scene):
    estimator = HybridPoseEstimator(shared_scene.data, ModelVariant.SHARED_FOCAL, EstimatorConfig())
    idx = np.arange(len(shared_scene.data))
    sample = [idx, idx]
    model = estimator.non_minimal_solver(sample, DEPTH_SOLVER)
    assert model is not None
    assert model.is_valid(shared_scene.data.min_depth)
    assert rotation_angle(model.R, shared_scene.model.R) < 1e-6
    assert model.focal0 == pytest.approx(shared_scene.model.focal0, rel=1e-6)


def test_non_minimal_solver_keeps_invariants(make_scene):
    scene = make_scene(outlier_ratio=0.2, seed=11)
    estimator = HybridPoseEstimator(scene.data, ModelVariant.SHARED_FOCAL, EstimatorConfig())
    rng = np.random.default_rng(0)
    for _ in range(5):
        idx = rng.choice(len(scene.data), size=20, replace=False)
        model = estimator.non_minimal_solver([idx, idx], DEPTH_SOLVER, scene.model)
        if model is not None:
            assert model.is_valid(scene.data.min_depth)
            assert model.scale > 0.0 and model.focal0 > 0.0
