import numpy as np
import pytest

from hybridpose.modules.evaluate import ModelEvaluator, lift, project
from hybridpose.system.correspondences import CorrespondenceSet
from hybridpose.system.model import DataType, ModelVariant, PoseScaleOffset


def test_lift_and_project_are_inverse(shared_scene):
    d, m = shared_scene.data, shared_scene.model
    P0 = lift(d.x0, d.depth0, m.offset0, m.focal0)
    assert np.allclose(P0, shared_scene.X0)
    uv, z = project(P0, m.focal0)
    assert np.allclose(uv, d.x0[:, :2])
    assert np.all(z > 0.0)


def test_true_model_has_zero_residuals(make_scene):
    scene = make_scene(variant=ModelVariant.TWO_FOCAL, focal0=1.1, focal1=0.8)
    evaluator = ModelEvaluator(scene.data)
    for t in DataType:
        assert np.max(evaluator.residuals(scene.model, t)) < 1e-20


def test_two_pool_reprojection_takes_worse_direction(shared_scene):
    m = shared_scene.model.replace(scale=2.0, offset0=0.1)
    evaluator = ModelEvaluator(shared_scene.data)
    r = evaluator.residuals(m, DataType.REPROJECTION)
    r0 = evaluator.residuals(m, DataType.REPROJECTION_0)
    r1 = evaluator.residuals(m, DataType.REPROJECTION_1)
    assert np.array_equal(r, np.maximum(r0, r1))


def test_inlier_decision_is_monotone_in_threshold(make_scene):
    scene = make_scene(outlier_ratio=0.3, seed=7)
    m = scene.model.replace(offset0=0.35)
    evaluator = ModelEvaluator(scene.data)
    thresholds = [1e-6, 1e-4, 1e-2, 1.0]
    for t in (DataType.REPROJECTION_0, DataType.EPIPOLAR):
        for i in range(len(scene.data)):
            flags = [evaluator.is_inlier(m, t, i, thr) for thr in thresholds]
            # once an inlier, an inlier for every larger threshold
            assert flags == sorted(flags)


def test_evaluate_matches_residuals(shared_scene):
    m = shared_scene.model.replace(offset1=0.0)
    evaluator = ModelEvaluator(shared_scene.data)
    r = evaluator.residuals(m, DataType.REPROJECTION_1)
    assert evaluator.evaluate(m, DataType.REPROJECTION_1, 5) == pytest.approx(r[5])


def test_gradient_cutoff_rejects_points_behind_camera(shared_scene):
    # flipping the translation pushes most transformed points behind image 1
    m = shared_scene.model.replace(t=np.array([0.0, 0.0, -10.0]))
    plain = ModelEvaluator(shared_scene.data).residuals(m, DataType.REPROJECTION_0)
    cut = ModelEvaluator(shared_scene.data, gradient_cutoff=True).residuals(m, DataType.REPROJECTION_0)
    assert np.all(np.isfinite(plain))
    assert np.all(np.isinf(cut))


def test_residuals_are_never_nan(shared_scene):
    # a point mapped onto the image-1 camera centre
    X = shared_scene.X0[0]
    m = shared_scene.model.replace(R=np.eye(3), t=-X)
    evaluator = ModelEvaluator(shared_scene.data)
    for t in DataType:
        assert not np.any(np.isnan(evaluator.residuals(m, t)))


def test_gradient_cutoff_rejects_negative_corrected_depth():
    # corrected depth d0 + offset0 = -1, yet the translation lands the point in front of image 1
    x = np.array([[0.1, 0.2], [-0.3, 0.25]])
    data = CorrespondenceSet.from_arrays(x, x, [1.0, 1.0], [1.0, 1.0], min_depth=[3.0, 3.0])
    m = PoseScaleOffset(np.eye(3), [0.0, 0.0, 5.0], offset0=-2.0, focal0=1.0, variant=ModelVariant.SHARED_FOCAL)

    plain = ModelEvaluator(data).residuals(m, DataType.REPROJECTION_0)
    cut = ModelEvaluator(data, gradient_cutoff=True).residuals(m, DataType.REPROJECTION_0)
    assert np.all(np.isfinite(plain))
    assert np.all(np.isinf(cut))


def test_gradient_cutoff_rejects_negative_corrected_depth_in_image_1():
    x = np.array([[0.1, 0.2], [-0.3, 0.25]])
    data = CorrespondenceSet.from_arrays(x, x, [1.0, 1.0], [1.0, 1.0], min_depth=[3.0, 3.0])
    m = PoseScaleOffset(np.eye(3), [0.0, 0.0, -5.0], scale=2.0, offset1=-2.0, variant=ModelVariant.SHARED_FOCAL)
    cut = ModelEvaluator(data, gradient_cutoff=True).residuals(m, DataType.REPROJECTION_1)
    assert np.all(np.isinf(cut))
    assert np.all(np.isfinite(ModelEvaluator(data).residuals(m, DataType.REPROJECTION_1)))
