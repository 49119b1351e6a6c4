# src/hybridpose/modules/evaluate.py
from __future__ import annotations

import numpy as np

from ..geom.epipolar import fundamental_from_pose, sampson_squared
from ..geom.se3 import inv_Rt
from ..system.correspondences import CorrespondenceSet
from ..system.model import DataType, PoseScaleOffset

_TINY_DEPTH = 1e-12


def lift(xh: np.ndarray, depth: np.ndarray, offset: float, focal: float, scale: float = 1.0) -> np.ndarray:
    """(N,3) points scale * (depth + offset) * [x / focal, 1]."""
    rays = np.column_stack([xh[:, 0] / focal, xh[:, 1] / focal, np.ones(xh.shape[0])])
    return (scale * (depth + offset))[:, None] * rays


def project(X: np.ndarray, focal: float) -> tuple[np.ndarray, np.ndarray]:
    """
    Pinhole projection with principal point at the origin.

    Returns:
        uv: (N,2) projected points (finite; near-zero depth is clamped).
        z: (N,) depth before projection, for cheirality decisions.
    """
    z = X[:, 2]
    z_safe = np.where(np.abs(z) < _TINY_DEPTH, np.where(z < 0, -_TINY_DEPTH, _TINY_DEPTH), z)
    uv = focal * X[:, :2] / z_safe[:, None]
    return uv, z


class ModelEvaluator:
    """
    Squared residuals of a model at individual correspondences.

    Reprojection residuals are in (normalized) image units squared, the
    epipolar residual is the squared Sampson distance. With the gradient
    cutoff enabled, points whose corrected depth or transformed depth is not
    positive score inf.
    """

    def __init__(self, data: CorrespondenceSet, *, gradient_cutoff: bool = False):
        self.data = data
        self.gradient_cutoff = gradient_cutoff

    def _indices(self, indices) -> np.ndarray:
        if indices is None:
            return np.arange(len(self.data))
        return np.asarray(indices, dtype=np.int64).reshape(-1)

    def reprojection0(self, model: PoseScaleOffset, indices=None) -> np.ndarray:
        idx = self._indices(indices)
        P0 = lift(self.data.x0[idx], self.data.depth0[idx], model.offset0, model.focal0)
        X1 = P0 @ model.R.T + model.t
        uv, z = project(X1, model.focal1)
        r = np.sum((uv - self.data.x1[idx, :2]) ** 2, axis=1)
        return self._finish(r, P0[:, 2], z)

    def reprojection1(self, model: PoseScaleOffset, indices=None) -> np.ndarray:
        idx = self._indices(indices)
        P1 = lift(self.data.x1[idx], self.data.depth1[idx], model.offset1, model.focal1, model.scale)
        Ri, ti = inv_Rt(model.R, model.t)
        X0 = P1 @ Ri.T + ti
        uv, z = project(X0, model.focal0)
        r = np.sum((uv - self.data.x0[idx, :2]) ** 2, axis=1)
        return self._finish(r, P1[:, 2], z)

    def epipolar(self, model: PoseScaleOffset, indices=None) -> np.ndarray:
        idx = self._indices(indices)
        F = fundamental_from_pose(model.R, model.t, model.focal0, model.focal1)
        return sampson_squared(F, self.data.x0[idx], self.data.x1[idx])

    def _finish(self, r: np.ndarray, z_source: np.ndarray, z_target: np.ndarray) -> np.ndarray:
        r = np.where(np.isfinite(r), r, np.inf)
        if self.gradient_cutoff:
            # corrected depth in the anchoring image and depth after the transform
            r = np.where((z_source > 0.0) & (z_target > 0.0), r, np.inf)
        return r

    def residuals(self, model: PoseScaleOffset, data_type: DataType, indices=None) -> np.ndarray:
        if data_type is DataType.REPROJECTION:
            return np.maximum(self.reprojection0(model, indices), self.reprojection1(model, indices))
        if data_type is DataType.REPROJECTION_0:
            return self.reprojection0(model, indices)
        if data_type is DataType.REPROJECTION_1:
            return self.reprojection1(model, indices)
        if data_type is DataType.EPIPOLAR:
            return self.epipolar(model, indices)
        raise ValueError(f"Unknown data type: {data_type}")

    def evaluate(self, model: PoseScaleOffset, data_type: DataType, index: int) -> float:
        return float(self.residuals(model, data_type, [index])[0])

    def is_inlier(self, model: PoseScaleOffset, data_type: DataType, index: int, squared_threshold: float) -> bool:
        return self.evaluate(model, data_type, index) <= squared_threshold
