from __future__ import annotations

from types import SimpleNamespace

import cv2
import numpy as np
import pytest

from hybridpose.system.correspondences import CorrespondenceSet
from hybridpose.system.model import ModelVariant, PoseScaleOffset


def _scene(
    n: int = 60,
    *,
    variant: ModelVariant = ModelVariant.SHARED_FOCAL,
    focal0: float = 1.2,
    focal1: float | None = None,
    scale: float = 1.7,
    offset0: float = 0.3,
    offset1: float = -0.2,
    outlier_ratio: float = 0.0,
    noise: float = 0.0,
    rvec=(0.1, -0.2, 0.05),
    t=(0.5, -0.1, 0.3),
    seed: int = 0,
):
    """
    Random points in front of two cameras, observed with affine-corrupted depth.

    Image coordinates are normalized (principal point at the origin). Raw
    depths satisfy z0 = d0 + offset0 and z1 = scale * (d1 + offset1).
    """
    rng = np.random.default_rng(seed)
    if variant is ModelVariant.SCALE_ONLY:
        focal0 = focal1 = 1.0
    elif focal1 is None or variant is ModelVariant.SHARED_FOCAL:
        focal1 = focal0

    R, _ = cv2.Rodrigues(np.array(rvec, dtype=np.float64))
    t = np.array(t, dtype=np.float64)

    X0 = np.column_stack([rng.uniform(-1.5, 1.5, n), rng.uniform(-1.5, 1.5, n), rng.uniform(3.0, 6.0, n)])
    X1 = X0 @ R.T + t
    p0 = focal0 * X0[:, :2] / X0[:, 2:3]
    p1 = focal1 * X1[:, :2] / X1[:, 2:3]
    d0 = X0[:, 2] - offset0
    d1 = X1[:, 2] / scale - offset1

    if noise > 0.0:
        p0 = p0 + rng.normal(0.0, noise, p0.shape)
        p1 = p1 + rng.normal(0.0, noise, p1.shape)

    inlier = np.ones(n, dtype=bool)
    n_out = int(round(outlier_ratio * n))
    if n_out:
        out = rng.choice(n, size=n_out, replace=False)
        inlier[out] = False
        p1[out] = rng.uniform(-0.7, 0.7, (n_out, 2)) * focal1
        d1[out] = rng.uniform(2.0, 4.0, n_out)

    min_depth = np.array([d0.min(), d1.min()])
    model = PoseScaleOffset(R, t, scale=scale, offset0=offset0, offset1=offset1,
                            focal0=focal0, focal1=focal1, variant=variant)
    data = CorrespondenceSet.from_arrays(p0, p1, d0, d1, min_depth=min_depth)
    return SimpleNamespace(
        model=model, data=data, inlier=inlier,
        p0=p0, p1=p1, d0=d0, d1=d1, X0=X0, X1=X1, min_depth=min_depth,
    )


@pytest.fixture
def make_scene():
    return _scene


@pytest.fixture
def shared_scene():
    return _scene(variant=ModelVariant.SHARED_FOCAL)
