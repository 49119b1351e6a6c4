# src/hybridpose/system/model.py
from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import Enum

import numpy as np

from ..geom.se3 import Rt_to_T, is_rotation


class ModelVariant(str, Enum):
    SCALE_ONLY = "scale_only"      # calibrated cameras
    SHARED_FOCAL = "shared_focal"
    TWO_FOCAL = "two_focal"

    @property
    def has_focal(self) -> bool:
        return self is not ModelVariant.SCALE_ONLY


class DataType(str, Enum):
    REPROJECTION = "reprojection"      # both directions, two-pool layout
    REPROJECTION_0 = "reprojection_0"  # image-0 anchored
    REPROJECTION_1 = "reprojection_1"  # image-1 anchored
    EPIPOLAR = "epipolar"

    @property
    def is_depth_anchored(self) -> bool:
        return self is not DataType.EPIPOLAR


@dataclass(frozen=True, eq=False)
class PoseScaleOffset:
    """
    Relative pose plus depth correction.

    Points lift as P0 = (d0 + offset0) [x0 / focal0, 1] and
    P1 = scale (d1 + offset1) [x1 / focal1, 1], related by P1 = R P0 + t.
    """
    R: np.ndarray
    t: np.ndarray
    scale: float = 1.0
    offset0: float = 0.0
    offset1: float = 0.0
    focal0: float = 1.0
    focal1: float = 1.0
    variant: ModelVariant = ModelVariant.SCALE_ONLY

    def __post_init__(self):
        R = np.array(self.R, dtype=np.float64).reshape(3, 3)
        t = np.array(self.t, dtype=np.float64).reshape(3)
        R.setflags(write=False)
        t.setflags(write=False)
        object.__setattr__(self, "R", R)
        object.__setattr__(self, "t", t)
        for name in ("scale", "offset0", "offset1", "focal0", "focal1"):
            object.__setattr__(self, name, float(getattr(self, name)))
        object.__setattr__(self, "variant", ModelVariant(self.variant))
        if self.variant is ModelVariant.SHARED_FOCAL and self.focal1 != self.focal0:
            object.__setattr__(self, "focal1", self.focal0)

    @classmethod
    def identity(cls, variant: ModelVariant = ModelVariant.SCALE_ONLY) -> "PoseScaleOffset":
        return cls(np.eye(3), np.zeros(3), variant=variant)

    @property
    def focal(self) -> float:
        return self.focal0

    @property
    def T(self) -> np.ndarray:
        return Rt_to_T(self.R, self.t)

    def replace(self, **changes) -> "PoseScaleOffset":
        return dataclasses.replace(self, **changes)

    def with_focal(self, focal0: float, focal1: float | None = None) -> "PoseScaleOffset":
        if focal1 is None or self.variant is ModelVariant.SHARED_FOCAL:
            focal1 = focal0
        return self.replace(focal0=focal0, focal1=focal1)

    def is_valid(self, min_depth: np.ndarray, *, tol: float = 1e-9) -> bool:
        """Model invariants: scale > 0, offset_k >= -min_depth_k, orthonormal R, positive focal."""
        scalars = np.array([self.scale, self.offset0, self.offset1, self.focal0, self.focal1])
        if not (np.all(np.isfinite(scalars)) and np.all(np.isfinite(self.t))):
            return False
        if self.scale <= 0.0 or self.focal0 <= 0.0 or self.focal1 <= 0.0:
            return False
        if self.offset0 < -float(min_depth[0]) - tol or self.offset1 < -float(min_depth[1]) - tol:
            return False
        return is_rotation(self.R)

    def to_dict(self) -> dict:
        out = {
            "variant": self.variant.value,
            "R": self.R.tolist(),
            "t": self.t.tolist(),
            "T": self.T.tolist(),
            "scale": self.scale,
            "offset0": self.offset0,
            "offset1": self.offset1,
        }
        if self.variant is ModelVariant.SHARED_FOCAL:
            out["focal"] = self.focal0
        elif self.variant is ModelVariant.TWO_FOCAL:
            out["focal0"] = self.focal0
            out["focal1"] = self.focal1
        return out
