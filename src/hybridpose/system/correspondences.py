# src/hybridpose/system/correspondences.py
from __future__ import annotations

from dataclasses import dataclass

import numpy as np


def _homogeneous(x: np.ndarray) -> np.ndarray:
    x = np.asarray(x, dtype=np.float64)
    if x.ndim != 2 or x.shape[1] not in (2, 3):
        raise ValueError(f"points must be (N,2) or (N,3), got {x.shape}")
    if x.shape[1] == 3:
        return x / x[:, 2:3]
    return np.hstack([x, np.ones((x.shape[0], 1))])


@dataclass(frozen=True, eq=False)
class CorrespondenceSet:
    """
    Two-view correspondences with per-image depth.

    x0, x1: (N,3) normalized homogeneous image points (third coordinate 1).
    depth0, depth1: (N,) raw depths, corrected later by the model's offsets.
    weights: (N,) non-negative confidences.
    min_depth: (2,) smallest admissible raw depth per image.
    """
    x0: np.ndarray
    x1: np.ndarray
    depth0: np.ndarray
    depth1: np.ndarray
    weights: np.ndarray
    min_depth: np.ndarray

    @classmethod
    def from_arrays(
        cls,
        x0: np.ndarray,
        x1: np.ndarray,
        depth0: np.ndarray,
        depth1: np.ndarray,
        *,
        min_depth: np.ndarray | None = None,
        weights: np.ndarray | None = None,
    ) -> "CorrespondenceSet":
        x0h = _homogeneous(x0)
        x1h = _homogeneous(x1)
        d0 = np.asarray(depth0, dtype=np.float64).reshape(-1)
        d1 = np.asarray(depth1, dtype=np.float64).reshape(-1)
        n = x0h.shape[0]
        if x1h.shape[0] != n or d0.shape[0] != n or d1.shape[0] != n:
            raise ValueError(
                f"correspondence arrays disagree in length: x0={n} x1={x1h.shape[0]} "
                f"depth0={d0.shape[0]} depth1={d1.shape[0]}"
            )
        if not (np.all(np.isfinite(d0)) and np.all(np.isfinite(d1))):
            raise ValueError("depths must be finite")
        if not (np.all(np.isfinite(x0h)) and np.all(np.isfinite(x1h))):
            raise ValueError("image points must be finite")

        if weights is None:
            w = np.ones(n, dtype=np.float64)
        else:
            w = np.asarray(weights, dtype=np.float64).reshape(-1)
            if w.shape[0] != n:
                raise ValueError(f"weights has length {w.shape[0]}, expected {n}")
            if np.any(w < 0.0) or not np.all(np.isfinite(w)):
                raise ValueError("weights must be finite and non-negative")

        if min_depth is None:
            md = np.array([d0.min() if n else 0.0, d1.min() if n else 0.0])
        else:
            md = np.asarray(min_depth, dtype=np.float64).reshape(-1)
            if md.shape[0] != 2:
                raise ValueError(f"min_depth must hold two values, got {md.shape[0]}")

        arrays = (x0h, x1h, d0, d1, w, md)
        for a in arrays:
            a.setflags(write=False)
        return cls(*arrays)

    def __len__(self) -> int:
        return self.x0.shape[0]
