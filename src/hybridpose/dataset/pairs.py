# src/hybridpose/dataset/pairs.py
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Optional

import numpy as np


@dataclass
class MatchedPair:
    x0: np.ndarray              # (N,2) pixels, image 0
    x1: np.ndarray              # (N,2) pixels, image 1
    depth0: np.ndarray          # (N,)
    depth1: np.ndarray          # (N,)
    weights: Optional[np.ndarray] = None
    min_depth: Optional[np.ndarray] = None
    pp0: Optional[np.ndarray] = None
    pp1: Optional[np.ndarray] = None

    def __len__(self) -> int:
        return self.x0.shape[0]

    def resolved_min_depth(self) -> np.ndarray:
        if self.min_depth is not None:
            return self.min_depth
        return np.array([self.depth0.min(), self.depth1.min()], dtype=np.float64)


def _read_pairs_txt(path: str) -> MatchedPair:
    rows: List[List[float]] = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if (not line) or line.startswith("#"):
                continue
            parts = line.split()
            if len(parts) < 6:
                continue
            rows.append([float(v) for v in parts[:7]])

    if not rows:
        raise ValueError(f"No correspondences in {path}")
    width = min(len(r) for r in rows)
    a = np.array([r[:width] for r in rows], dtype=np.float64)
    return MatchedPair(
        x0=a[:, 0:2],
        x1=a[:, 2:4],
        depth0=a[:, 4],
        depth1=a[:, 5],
        weights=a[:, 6] if width > 6 else None,
    )


def _read_pairs_npz(path: str) -> MatchedPair:
    with np.load(path) as z:
        missing = [k for k in ("x0", "x1", "depth0", "depth1") if k not in z.files]
        if missing:
            raise ValueError(f"{path} lacks arrays: {missing}")

        def opt(key: str) -> Optional[np.ndarray]:
            return np.asarray(z[key], dtype=np.float64) if key in z.files else None

        return MatchedPair(
            x0=np.asarray(z["x0"], dtype=np.float64),
            x1=np.asarray(z["x1"], dtype=np.float64),
            depth0=np.asarray(z["depth0"], dtype=np.float64).reshape(-1),
            depth1=np.asarray(z["depth1"], dtype=np.float64).reshape(-1),
            weights=opt("weights"),
            min_depth=opt("min_depth"),
            pp0=opt("pp0"),
            pp1=opt("pp1"),
        )


def load_matched_pair(path: str) -> MatchedPair:
    """
    Load correspondences with depth from an .npz archive (keys x0, x1,
    depth0, depth1 and optionally weights, min_depth, pp0, pp1) or a text
    file with lines `x0 y0 x1 y1 d0 d1 [w]`.
    """
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Missing correspondence file: {path}")
    if path.endswith(".npz"):
        return _read_pairs_npz(path)
    return _read_pairs_txt(path)
