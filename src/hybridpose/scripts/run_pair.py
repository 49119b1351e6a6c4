from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

import numpy as np
import matplotlib.pyplot as plt

try:
    import yaml
except ImportError as ex:
    raise ImportError("PyYAML is required. Install with: pip install pyyaml") from ex

from hybridpose.dataset.pairs import load_matched_pair
from hybridpose.modules.evaluate import ModelEvaluator
from hybridpose.system.config import EstimatorConfig, RansacOptions
from hybridpose.system.correspondences import CorrespondenceSet
from hybridpose.system.estimator import POOL_LAYOUTS
from hybridpose.system.model import ModelVariant
from hybridpose.system.runner import (
    estimate_pose_scale_offset,
    estimate_pose_scale_offset_shared_focal,
    estimate_pose_scale_offset_two_focal,
)
from hybridpose.system.telemetry import Telemetry


def _K(cam: dict, key: str) -> np.ndarray:
    if key in cam:
        return np.asarray(cam[key], dtype=np.float64).reshape(3, 3)
    fx = float(cam["fx"])
    fy = float(cam.get("fy", fx))
    cx = float(cam["cx"])
    cy = float(cam["cy"])
    return np.array([[fx, 0.0, cx], [0.0, fy, cy], [0.0, 0.0, 1.0]], dtype=np.float64)


def _pixel_residuals(pair, model, variant, cam, layout) -> dict[str, np.ndarray]:
    # residuals in the units the thresholds are given in
    if variant is ModelVariant.SCALE_ONLY:
        K0, K1 = _K(cam, "K0"), _K(cam, "K1" if "K1" in cam else "K0")
        y0 = np.column_stack([pair.x0, np.ones(len(pair))]) @ np.linalg.inv(K0).T
        y1 = np.column_stack([pair.x1, np.ones(len(pair))]) @ np.linalg.inv(K1).T
        c0, c1 = y0[:, :2] / y0[:, 2:3], y1[:, :2] / y1[:, 2:3]
        # thresholds are squared pixels; calibrated residuals scale by the mean focal squared
        unit = (0.25 * (K0[0, 0] + K0[1, 1] + K1[0, 0] + K1[1, 1])) ** 2
    else:
        c0 = pair.x0 - pair.pp0.reshape(1, 2)
        c1 = pair.x1 - pair.pp1.reshape(1, 2)
        unit = 1.0
    data = CorrespondenceSet.from_arrays(c0, c1, pair.depth0, pair.depth1, min_depth=pair.min_depth)
    evaluator = ModelEvaluator(data)
    return {t.value: unit * evaluator.residuals(model, t) for t in POOL_LAYOUTS[layout]}


def _show_residuals(residuals: dict[str, np.ndarray], thresholds: list[float]) -> None:
    fig, axes = plt.subplots(1, len(residuals), figsize=(5 * len(residuals), 4))
    for ax, (name, r), thr in zip(np.atleast_1d(axes), residuals.items(), thresholds):
        r = np.sqrt(r[np.isfinite(r)])
        ax.hist(r, bins=50, range=(0.0, 5.0 * np.sqrt(thr)), color="tab:blue", alpha=0.8)
        ax.axvline(np.sqrt(thr), color="r", linestyle="--", label="threshold")
        ax.set_title(f"{name} residuals")
        ax.set_xlabel("residual")
        ax.legend()
    fig.tight_layout()
    plt.show()


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--config", type=str, default="configs/default.yaml")
    ap.add_argument("--matches", type=str, required=True, help="Correspondences with depth (.npz or .txt)")
    ap.add_argument("--out_dir", type=str, default="outputs")
    ap.add_argument("--variant", type=str, default=None, choices=[v.value for v in ModelVariant],
                    help="Override the variant from the config")
    ap.add_argument("--visualize", action="store_true", help="Show residual histograms per data type")
    ap.add_argument("--verbose", action="store_true")
    args = ap.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    print(f"[INFO] Loading config: {args.config}")
    with open(args.config, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}

    variant = ModelVariant(args.variant or cfg.get("variant", ModelVariant.SHARED_FOCAL.value))
    est_cfg = EstimatorConfig.from_dict(cfg.get("estimator", {}))
    options = RansacOptions.from_dict(cfg.get("ransac", {}))
    cam = cfg.get("camera", {})

    print(f"[INFO] Loading correspondences: {args.matches}")
    pair = load_matched_pair(args.matches)
    print(f"[INFO] Correspondences: {len(pair)}")
    if pair.min_depth is None:
        pair.min_depth = pair.resolved_min_depth()
    if pair.pp0 is None:
        pair.pp0 = np.asarray(cam.get("pp0", [cam.get("cx", 0.0), cam.get("cy", 0.0)]), dtype=np.float64)
    if pair.pp1 is None:
        pair.pp1 = np.asarray(cam.get("pp1", pair.pp0), dtype=np.float64)

    out_dir = Path(args.out_dir) / Path(args.matches).stem
    out_dir.mkdir(parents=True, exist_ok=True)
    print(f"[INFO] Output dir: {out_dir}")

    telemetry = Telemetry()
    common = dict(options=options, config=est_cfg, weights=pair.weights, telemetry=telemetry)
    if variant is ModelVariant.SCALE_ONLY:
        K0 = _K(cam, "K0")
        K1 = _K(cam, "K1") if "K1" in cam else K0
        model, stats = estimate_pose_scale_offset(
            pair.x0, pair.x1, pair.depth0, pair.depth1, pair.min_depth, K0, K1, **common)
    elif variant is ModelVariant.SHARED_FOCAL:
        model, stats = estimate_pose_scale_offset_shared_focal(
            pair.x0, pair.x1, pair.depth0, pair.depth1, pair.min_depth, pair.pp0, pair.pp1, **common)
    else:
        model, stats = estimate_pose_scale_offset_two_focal(
            pair.x0, pair.x1, pair.depth0, pair.depth1, pair.min_depth, pair.pp0, pair.pp1, **common)

    print(f"[INFO] Iterations: {stats.num_iterations}  inliers: {stats.best_num_inliers}  "
          f"ratio: {stats.inlier_ratio:.3f}")

    result_path = str(out_dir / "result.json")
    metrics_path = str(out_dir / "metrics.json")
    cfg_path = str(out_dir / "config_used.yaml")

    with open(result_path, "w", encoding="utf-8") as f:
        json.dump({"model": model.to_dict(), "statistics": stats.to_dict()}, f, indent=2)

    with open(metrics_path, "w", encoding="utf-8") as f:
        json.dump(telemetry.events, f, indent=2)

    cfg_used = dict(cfg)
    cfg_used["variant"] = variant.value
    cfg_used["estimator"] = est_cfg.to_dict()
    cfg_used["ransac"] = options.to_dict()
    with open(cfg_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(cfg_used, f, sort_keys=False)

    print(f"[OK] wrote: {result_path}")
    print(f"[OK] wrote: {metrics_path}")

    if args.visualize:
        print("[INFO] Showing residual histograms. Close the window to exit.")
        residuals = _pixel_residuals(pair, model, variant, cam, est_cfg.pool_layout)
        _show_residuals(residuals, options.squared_inlier_thresholds)


if __name__ == "__main__":
    main()
