import argparse
import csv
import json
import logging
import os
from typing import Dict, List

try:
    import gtsam
except Exception:
    gtsam = None

from robust_pgo.errors import RobustPGOError
from robust_pgo.geometry import pose_to_quat_wxyz, pose_to_xyz
from robust_pgo.kpi_logging import KPILogger
from robust_pgo.loader import G2OGraph, load_g2o
from robust_pgo.models import PoseKey
from robust_pgo.noise import gaussian_from_covariance, isotropic_covariance
from robust_pgo.params import RobustSolverParams, Verbosity
from robust_pgo.solver import RobustSolver


def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="Outlier-robust (PCM) multi-robot pose-graph optimization of g2o datasets.")
    ap.add_argument("--g2o", action="append", required=True,
                    help="Path to a robot's .g2o file; repeat for more robots. The first one is loaded with a prior, "
                         "the others are added through a bridge between first poses")
    ap.add_argument("--robot", action="append", default=None,
                    help="Robot letter for plain integer vertex ids, one per --g2o (default a, b, c, ...)")
    ap.add_argument("--export-path", required=True, help="Directory to write outputs")
    ap.add_argument("--odom-threshold", type=float, default=10.0,
                    help="Squared Mahalanobis bound of the odometry check (0 rejects every loop closure)")
    ap.add_argument("--lc-threshold", type=float, default=10.0,
                    help="Squared Mahalanobis bound of the pairwise check")
    ap.add_argument("--solver", choices=["batch", "isam2"], default="batch", help="LM (batch) or iSAM2 (incremental)")
    ap.add_argument("--max-iters", type=int, default=100, help="LM iteration cap (batch solver)")
    ap.add_argument("--prior-sigma", type=float, default=0.1,
                    help="Std-dev of the prior and the bridges (variance 0.01 by default)")
    ap.add_argument("--kpi-log", default=None, help="Write solver events as JSON lines to this file")
    ap.add_argument("--log", default="INFO", help="Logging level")
    return ap.parse_args(argv)


def ensure_dir(p):
    os.makedirs(p, exist_ok=True)


def _first_pose(dataset: G2OGraph):
    key, pose = dataset.first_pose()
    if key is None:
        raise RobustPGOError("Dataset has no vertices")
    return key, pose


def make_prior(dataset: G2OGraph, sigma: float) -> "gtsam.PriorFactorPose3":
    key, pose = _first_pose(dataset)
    noise = gaussian_from_covariance(isotropic_covariance(sigma))
    return gtsam.PriorFactorPose3(key.symbol(), pose, noise)


def make_bridge(base: G2OGraph, other: G2OGraph, sigma: float) -> "gtsam.BetweenFactorPose3":
    """Bridge between the first poses of two robots, from their initial guesses."""
    ka, pa = _first_pose(base)
    kb, pb = _first_pose(other)
    noise = gaussian_from_covariance(isotropic_covariance(sigma))
    return gtsam.BetweenFactorPose3(ka.symbol(), kb.symbol(), pa.between(pb), noise)


def export_csv_per_robot(estimate, out_dir: str) -> None:
    ensure_dir(out_dir)
    by_robot: Dict[str, List[PoseKey]] = {}
    for raw in estimate.keys():
        key = PoseKey.from_symbol(int(raw))
        by_robot.setdefault(key.robot, []).append(key)
    for rid, keys in by_robot.items():
        csv_path = os.path.join(out_dir, f"trajectory_{rid}.csv")
        with open(csv_path, "w", newline="", encoding="utf-8") as f:
            headers = ["key", "x", "y", "z", "qw", "qx", "qy", "qz"]
            w = csv.DictWriter(f, fieldnames=headers)
            w.writeheader()
            for key in sorted(keys):
                p = estimate.atPose3(key.symbol())
                tx, ty, tz = pose_to_xyz(p)
                qw, qx, qy, qz = pose_to_quat_wxyz(p)
                w.writerow({"key": str(key), "x": tx, "y": ty, "z": tz, "qw": qw, "qx": qx, "qy": qy, "qz": qz})


def export_stats_json(solver: RobustSolver, graph_error: float, out_path: str) -> None:
    stats = solver.summary()
    stats["final_error"] = graph_error
    rejections = {}
    for mid, why in solver.rejection_reasons().items():
        m = solver.store.measurement(mid)
        rejections[f"{m.key1}-{m.key2}"] = why
    stats["rejections"] = rejections
    with open(out_path, "w", encoding="utf-8") as f:
        json.dump(stats, f, indent=2)


def _verbosity(level: str) -> Verbosity:
    level = level.upper()
    if level == "DEBUG":
        return Verbosity.DEBUG
    if level == "INFO":
        return Verbosity.INFO
    return Verbosity.QUIET


def run(args) -> Dict[str, object]:
    robots = args.robot or []
    datasets = []
    for idx, path in enumerate(args.g2o):
        robot = robots[idx] if idx < len(robots) else "abcdefghijklmnopqrstuvwxyz"[idx]
        datasets.append(load_g2o(path, robot=robot))

    params = RobustSolverParams(
        odom_threshold=args.odom_threshold,
        lc_threshold=args.lc_threshold,
        verbosity=_verbosity(args.log),
        solver=args.solver,
        max_iters=args.max_iters,
    )
    kpi = KPILogger(extra_fields={"solver": args.solver}, log_path=args.kpi_log, emit_to_logger=False) \
        if args.kpi_log else None
    solver = RobustSolver(params, kpi=kpi)
    try:
        base = datasets[0]
        solver.load_graph(base.graph, base.initial, make_prior(base, args.prior_sigma))
        for other in datasets[1:]:
            solver.add_graph(other.graph, other.initial, make_bridge(base, other, args.prior_sigma))

        graph = solver.get_factors_unsafe()
        estimate = solver.calculate_estimate()
    finally:
        if kpi:
            kpi.close()
    final_error = float(graph.error(estimate))

    out_dir = os.path.abspath(args.export_path)
    ensure_dir(out_dir)
    export_csv_per_robot(estimate, os.path.join(out_dir, "trajectories"))
    export_stats_json(solver, final_error, os.path.join(out_dir, "graph_stats.json"))

    print("=== Robust PGO summary ===")
    print(f"Factors: {graph.size()}  Poses: {estimate.size()}  Final error: {final_error:.6g}")
    accepted = solver.accepted_loop_closures()
    print(f"Accepted loop closures: {len(accepted)} of {len(solver.candidates())}")
    return {"factors": int(graph.size()), "poses": int(estimate.size()), "final_error": final_error}


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=args.log.upper(),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    return run(args)


if __name__ == "__main__":
    main()
