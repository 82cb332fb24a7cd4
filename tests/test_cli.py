import csv
import json

import pytest

import main

from conftest import robot_a, robot_b
from test_loader import write_g2o


@pytest.fixture
def g2o_files(tmp_path):
    a = robot_a()
    b = robot_b(a)
    # inter-robot loop closures cannot be expressed with plain per-file ids
    b.loops = [m for m in b.loops if m.key1.robot == "b"]
    return str(write_g2o(tmp_path / "a.g2o", a)), str(write_g2o(tmp_path / "b.g2o", b))


def test_parse_args_defaults():
    args = main.parse_args(["--g2o", "a.g2o", "--export-path", "out"])
    assert args.odom_threshold == 10.0 and args.lc_threshold == 10.0
    assert args.solver == "batch"
    assert args.robot is None


def test_single_robot_run_writes_outputs(tmp_path, g2o_files):
    out = tmp_path / "out"
    result = main.main(["--g2o", g2o_files[0], "--export-path", str(out),
                        "--odom-threshold", "100", "--lc-threshold", "100", "--log", "WARNING"])
    assert result["factors"] == 53
    assert result["poses"] == 50
    assert result["final_error"] < 1e-3
    with open(out / "trajectories" / "trajectory_a.csv", newline="", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    assert len(rows) == 50
    assert rows[0]["key"] == "a0"
    stats = json.loads((out / "graph_stats.json").read_text(encoding="utf-8"))
    assert stats["factors"]["accepted"] == 3
    assert stats["rejections"] == {}


def test_two_robot_run_with_restrictive_thresholds(tmp_path, g2o_files):
    out = tmp_path / "out"
    kpi = tmp_path / "kpi.jsonl"
    result = main.main(["--g2o", g2o_files[0], "--g2o", g2o_files[1], "--export-path", str(out),
                        "--odom-threshold", "0", "--solver", "isam2", "--kpi-log", str(kpi),
                        "--log", "WARNING"])
    assert result["factors"] == 92
    assert result["poses"] == 92
    assert (out / "trajectories" / "trajectory_b.csv").exists()
    stats = json.loads((out / "graph_stats.json").read_text(encoding="utf-8"))
    assert stats["factors"]["link"] == 1
    assert "a0-b0" not in stats["rejections"]
    assert stats["rejections"]["b8-b29"] == "odometry_inconsistent"
    records = [json.loads(line) for line in kpi.read_text(encoding="utf-8").splitlines()]
    events = [r["event"] for r in records]
    assert events.count("graph_ingest") == 2
    assert events[-1] == "optimization_end"
    assert records[-1]["final_error"] == pytest.approx(result["final_error"], abs=1e-9)
