import gtsam
import numpy as np
import pytest

from robust_pgo.models import Measurement, MeasurementKind, PoseKey
from robust_pgo.trajectory import ChainGapError, Trajectory

from conftest import circle


def _odometry(robot, gt, i, mid=0):
    k1, k2 = PoseKey(robot, i), PoseKey(robot, i + 1)
    return Measurement(mid, MeasurementKind.ODOMETRY, k1, k2, gt[k1].between(gt[k2]), np.eye(6) * 0.01)


def _trajectory(n=10, skip=()):
    gt = circle("a", n, 8, 3.0)
    traj = Trajectory("a")
    for key in gt:
        traj.add_key(key)
    for i in range(n - 1):
        if i not in skip:
            traj.add_odometry(_odometry("a", gt, i, mid=i))
    return traj, gt


def test_chain_matches_ground_truth():
    traj, gt = _trajectory()
    rel = traj.chain(2, 7)
    assert rel.pose.equals(gt[PoseKey("a", 2)].between(gt[PoseKey("a", 7)]), 1e-9)
    # covariance grows with every edge in the chain
    assert np.trace(rel.covariance) > np.trace(traj.chain(2, 3).covariance)


def test_backward_chain_is_inverse():
    traj, gt = _trajectory()
    fwd = traj.chain(1, 6)
    back = traj.chain(6, 1)
    assert back.pose.equals(fwd.pose.inverse(), 1e-9)


def test_chain_to_self_is_identity_with_zero_covariance():
    traj, _ = _trajectory()
    rel = traj.chain(4, 4)
    assert rel.pose.equals(gtsam.Pose3(), 1e-12)
    assert not rel.covariance.any()


def test_chain_over_gap_raises():
    traj, _ = _trajectory(skip=(5,))
    traj.chain(0, 5)
    with pytest.raises(ChainGapError):
        traj.chain(3, 8)
    with pytest.raises(ChainGapError):
        traj.chain(20, 20)


def test_chain_keys_rejects_other_robots():
    traj, _ = _trajectory()
    with pytest.raises(ChainGapError):
        traj.chain_keys(PoseKey("a", 0), PoseKey("b", 1))


def test_add_odometry_rejects_other_kinds():
    traj, gt = _trajectory()
    m = _odometry("a", gt, 2)
    loop = Measurement(99, MeasurementKind.LOOP_CLOSURE, m.key1, PoseKey("a", 8), m.pose, m.covariance)
    with pytest.raises(ValueError):
        traj.add_odometry(loop)


def test_add_odometry_rejects_edges_that_skip_or_point_back():
    traj, gt = _trajectory()
    m = _odometry("a", gt, 2)
    skipping = Measurement(98, MeasurementKind.ODOMETRY, m.key1, PoseKey("a", 4), m.pose, m.covariance)
    backward = Measurement(97, MeasurementKind.ODOMETRY, m.key2, m.key1, m.pose.inverse(), m.covariance)
    for bad in (skipping, backward):
        with pytest.raises(ValueError, match="forward by one step"):
            traj.add_odometry(bad)


def test_keys_are_sorted():
    traj, _ = _trajectory(n=4)
    assert traj.keys() == [PoseKey("a", i) for i in range(4)]
    assert len(traj) == 3
    assert traj.has_key(PoseKey("a", 3)) and not traj.has_key(PoseKey("a", 4))
