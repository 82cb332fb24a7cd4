"""Synthetic multi-robot pose graphs with known ground truth.

Robot ``a`` drives two laps of a 25-pose circle (50 poses, 49 odometry edges)
and closes 3 loops. Robot ``b`` drives two laps of a 21-pose circle next to it
(42 poses, 41 odometry edges) with one intra-robot and one inter-robot loop
closure, and is attached to ``a`` through a trusted link between ``a0`` and ``b0``.
All measurements are exact, so every true loop closure is consistent.
"""
import math
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Tuple

import gtsam
import numpy as np
import pytest

from robust_pgo.geometry import pose_to_quat_wxyz, pose_to_xyz
from robust_pgo.models import (
    BetweenFactorPose3, InitEntry, PoseKey, PriorFactorPose3, Quaternion, Translation,
)
from robust_pgo.params import RobustSolverParams, Verbosity

COV = np.eye(6) * 0.01
PRECISE_COV = np.eye(6) * 1e-4

A_LOOPS = [(3, 28), (10, 35), (20, 45)]
B_LOOPS = [(8, 29)]
AB_LOOPS = [(30, 12)]


def fields_of(pose) -> Tuple[Quaternion, Translation]:
    qw, qx, qy, qz = pose_to_quat_wxyz(pose)
    tx, ty, tz = pose_to_xyz(pose)
    return Quaternion(qw, qx, qy, qz), Translation(tx, ty, tz)


def between(k1: PoseKey, k2: PoseKey, rel, cov=COV) -> BetweenFactorPose3:
    rot, trans = fields_of(rel)
    return BetweenFactorPose3(key1=k1, key2=k2, rotation=rot, translation=trans, covariance=np.array(cov))


def prior_on(key: PoseKey, pose, cov=COV) -> PriorFactorPose3:
    rot, trans = fields_of(pose)
    return PriorFactorPose3(key=key, rotation=rot, translation=trans, covariance=np.array(cov))


def circle(robot: str, n: int, per_lap: int, radius: float, center=(0.0, 0.0)) -> Dict[PoseKey, "gtsam.Pose3"]:
    poses = {}
    for i in range(n):
        theta = 2.0 * math.pi * i / per_lap
        x = center[0] + radius * math.cos(theta)
        y = center[1] + radius * math.sin(theta)
        poses[PoseKey(robot, i)] = gtsam.Pose3(gtsam.Rot3.Yaw(theta + math.pi / 2),
                                               gtsam.Point3(x, y, 0.05 * i))
    return poses


@dataclass
class RobotData:
    robot: str
    gt: Dict[PoseKey, "gtsam.Pose3"]
    odometry: List[BetweenFactorPose3] = field(default_factory=list)
    loops: List[BetweenFactorPose3] = field(default_factory=list)

    @property
    def measurements(self) -> List[BetweenFactorPose3]:
        return self.odometry + self.loops

    def initial(self, skip: Sequence[PoseKey] = ()) -> List[InitEntry]:
        out = []
        for key, pose in self.gt.items():
            if key in skip:
                continue
            rot, trans = fields_of(pose)
            out.append(InitEntry(key=key, rotation=rot, translation=trans))
        return out

    def key(self, i: int) -> PoseKey:
        return PoseKey(self.robot, i)


def make_robot(robot: str, gt: Dict[PoseKey, "gtsam.Pose3"], loops: Sequence[Tuple[int, int]],
               odom_cov=COV, lc_cov=COV) -> RobotData:
    data = RobotData(robot, gt)
    n = len(gt)
    for i in range(n - 1):
        k1, k2 = PoseKey(robot, i), PoseKey(robot, i + 1)
        data.odometry.append(between(k1, k2, gt[k1].between(gt[k2]), odom_cov))
    for i, j in loops:
        k1, k2 = PoseKey(robot, i), PoseKey(robot, j)
        data.loops.append(between(k1, k2, gt[k1].between(gt[k2]), lc_cov))
    return data


def outlier_loops(data: RobotData, pairs: Sequence[Tuple[int, int]], cov=COV,
                  yaw: float = 0.5, offset=(3.0, -2.0, 0.5)) -> List[BetweenFactorPose3]:
    """Wrong loop closures that agree with each other.

    Each one observes its second pose displaced by the same world transform
    W, so any two of them close a cycle exactly, while none agrees with the
    odometry or with a true loop closure.
    """
    W = gtsam.Pose3(gtsam.Rot3.Yaw(yaw), gtsam.Point3(*offset))
    out = []
    for i, j in pairs:
        k1, k2 = data.key(i), data.key(j)
        out.append(between(k1, k2, data.gt[k1].between(W.compose(data.gt[k2])), cov))
    return out


def robot_a(odom_cov=COV, lc_cov=COV, loops=A_LOOPS) -> RobotData:
    return make_robot("a", circle("a", 50, 25, 5.0), loops, odom_cov, lc_cov)


def robot_b(a: RobotData, odom_cov=COV, lc_cov=COV) -> RobotData:
    data = make_robot("b", circle("b", 42, 21, 4.0, center=(12.0, 3.0)), B_LOOPS, odom_cov, lc_cov)
    for i, j in AB_LOOPS:
        ka, kb = a.key(i), data.key(j)
        data.loops.append(between(ka, kb, a.gt[ka].between(data.gt[kb]), lc_cov))
    return data


def bridge_of(a: RobotData, b: RobotData, cov=COV) -> BetweenFactorPose3:
    ka, kb = a.key(0), b.key(0)
    return between(ka, kb, a.gt[ka].between(b.gt[kb]), cov)


def params(odom: float, lc: float, **kwargs) -> RobustSolverParams:
    return RobustSolverParams(**kwargs).set_pcm_3d_params(odom, lc, Verbosity.QUIET)


@pytest.fixture
def data_a() -> RobotData:
    return robot_a()


@pytest.fixture
def data_b(data_a) -> RobotData:
    return robot_b(data_a)
