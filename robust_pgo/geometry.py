"""Rigid transforms with first-order covariance propagation.

Poses are gtsam.Pose3 and covariances live in gtsam's tangent space
([rx, ry, rz, tx, ty, tz]) with right perturbation, T * Exp(xi). Under that
convention the Jacobians of compose/inverse reduce to adjoint maps:

    compose(A, B):  S = Ad(B^-1) S_A Ad(B^-1)^T + S_B
    inverse(A):     S = Ad(A) S_A Ad(A)^T

The functions below are pure; nothing holds a frame or a global state.
"""
from dataclasses import dataclass
import math
from typing import Tuple

import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

from .models import Quaternion, Translation
from .noise import make_spd


@dataclass(frozen=True)
class PoseWithCovariance:
    pose: "gtsam.Pose3"
    covariance: np.ndarray

    @classmethod
    def identity(cls) -> "PoseWithCovariance":
        return cls(gtsam.Pose3(), np.zeros((6, 6)))


def compose(a: PoseWithCovariance, b: PoseWithCovariance) -> PoseWithCovariance:
    adj = b.pose.inverse().AdjointMap()
    cov = adj @ a.covariance @ adj.T + b.covariance
    return PoseWithCovariance(a.pose.compose(b.pose), cov)


def inverse(a: PoseWithCovariance) -> PoseWithCovariance:
    adj = a.pose.AdjointMap()
    return PoseWithCovariance(a.pose.inverse(), adj @ a.covariance @ adj.T)


def between(a: PoseWithCovariance, b: PoseWithCovariance) -> PoseWithCovariance:
    """a^-1 * b, i.e. b expressed in the frame of a."""
    return compose(inverse(a), b)


def mahalanobis_sq(residual: PoseWithCovariance) -> float:
    """Squared Mahalanobis norm of a residual transform (identity -> 0)."""
    xi = np.asarray(gtsam.Pose3.Logmap(residual.pose), dtype=float).reshape(6)
    cov = make_spd(residual.covariance)
    return float(xi @ np.linalg.solve(cov, xi))


def pose_from(rot: Quaternion, trans: Translation):
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot build Pose3")
    R = gtsam.Rot3.Quaternion(rot.w, rot.x, rot.y, rot.z)
    t = gtsam.Point3(trans.x, trans.y, trans.z)
    return gtsam.Pose3(R, t)


def pose_to_xyz(pose) -> Tuple[float, float, float]:
    t = pose.translation()
    # Older wheels return a Point3 object, newer ones a numpy vector
    if hasattr(t, "x") and callable(t.x):
        return float(t.x()), float(t.y()), float(t.z())
    return float(t[0]), float(t[1]), float(t[2])


def pose_to_quat_wxyz(pose) -> Tuple[float, float, float, float]:
    R = pose.rotation()
    if hasattr(R, "quaternion"):
        q = R.quaternion()  # [w, x, y, z]
        return float(q[0]), float(q[1]), float(q[2]), float(q[3])
    # Wheels without Rot3.quaternion: derive it from the matrix
    M = np.asarray(R.matrix(), dtype=float)
    tr = M[0, 0] + M[1, 1] + M[2, 2]
    if tr > 0.0:
        S = math.sqrt(tr + 1.0) * 2.0
        qw = 0.25 * S
        qx = (M[2, 1] - M[1, 2]) / S
        qy = (M[0, 2] - M[2, 0]) / S
        qz = (M[1, 0] - M[0, 1]) / S
    elif M[0, 0] > M[1, 1] and M[0, 0] > M[2, 2]:
        S = math.sqrt(1.0 + M[0, 0] - M[1, 1] - M[2, 2]) * 2.0
        qw = (M[2, 1] - M[1, 2]) / S
        qx = 0.25 * S
        qy = (M[0, 1] + M[1, 0]) / S
        qz = (M[0, 2] + M[2, 0]) / S
    elif M[1, 1] > M[2, 2]:
        S = math.sqrt(1.0 + M[1, 1] - M[0, 0] - M[2, 2]) * 2.0
        qw = (M[0, 2] - M[2, 0]) / S
        qx = (M[0, 1] + M[1, 0]) / S
        qy = 0.25 * S
        qz = (M[1, 2] + M[2, 1]) / S
    else:
        S = math.sqrt(1.0 + M[2, 2] - M[0, 0] - M[1, 1]) * 2.0
        qw = (M[1, 0] - M[0, 1]) / S
        qx = (M[0, 2] + M[2, 0]) / S
        qy = (M[1, 2] + M[2, 1]) / S
        qz = 0.25 * S
    n = math.sqrt(qw * qw + qx * qx + qy * qy + qz * qz) or 1.0
    return float(qw / n), float(qx / n), float(qy / n), float(qz / n)
