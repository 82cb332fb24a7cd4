"""Pairwise Consistent Measurement (PCM) tests.

Two tests gate a loop-closure candidate, intra- or inter-robot:

* odometry consistency: the candidate against the relative pose implied by
  chaining odometry (and the trusted links, across robots) between its
  endpoints;
* pairwise consistency: two candidates of the same robot pair close a cycle
  with the odometry of both robots; the cycle should be the identity.

Both use the squared Mahalanobis norm of the residual transform, with the
covariances of every link in the cycle propagated to first order.
"""
from enum import Enum
from typing import Optional, Tuple
import logging

from .geometry import PoseWithCovariance, between, compose, inverse, mahalanobis_sq
from .models import Measurement, PoseKey
from .store import PoseGraphStore
from .trajectory import ChainGapError

logger = logging.getLogger("robust_pgo.consistency")

Group = Tuple[str, str]


class Verdict(str, Enum):
    CONSISTENT = "consistent"
    INCONSISTENT = "odometry_inconsistent"
    NO_REFERENCE = "no_reference_chain"


class ConsistencyChecker:

    def __init__(self, store: PoseGraphStore, odom_threshold: float, lc_threshold: float):
        self.store = store
        self.odom_threshold = float(odom_threshold)
        self.lc_threshold = float(lc_threshold)

    @staticmethod
    def group_of(m: Measurement) -> Group:
        """Robot pair whose trajectories the candidate ties together."""
        return tuple(sorted((m.key1.robot, m.key2.robot)))

    @staticmethod
    def oriented(m: Measurement) -> Tuple[PoseWithCovariance, PoseKey, PoseKey]:
        """The candidate pointing from its group's first robot (or earlier index) to the other."""
        pwc = PoseWithCovariance(m.pose, m.covariance)
        k1, k2 = m.key1, m.key2
        if (k1.robot, k1.index) > (k2.robot, k2.index):
            return inverse(pwc), k2, k1
        return pwc, k1, k2

    def reference_chain(self, key1: PoseKey, key2: PoseKey) -> Optional[PoseWithCovariance]:
        """Relative pose of ``key2`` in the frame of ``key1`` implied by odometry.

        Different robots are chained through the links given to add_graph;
        inter-robot loop closures never serve as a reference.
        Returns None when no such chain exists yet.
        """
        path = self.store.bridge_path(key1.robot, key2.robot)
        if path is None:
            return None
        try:
            acc = None
            current = key1
            for step, forward in path:
                link = PoseWithCovariance(step.pose, step.covariance)
                if forward:
                    near, far = step.key1, step.key2
                else:
                    near, far, link = step.key2, step.key1, inverse(link)
                acc = _chain(acc, self._odometry(current, near))
                acc = compose(acc, link)
                current = far
            return _chain(acc, self._odometry(current, key2))
        except ChainGapError as e:
            logger.debug("No reference chain %s -> %s: %s", key1, key2, e)
            return None

    def odometry_residual(self, m: Measurement) -> Optional[float]:
        chain = self.reference_chain(m.key1, m.key2)
        if chain is None:
            return None
        return mahalanobis_sq(between(chain, PoseWithCovariance(m.pose, m.covariance)))

    def check_odometry(self, m: Measurement) -> Tuple[Verdict, Optional[float]]:
        # A zero threshold rejects every candidate outright
        if self.odom_threshold == 0.0:
            return Verdict.INCONSISTENT, None
        residual = self.odometry_residual(m)
        if residual is None:
            return Verdict.NO_REFERENCE, None
        verdict = Verdict.CONSISTENT if residual < self.odom_threshold else Verdict.INCONSISTENT
        logger.debug("%s %s -> %s odometry residual %.4g (%s)", m.kind.value, m.key1, m.key2, residual, verdict.value)
        return verdict, residual

    def pairwise_residual(self, mi: Measurement, mj: Measurement) -> Optional[float]:
        """Residual of the cycle a_i -> b_j -> b_l -> a_k -> a_i.

        ``mi`` is (a_i -> b_j) and ``mj`` is (a_k -> b_l) after orientation; a
        and b are the same robot for intra-robot loop closures.
        """
        zi, a_i, b_j = self.oriented(mi)
        zk, a_k, b_l = self.oriented(mj)
        odom_b = self.reference_chain(b_j, b_l)
        odom_a = self.reference_chain(a_k, a_i)
        if odom_a is None or odom_b is None:
            return None
        cycle = compose(compose(compose(zi, odom_b), inverse(zk)), odom_a)
        return mahalanobis_sq(cycle)

    def are_consistent(self, mi: Measurement, mj: Measurement) -> bool:
        # Candidates of different robot pairs share no trajectory segment and cannot contradict
        if self.group_of(mi) != self.group_of(mj):
            return True
        residual = self.pairwise_residual(mi, mj)
        if residual is None:
            return False
        ok = residual < self.lc_threshold
        logger.debug("pair (%d, %d) residual %.4g -> %s", mi.mid, mj.mid, residual, "consistent" if ok else "inconsistent")
        return ok

    def _odometry(self, key1: PoseKey, key2: PoseKey) -> PoseWithCovariance:
        traj = self.store.trajectory(key1.robot)
        if traj is None:
            raise ChainGapError(f"Unknown robot {key1.robot!r}")
        return traj.chain_keys(key1, key2)


def _chain(acc: Optional[PoseWithCovariance], nxt: PoseWithCovariance) -> PoseWithCovariance:
    return nxt if acc is None else compose(acc, nxt)
