from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union
import logging

import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

from .errors import InvalidGraphError, UnknownAnchorError
from .geometry import PoseWithCovariance, inverse, pose_from
from .models import (
    BetweenFactorPose3, InitEntry, Measurement, MeasurementKind, PoseKey,
    PriorFactorPose3, as_pose_key, classify_between, to_covariance,
)
from .noise import gaussian_from_covariance
from .trajectory import Trajectory

logger = logging.getLogger("robust_pgo.store")

InitialValues = Union["gtsam.Values", Mapping, Iterable[InitEntry]]
Factor = Union[PriorFactorPose3, BetweenFactorPose3, "gtsam.PriorFactorPose3", "gtsam.BetweenFactorPose3"]


@dataclass
class StagedBatch:
    """A fully validated batch, ready to be appended by ``commit``."""
    base_mid: int
    keys: List[PoseKey] = field(default_factory=list)
    values: Dict[PoseKey, "gtsam.Pose3"] = field(default_factory=dict)
    measurements: List[Measurement] = field(default_factory=list)
    bridge: Optional[Measurement] = None
    propagated: int = 0

    @property
    def candidates(self) -> List[Measurement]:
        return [m for m in self.measurements if m.is_candidate]


class PoseGraphStore:
    """Owns poses, measurements and per-robot trajectories.

    Measurements live in an append-only arena; ``Measurement.mid`` is the index
    into it and is how the consistency graph refers to them. Every batch is
    validated completely in ``stage`` before ``commit`` appends anything, so a
    rejected batch leaves the store exactly as it was.
    """

    def __init__(self):
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot build graph")
        self.clear()

    def clear(self) -> None:
        self._measurements: List[Measurement] = []
        self._values: Dict[PoseKey, "gtsam.Pose3"] = {}
        self._key_order: List[PoseKey] = []
        self._trajectories: Dict[str, Trajectory] = {}
        self._odometry_pairs: Set[Tuple[PoseKey, PoseKey]] = set()
        # robot pair -> trusted link used to chain odometry across robots
        self._links: Dict[Tuple[str, str], Measurement] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def __len__(self) -> int:
        return len(self._key_order)

    @property
    def empty(self) -> bool:
        return not self._key_order

    def has_key(self, key: PoseKey) -> bool:
        return key in self._values

    def measurement(self, mid: int) -> Measurement:
        return self._measurements[mid]

    def measurements(self) -> List[Measurement]:
        return list(self._measurements)

    def candidates(self) -> List[Measurement]:
        return [m for m in self._measurements if m.is_candidate]

    def trajectory(self, robot: str) -> Optional[Trajectory]:
        return self._trajectories.get(robot)

    def robots(self) -> List[str]:
        return sorted(self._trajectories)

    def keys_by_robot(self) -> Dict[str, List[PoseKey]]:
        out: Dict[str, List[PoseKey]] = {}
        for key in self._key_order:
            out.setdefault(key.robot, []).append(key)
        return out

    def initial_pose(self, key: PoseKey):
        return self._values[key]

    def counts(self) -> Dict[str, int]:
        c = Counter(m.kind.value for m in self._measurements)
        return {kind.value: c.get(kind.value, 0) for kind in MeasurementKind}

    def bridge_path(self, src: str, dst: str) -> Optional[List[Tuple[Measurement, bool]]]:
        """Links chaining robot ``src`` to ``dst`` as ``(link, forward)`` steps.

        Only the trusted links registered by ``add_graph`` are followed, never
        inter-robot loop closures. ``forward`` is True when the link's key1 sits on the robot the step
        starts from. Breadth-first over robots, neighbours in registration
        order, so the path is deterministic.
        """
        if src == dst:
            return []
        adjacency: Dict[str, List[Tuple[str, Measurement]]] = {}
        for m in self._links.values():
            r1, r2 = m.key1.robot, m.key2.robot
            adjacency.setdefault(r1, []).append((r2, m))
            adjacency.setdefault(r2, []).append((r1, m))
        parent: Dict[str, Tuple[str, Measurement]] = {}
        seen = {src}
        queue = deque([src])
        while queue:
            robot = queue.popleft()
            if robot == dst:
                break
            for nxt, m in adjacency.get(robot, []):
                if nxt not in seen:
                    seen.add(nxt)
                    parent[nxt] = (robot, m)
                    queue.append(nxt)
        if dst not in parent:
            return None
        steps: List[Tuple[Measurement, bool]] = []
        robot = dst
        while robot != src:
            prev, m = parent[robot]
            steps.append((m, m.key1.robot == prev))
            robot = prev
        steps.reverse()
        return steps

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------
    def stage(self,
              measurements: Union[Iterable[Factor], "gtsam.NonlinearFactorGraph", None],
              initial: Optional[InitialValues],
              prior: Optional[Factor] = None,
              bridge: Optional[Factor] = None) -> StagedBatch:
        """Validate a batch against the current store without modifying it.

        Measurements may be the dataclass factors from ``models``, gtsam
        ``PriorFactorPose3``/``BetweenFactorPose3`` objects, or a whole
        ``gtsam.NonlinearFactorGraph``. The bridge becomes a ``LINK``.
        """
        batch = StagedBatch(base_mid=len(self._measurements))
        guesses = self._initial_guesses(initial)

        priors: List[Tuple[PoseKey, "gtsam.Pose3", np.ndarray, float]] = []
        betweens: List[Tuple[PoseKey, PoseKey, "gtsam.Pose3", np.ndarray, float, bool]] = []
        for idx, f in enumerate(_factors_of(measurements)):
            if _is_prior(f):
                priors.append(self._parse_prior(f, idx))
            elif _is_between(f):
                betweens.append(self._parse_between(f, idx) + (False,))
            else:
                raise InvalidGraphError(f"measurement[{idx}] has unsupported type {type(f).__name__}")
        if prior is not None:
            if not _is_prior(prior):
                raise InvalidGraphError(f"prior must be a PriorFactorPose3, got {type(prior).__name__}")
            priors.insert(0, self._parse_prior(prior, "prior"))
        if bridge is not None:
            if not _is_between(bridge):
                raise InvalidGraphError(f"bridge must be a BetweenFactorPose3, got {type(bridge).__name__}")
            parsed = self._parse_between(bridge, "bridge")
            self._check_bridge(parsed[0], parsed[1])
            betweens.append(parsed + (True,))

        # Odometry, normalised to point forward in time
        odometry: Dict[Tuple[PoseKey, PoseKey], PoseWithCovariance] = {}
        for k1, k2, pose, cov, _, is_bridge in betweens:
            if is_bridge or classify_between(k1, k2) is not MeasurementKind.ODOMETRY:
                continue
            pair, pwc = self._forward(k1, k2, PoseWithCovariance(pose, cov))
            if pair in odometry or pair in self._odometry_pairs:
                raise InvalidGraphError(f"Duplicate odometry edge {pair[0]} -> {pair[1]}")
            odometry[pair] = pwc

        referenced: List[PoseKey] = []
        for k1, k2, *_ in betweens:
            referenced.extend((k1, k2))
        referenced.extend(p[0] for p in priors)
        new_keys = [k for k in dict.fromkeys(list(guesses) + referenced) if k not in self._values]

        batch.propagated = self._propagate(guesses, odometry, new_keys)
        unknown = [str(k) for k in new_keys if k not in guesses]
        if unknown:
            raise InvalidGraphError(f"Measurements reference unknown keys: {', '.join(sorted(unknown))}")

        fresh_robots = {k.robot for k in new_keys} - set(self._trajectories)
        prior_count = Counter(k.robot for k, *_ in priors)
        for robot in sorted(fresh_robots):
            if prior_count[robot] > 1:
                raise InvalidGraphError(
                    f"{prior_count[robot]} priors supplied for fresh robot {robot!r}; expected at most one")

        # Everything checked; build the immutable records
        batch.keys = sorted(new_keys)
        batch.values = {k: guesses[k] for k in batch.keys}
        mid = batch.base_mid
        for key, pose, cov, stamp in priors:
            batch.measurements.append(Measurement(mid, MeasurementKind.PRIOR, key, None, pose, cov, stamp))
            mid += 1
        for k1, k2, pose, cov, stamp, is_bridge in betweens:
            if is_bridge:
                kind = MeasurementKind.LINK
            else:
                kind = classify_between(k1, k2)
            if kind is MeasurementKind.ODOMETRY:
                (k1, k2), pwc = self._forward(k1, k2, PoseWithCovariance(pose, cov))
                pose, cov = pwc.pose, pwc.covariance
            m = Measurement(mid, kind, k1, k2, pose, cov, stamp)
            batch.measurements.append(m)
            if is_bridge:
                batch.bridge = m
            mid += 1
        return batch

    def commit(self, batch: StagedBatch) -> List[Measurement]:
        """Append a staged batch. Returns its loop-closure/bridge candidates."""
        if batch.base_mid != len(self._measurements):
            raise RuntimeError("Staged batch is stale; the store changed since it was staged")
        for key in batch.keys:
            self._values[key] = batch.values[key]
            self._key_order.append(key)
            self._trajectories.setdefault(key.robot, Trajectory(key.robot)).add_key(key)
        for m in batch.measurements:
            self._measurements.append(m)
            if m.kind is MeasurementKind.ODOMETRY:
                self._trajectories[m.key1.robot].add_odometry(m)
                self._odometry_pairs.add((m.key1, m.key2))
        if batch.bridge is not None and batch.bridge.key1.robot != batch.bridge.key2.robot:
            pair = tuple(sorted(batch.bridge.robots))
            self._links.setdefault(pair, batch.bridge)
        logger.info(
            "Ingested %d keys and %d measurements (%d candidates)%s",
            len(batch.keys),
            len(batch.measurements),
            len(batch.candidates),
            f"; {batch.propagated} initial guesses propagated from odometry" if batch.propagated else "",
        )
        return batch.candidates

    # ------------------------------------------------------------------
    # gtsam views
    # ------------------------------------------------------------------
    def factor(self, m: Measurement):
        noise = gaussian_from_covariance(m.covariance)
        if m.kind is MeasurementKind.PRIOR:
            return gtsam.PriorFactorPose3(m.key1.symbol(), m.pose, noise)
        return gtsam.BetweenFactorPose3(m.key1.symbol(), m.key2.symbol(), m.pose, noise)

    def factor_graph(self, accepted: Iterable[int] = ()) -> "gtsam.NonlinearFactorGraph":
        """Odometry + priors + the accepted candidates, in arrival order."""
        accepted = set(accepted)
        graph = gtsam.NonlinearFactorGraph()
        for m in self._measurements:
            if m.is_candidate and m.mid not in accepted:
                continue
            graph.add(self.factor(m))
        return graph

    def values(self) -> "gtsam.Values":
        values = gtsam.Values()
        for key in self._key_order:
            values.insert(key.symbol(), self._values[key])
        return values

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _initial_guesses(self, initial: Optional[InitialValues]) -> Dict[PoseKey, "gtsam.Pose3"]:
        guesses: Dict[PoseKey, "gtsam.Pose3"] = {}

        def _put(raw_key, pose):
            key = as_pose_key(raw_key)
            if key in guesses:
                raise InvalidGraphError(f"Duplicate initial value for {key}")
            if key in self._values:
                raise InvalidGraphError(f"Key {key} already exists in the graph")
            guesses[key] = pose

        if initial is None:
            return guesses
        if isinstance(initial, gtsam.Values):
            for raw in initial.keys():
                _put(int(raw), initial.atPose3(raw))
        elif isinstance(initial, Mapping):
            for raw, item in initial.items():
                _put(raw, pose_from(item.rotation, item.translation) if isinstance(item, InitEntry) else item)
        else:
            for idx, item in enumerate(initial):
                if not isinstance(item, InitEntry):
                    raise InvalidGraphError(f"initial[{idx}] is not an InitEntry")
                _put(item.key, pose_from(item.rotation, item.translation))
        return guesses

    def _propagate(self,
                   guesses: Dict[PoseKey, "gtsam.Pose3"],
                   odometry: Dict[Tuple[PoseKey, PoseKey], PoseWithCovariance],
                   new_keys: List[PoseKey]) -> int:
        """Fill missing guesses for new keys by walking odometry. Mutates ``guesses``."""
        missing = {k for k in new_keys if k not in guesses}
        if not missing:
            return 0
        adjacency: Dict[PoseKey, List[Tuple[PoseKey, "gtsam.Pose3"]]] = {}
        for (k1, k2), pwc in odometry.items():
            adjacency.setdefault(k1, []).append((k2, pwc.pose))
            adjacency.setdefault(k2, []).append((k1, pwc.pose.inverse()))

        def _known(k):
            return guesses.get(k, self._values.get(k))

        queue = deque(sorted(k for k in adjacency if _known(k) is not None))
        filled = 0
        while queue and missing:
            k = queue.popleft()
            base = _known(k)
            for nxt, rel in sorted(adjacency.get(k, []), key=lambda item: item[0]):
                if nxt in missing:
                    guesses[nxt] = base.compose(rel)
                    missing.discard(nxt)
                    filled += 1
                    queue.append(nxt)
        if filled:
            logger.warning("Missing initialization for %d key(s); propagated from odometry.", filled)
        return filled

    def _check_bridge(self, k1: PoseKey, k2: PoseKey) -> None:
        present = [k for k in (k1, k2) if k in self._values]
        if not present:
            raise UnknownAnchorError(f"Bridge {k1} -> {k2} does not connect to any existing key")
        if len(present) == 2:
            raise InvalidGraphError(f"Bridge {k1} -> {k2} must introduce a new key; both already exist")

    @staticmethod
    def _forward(k1: PoseKey, k2: PoseKey, pwc: PoseWithCovariance):
        if k1.index < k2.index:
            return (k1, k2), pwc
        return (k2, k1), inverse(pwc)

    @staticmethod
    def _parse_prior(f, where) -> Tuple[PoseKey, "gtsam.Pose3", np.ndarray, float]:
        if isinstance(f, PriorFactorPose3):
            key = as_pose_key(f.key)
            return key, pose_from(f.rotation, f.translation), _checked_covariance(f.covariance, where), float(f.stamp)
        key = as_pose_key(int(f.keys()[0]))
        return key, f.prior(), _checked_covariance(_noise_covariance(f, where), where), 0.0

    @staticmethod
    def _parse_between(f, where):
        if isinstance(f, BetweenFactorPose3):
            k1 = as_pose_key(f.key1)
            k2 = as_pose_key(f.key2)
            pose, cov, stamp = pose_from(f.rotation, f.translation), f.covariance, float(f.stamp)
        else:
            raw = list(f.keys())
            k1, k2 = as_pose_key(int(raw[0])), as_pose_key(int(raw[1]))
            pose, cov, stamp = f.measured(), _noise_covariance(f, where), 0.0
        if k1 == k2:
            raise InvalidGraphError(f"measurement[{where}] connects {k1} to itself")
        return k1, k2, pose, _checked_covariance(cov, where), stamp


def _factors_of(measurements) -> List:
    if measurements is None:
        return []
    if isinstance(measurements, gtsam.NonlinearFactorGraph):
        factors = (measurements.at(i) for i in range(measurements.size()))
        return [f for f in factors if f is not None]
    return list(measurements)


def _is_prior(f) -> bool:
    return isinstance(f, (PriorFactorPose3, gtsam.PriorFactorPose3))


def _is_between(f) -> bool:
    return isinstance(f, (BetweenFactorPose3, gtsam.BetweenFactorPose3))


def _noise_covariance(f, where) -> np.ndarray:
    noise = f.noiseModel()
    if not isinstance(noise, gtsam.noiseModel.Gaussian):
        raise InvalidGraphError(
            f"measurement[{where}]: noise model {type(noise).__name__} has no covariance")
    return np.asarray(noise.covariance(), dtype=float)


def _checked_covariance(cov, where) -> np.ndarray:
    try:
        arr = to_covariance(cov)
    except ValueError as e:
        raise InvalidGraphError(f"measurement[{where}]: {e}") from e
    if not np.all(np.isfinite(arr)):
        raise InvalidGraphError(f"measurement[{where}]: covariance has non-finite entries")
    return arr.copy()
