from typing import Dict, List, Tuple

from .geometry import PoseWithCovariance, compose, inverse
from .models import Measurement, MeasurementKind, PoseKey


class ChainGapError(LookupError):
    """No odometry chain links the two indices (missing edge or unknown key)."""


class Trajectory:
    """Odometry chain of a single robot.

    Edges are stored by their lower index (``i -> i + 1``). Edges are never
    edited once added, so a chain computed once stays valid and is cached.
    """

    def __init__(self, robot: str):
        self.robot = robot
        self._edges: Dict[int, PoseWithCovariance] = {}
        self._indices: set = set()
        self._cache: Dict[Tuple[int, int], PoseWithCovariance] = {}

    def __len__(self) -> int:
        return len(self._edges)

    def add_key(self, key: PoseKey) -> None:
        self._indices.add(key.index)

    def add_odometry(self, m: Measurement) -> None:
        if m.kind is not MeasurementKind.ODOMETRY or m.key1.robot != self.robot:
            raise ValueError(f"Not an odometry edge of robot {self.robot}: {m}")
        if m.key2.index != m.key1.index + 1:
            raise ValueError(f"Odometry must point forward by one step, got {m.key1} -> {m.key2}")
        self._edges[m.key1.index] = PoseWithCovariance(m.pose, m.covariance)
        self._indices.update((m.key1.index, m.key2.index))

    def has_key(self, key: PoseKey) -> bool:
        return key.robot == self.robot and key.index in self._indices

    def has_edge(self, index: int) -> bool:
        return index in self._edges

    def keys(self) -> List[PoseKey]:
        return [PoseKey(self.robot, i) for i in sorted(self._indices)]

    def chain(self, i: int, j: int) -> PoseWithCovariance:
        """Relative pose of index ``j`` in the frame of index ``i``."""
        if i == j:
            if i not in self._indices:
                raise ChainGapError(f"{self.robot}{i} is not on this trajectory")
            return PoseWithCovariance.identity()
        if i > j:
            return inverse(self.chain(j, i))
        cached = self._cache.get((i, j))
        if cached is not None:
            return cached
        acc = None
        for k in range(i, j):
            edge = self._edges.get(k)
            if edge is None:
                raise ChainGapError(f"Odometry gap between {self.robot}{k} and {self.robot}{k + 1}")
            acc = edge if acc is None else compose(acc, edge)
        self._cache[(i, j)] = acc
        return acc

    def chain_keys(self, key1: PoseKey, key2: PoseKey) -> PoseWithCovariance:
        if key1.robot != self.robot or key2.robot != self.robot:
            raise ChainGapError(f"{key1} -> {key2} is not on trajectory {self.robot}")
        return self.chain(key1.index, key2.index)
