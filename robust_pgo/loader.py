"""g2o reader for SE(3) pose graphs.

Parsing is left to ``gtsam.readG2o``. Vertex ids that already carry a gtsam
symbol character keep their robot letter; plain integer ids are re-keyed onto
the ``robot`` passed by the caller so several datasets can share one graph.
"""
from dataclasses import dataclass, field
from typing import Optional
import logging
import string

try:
    import gtsam
except Exception:
    gtsam = None

from .models import PoseKey

logger = logging.getLogger("robust_pgo.loader")


def _empty_graph():
    return gtsam.NonlinearFactorGraph()


def _empty_values():
    return gtsam.Values()


@dataclass
class G2OGraph:
    graph: "gtsam.NonlinearFactorGraph" = field(default_factory=_empty_graph)
    initial: "gtsam.Values" = field(default_factory=_empty_values)

    def first_key(self) -> Optional[PoseKey]:
        keys = [PoseKey.from_symbol(int(k)) for k in self.initial.keys()]
        return min(keys) if keys else None

    def first_pose(self):
        key = self.first_key()
        if key is None:
            return None, None
        return key, self.initial.atPose3(key.symbol())


def _has_robot_letter(raw: int) -> bool:
    c = gtsam.Symbol(raw).chr()
    c = c if isinstance(c, str) else chr(c)
    return c in string.ascii_letters


def _rekey(raw: int, robot: Optional[str]) -> int:
    raw = int(raw)
    if _has_robot_letter(raw):
        return raw
    if robot is None:
        raise ValueError(f"Vertex id {raw} carries no robot letter; pass robot=")
    return PoseKey(robot, raw).symbol()


def load_g2o(path: str, robot: Optional[str] = None) -> G2OGraph:
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot read g2o")
    graph, values = gtsam.readG2o(path, True)
    out = G2OGraph()
    for raw in values.keys():
        out.initial.insert(_rekey(raw, robot), values.atPose3(raw))

    skipped = 0
    for i in range(graph.size()):
        f = graph.at(i)
        if isinstance(f, gtsam.BetweenFactorPose3):
            k1, k2 = (_rekey(k, robot) for k in f.keys())
            out.graph.add(gtsam.BetweenFactorPose3(k1, k2, f.measured(), f.noiseModel()))
        elif isinstance(f, gtsam.PriorFactorPose3):
            out.graph.add(gtsam.PriorFactorPose3(_rekey(f.keys()[0], robot), f.prior(), f.noiseModel()))
        elif f is not None:
            skipped += 1
    if skipped:
        logger.warning("Skipped %d unsupported factor(s) in %s", skipped, path)
    logger.info("Loaded %s: %d vertices, %d edges", path, out.initial.size(), out.graph.size())
    return out
