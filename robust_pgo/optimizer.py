"""Adapters around GTSAM's optimizers.

Both adapters take the factors as ``(factor_id, factor)`` pairs so the
incremental one can tell which factors it has already seen.
"""
from contextlib import contextmanager
from typing import Dict, Hashable, List, Optional, Sequence, Set, Tuple
import logging
import math

try:
    import gtsam
except Exception:
    gtsam = None

from .errors import IllConditionedError, SolverDivergedError
from .geometry import pose_to_xyz

logger = logging.getLogger("robust_pgo.optimizer")

Factors = Sequence[Tuple[Hashable, object]]

_ILL_CONDITIONED_MARKERS = ("indeterminant", "ill-posed", "underconstrained", "cholesky")


@contextmanager
def translate_solver_errors():
    """Re-raise gtsam's linear-system failures as IllConditionedError."""
    try:
        yield
    except RuntimeError as exc:
        msg = str(exc)
        if any(marker in msg.lower() for marker in _ILL_CONDITIONED_MARKERS):
            raise IllConditionedError(msg) from exc
        raise


def check_finite(graph: "gtsam.NonlinearFactorGraph", estimate: "gtsam.Values") -> float:
    err = graph.error(estimate)
    if not math.isfinite(err):
        raise SolverDivergedError(f"Optimization diverged (final error {err})")
    return err


def graph_of(factors: Factors) -> "gtsam.NonlinearFactorGraph":
    graph = gtsam.NonlinearFactorGraph()
    for _, f in factors:
        graph.add(f)
    return graph


def translation_delta(cache: Dict[int, tuple], estimate: "gtsam.Values") -> float:
    """Update translation cache and return max Euclidean delta between estimates."""
    max_delta = 0.0
    for key in estimate.keys():
        tx, ty, tz = pose_to_xyz(estimate.atPose3(key))
        prev = cache.get(int(key))
        if prev is not None:
            delta = math.sqrt((tx - prev[0]) ** 2 + (ty - prev[1]) ** 2 + (tz - prev[2]) ** 2)
            max_delta = max(max_delta, delta)
        cache[int(key)] = (tx, ty, tz)
    return max_delta


def optimize_batch(graph: "gtsam.NonlinearFactorGraph",
                   initial: "gtsam.Values",
                   max_iters: int = 100) -> "gtsam.Values":
    """Levenberg–Marquardt batch solve."""
    params = gtsam.LevenbergMarquardtParams()
    params.setlambdaInitial(1e-3)
    params.setMaxIterations(max_iters)
    with translate_solver_errors():
        estimate = gtsam.LevenbergMarquardtOptimizer(graph, initial, params).optimize()
    check_finite(graph, estimate)
    return estimate


class BatchOptimizer:
    """Solves the whole graph from the initial guess every time."""

    def __init__(self, max_iters: int = 100):
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot optimize")
        self.max_iters = max_iters
        self.last_error: Optional[float] = None

    def solve(self, factors: Factors, initial: "gtsam.Values") -> "gtsam.Values":
        graph = graph_of(factors)
        estimate = optimize_batch(graph, initial, self.max_iters)
        self.last_error = graph.error(estimate)
        return estimate

    def reset(self) -> None:
        self.last_error = None


class ISAM2Manager:
    """Thin manager around GTSAM's iSAM2 (API-compatible across wheels).

    ``solve`` only pushes factors and keys iSAM2 has not seen. When a factor
    it already holds is no longer part of the graph (the accepted set lost a
    member, or a gauge anchor became redundant) the instance is rebuilt.
    """

    def __init__(self,
                 relinearize_threshold: float = 0.1,
                 relinearize_skip: int = 10,
                 cache_linearized: bool = True,
                 extra_updates: int = 0):
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot run iSAM2")
        self._settings = (relinearize_threshold, relinearize_skip, cache_linearized)
        self.extra_updates = extra_updates
        self.last_error: Optional[float] = None
        self.reset()

    def _make_params(self):
        relinearize_threshold, relinearize_skip, cache_linearized = self._settings
        params = gtsam.ISAM2Params()

        # Compat helpers (some wheels use setters, others properties)
        def _set(obj, prop: str, value, setter: Optional[str] = None):
            if setter and hasattr(obj, setter):
                getattr(obj, setter)(value)
                return
            setattr(obj, prop, value)

        _set(params, "relinearizeThreshold", relinearize_threshold, "setRelinearizeThreshold")
        _set(params, "relinearizeSkip", relinearize_skip, "setRelinearizeSkip")
        _set(params, "cacheLinearizedFactors", cache_linearized, "setCacheLinearizedFactors")
        _set(params, "enableRelinearization", True, "setEnableRelinearization")
        return params

    def reset(self) -> None:
        self.isam = gtsam.ISAM2(self._make_params())
        self._pushed: Set[Hashable] = set()
        self._keys: Set[int] = set()
        self._estimate = gtsam.Values()

    def update(self, graph: "gtsam.NonlinearFactorGraph", initial: "gtsam.Values"):
        with translate_solver_errors():
            self.isam.update(graph, initial)
            # Empty updates let iSAM2 relinearize without new factors
            for _ in range(self.extra_updates):
                self.isam.update()
            self._estimate = self.isam.calculateEstimate()

    def solve(self, factors: Factors, initial: "gtsam.Values") -> "gtsam.Values":
        ids = [fid for fid, _ in factors]
        if not self._pushed.issubset(ids):
            logger.debug("Factor set shrank; rebuilding iSAM2 from scratch")
            self.reset()
        new: List[Tuple[Hashable, object]] = [(fid, f) for fid, f in factors if fid not in self._pushed]
        new_values = gtsam.Values()
        for key in initial.keys():
            if int(key) not in self._keys:
                new_values.insert(key, initial.atPose3(key))
        if new or new_values.size() > 0:
            self.update(graph_of(new), new_values)
            self._pushed.update(fid for fid, _ in new)
            self._keys.update(int(k) for k in new_values.keys())
        self.last_error = check_finite(graph_of(factors), self._estimate)
        return self._estimate
