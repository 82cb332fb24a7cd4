from enum import Enum
from typing import Dict, Hashable, Iterable, List, Optional, Tuple, Union
import copy
import logging
import time

try:
    import gtsam
except Exception:
    gtsam = None

from .clique import ConsistencyGraph, MaxCliqueSelector
from .consistency import ConsistencyChecker, Verdict
from .errors import AlreadyLoadedError, InvalidGraphError, NotLoadedError
from .kpi_logging import KPILogger
from .models import Measurement, MeasurementKind, PoseKey
from .noise import gaussian_from_covariance, isotropic_covariance
from .optimizer import BatchOptimizer, ISAM2Manager, translation_delta
from .params import RobustSolverParams
from .store import Factor, InitialValues, PoseGraphStore, StagedBatch

logger = logging.getLogger("robust_pgo.solver")

NOT_IN_MAX_CLIQUE = "not_in_max_clique"


class SolverState(str, Enum):
    EMPTY = "empty"
    LOADED = "loaded"
    READY = "ready"


class RobustSolver:
    """Outlier-robust pose-graph backend for one or more robots.

    Odometry, priors and the links given to ``add_graph`` go straight into
    the pose graph. Loop closures, intra- and inter-robot, are candidates:
    each must pass the odometry test and then belong to the maximum clique of pairwise-consistent candidates.

    The solver is single-threaded; callers that ingest from several robots
    must serialise calls. ``load_graph`` moves EMPTY -> LOADED,
    ``calculate_estimate`` LOADED -> READY, ``add_graph`` back to LOADED.
    """

    def __init__(self, params: Optional[RobustSolverParams] = None, kpi: Optional[KPILogger] = None):
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot build solver")
        self.params = copy.deepcopy(params) if params is not None else RobustSolverParams()
        self.params.validate()
        self.params.apply_verbosity()
        self.kpi = kpi
        self._init_state()

    def _init_state(self) -> None:
        p = self.params
        self.store = PoseGraphStore()
        self.graph = ConsistencyGraph()
        self.selector = MaxCliqueSelector()
        self.checker = ConsistencyChecker(self.store, p.odom_threshold, p.lc_threshold)
        if p.solver == "isam2":
            self._optimizer = ISAM2Manager(p.relinearize_threshold, p.relinearize_skip,
                                           extra_updates=p.isam2_extra_updates)
        else:
            self._optimizer = BatchOptimizer(p.max_iters)
        self._state = SolverState.EMPTY
        self._accepted: List[int] = []
        self._revision = 0
        self._estimate: Optional[Tuple[int, "gtsam.Values"]] = None
        self._translation_cache: Dict[int, tuple] = {}

    @property
    def state(self) -> SolverState:
        return self._state

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------
    def load_graph(self,
                   measurements: Union[Iterable[Factor], "gtsam.NonlinearFactorGraph"],
                   initial: Optional[InitialValues],
                   prior: Factor) -> None:
        """Ingest the first robot's measurements, anchored by ``prior``."""
        if self._state is not SolverState.EMPTY:
            raise AlreadyLoadedError("load_graph was already called; use add_graph for more robots")
        if prior is None:
            raise InvalidGraphError("load_graph requires a prior")
        batch = self.store.stage(measurements, initial, prior=prior)
        self._ingest(batch)

    def add_graph(self,
                  measurements: Union[Iterable[Factor], "gtsam.NonlinearFactorGraph"],
                  initial: Optional[InitialValues],
                  bridge: Factor) -> None:
        """Ingest another robot's measurements, linked through ``bridge``.

        The bridge is trusted: it enters the pose graph as a ``LINK`` and is
        the reference that chains odometry across the two robots.
        """
        if self._state is SolverState.EMPTY:
            raise NotLoadedError("add_graph called before load_graph")
        if bridge is None:
            raise InvalidGraphError("add_graph requires a bridge")
        batch = self.store.stage(measurements, initial, bridge=bridge)
        self._ingest(batch)

    def _ingest(self, batch: StagedBatch) -> None:
        candidates = self.store.commit(batch)
        self._revision += 1
        self._state = SolverState.LOADED
        if self.kpi:
            self.kpi.graph_ingest(self._revision, len(batch.keys), len(batch.measurements), len(candidates))
        self._update_consistency(candidates)

    def _update_consistency(self, candidates: List[Measurement]) -> None:
        start = time.perf_counter()
        for m in candidates:
            verdict, _ = self.checker.check_odometry(m)
            if verdict is not Verdict.CONSISTENT:
                self.graph.record_rejected(m.mid, verdict.value)
                continue
            group = self.checker.group_of(m)
            peers = self.graph.nodes(group)
            self.graph.add_node(m.mid, group)
            for other in peers:
                if self.checker.are_consistent(self.store.measurement(other), m):
                    self.graph.add_edge(other, m.mid)
        self._accepted = self.selector.update(self.graph)
        duration = time.perf_counter() - start
        total = len(self.store.candidates())
        logger.info(
            "PCM: %d new candidate(s); %d of %d accepted (%d in consistency graph, %d edges)",
            len(candidates), len(self._accepted), total, len(self.graph), self.graph.edge_count(),
        )
        if self.kpi:
            self.kpi.outlier_rejection(
                self._revision,
                candidates=total,
                accepted=len(self._accepted),
                rejected=total - len(self._accepted),
                duration_s=duration,
                groups=len(self.graph.groups()),
            )

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------
    def get_factors_unsafe(self) -> "gtsam.NonlinearFactorGraph":
        """Current pose graph: odometry + priors + accepted candidates.

        Built from internal state at call time; do not hold on to it across
        further load_graph/add_graph calls.
        """
        self._require_loaded()
        return self.store.factor_graph(self._accepted)

    def calculate_estimate(self) -> "gtsam.Values":
        """Optimize the current pose graph. Repeated calls without new data return the same estimate."""
        self._require_loaded()
        if self._estimate is not None and self._estimate[0] == self._revision:
            return gtsam.Values(self._estimate[1])
        accepted = set(self._accepted)
        included = [m for m in self.store.measurements() if not m.is_candidate or m.mid in accepted]
        factors: List[Tuple[Hashable, object]] = [(("m", m.mid), self.store.factor(m)) for m in included]
        factors.extend(self._gauge_anchors(included))
        initial = self.store.values()
        if self.kpi:
            self.kpi.optimization_start(self._revision, len(factors), initial.size())
        start = time.perf_counter()
        estimate = self._optimizer.solve(factors, initial)
        duration = time.perf_counter() - start
        max_delta = translation_delta(self._translation_cache, estimate)
        logger.info("Optimized %d factors over %d keys in %.3fs", len(factors), estimate.size(), duration)
        if self.kpi:
            self.kpi.optimization_end(self._revision, duration, updated_keys=estimate.size(),
                                      final_error=self._optimizer.last_error,
                                      max_translation_delta=max_delta)
        self._estimate = (self._revision, gtsam.Values(estimate))
        self._state = SolverState.READY
        return estimate

    def _gauge_anchors(self, included: List[Measurement]) -> List[Tuple[Hashable, object]]:
        """Soft priors on components of the pose graph that no prior reaches.

        A trajectory split by an odometry gap is otherwise free-floating past
        the gap; that part stays at its initial guess. The anchors are not part of the pose graph.
        """
        parent: Dict[PoseKey, PoseKey] = {k: k for keys in self.store.keys_by_robot().values() for k in keys}

        def find(k):
            while parent[k] != k:
                parent[k] = parent[parent[k]]
                k = parent[k]
            return k

        anchored = set()
        for m in included:
            if m.kind is MeasurementKind.PRIOR:
                anchored.add(m.key1)
            else:
                a, b = find(m.key1), find(m.key2)
                if a != b:
                    parent[max(a, b)] = min(a, b)
        anchored_roots = {find(k) for k in anchored}
        noise = gaussian_from_covariance(isotropic_covariance(self.params.anchor_sigma))
        anchors = []
        for root in sorted({find(k) for k in parent} - anchored_roots):
            logger.debug("Component rooted at %s has no prior; anchoring at its initial guess", root)
            pose = self.store.initial_pose(root)
            anchors.append((("anchor", root), gtsam.PriorFactorPose3(root.symbol(), pose, noise)))
        return anchors

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def candidates(self) -> List[Measurement]:
        return self.store.candidates()

    def accepted_loop_closures(self) -> List[Measurement]:
        return [self.store.measurement(mid) for mid in self._accepted]

    def rejected_loop_closures(self) -> List[Measurement]:
        accepted = set(self._accepted)
        return [m for m in self.store.candidates() if m.mid not in accepted]

    def rejection_reasons(self) -> Dict[int, str]:
        reasons = self.graph.rejected()
        accepted = set(self._accepted)
        for mid in self.graph.nodes():
            if mid not in accepted:
                reasons[mid] = NOT_IN_MAX_CLIQUE
        return dict(sorted(reasons.items()))

    def summary(self) -> Dict[str, object]:
        counts = self.store.counts()
        return {
            "state": self._state.value,
            "keys": len(self.store),
            "factors": {
                "odometry": counts[MeasurementKind.ODOMETRY.value],
                "prior": counts[MeasurementKind.PRIOR.value],
                "link": counts[MeasurementKind.LINK.value],
                "accepted": len(self._accepted),
            },
            "candidates": {
                "loop_closure": counts[MeasurementKind.LOOP_CLOSURE.value],
                "bridge": counts[MeasurementKind.BRIDGE.value],
                "rejected": len(self.store.candidates()) - len(self._accepted),
            },
        }

    def reset(self) -> None:
        """Drop everything and return to the EMPTY state (params are kept)."""
        self._init_state()

    def _require_loaded(self) -> None:
        if self._state is SolverState.EMPTY:
            raise NotLoadedError("No graph loaded")

    # camelCase aliases of the public surface
    loadGraph = load_graph
    addGraph = add_graph
    getFactorsUnsafe = get_factors_unsafe
    calculateEstimate = calculate_estimate
