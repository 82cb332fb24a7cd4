import gtsam
import pytest

from robust_pgo.consistency import ConsistencyChecker, Verdict
from robust_pgo.models import MeasurementKind
from robust_pgo.store import PoseGraphStore

from conftest import PRECISE_COV, between, bridge_of, outlier_loops, prior_on, robot_a, robot_b


@pytest.fixture
def loaded():
    a = robot_a(odom_cov=PRECISE_COV, lc_cov=PRECISE_COV)
    a.loops += outlier_loops(a, [(5, 30), (15, 40)], cov=PRECISE_COV)
    b = robot_b(a, odom_cov=PRECISE_COV, lc_cov=PRECISE_COV)
    store = PoseGraphStore()
    store.commit(store.stage(a.measurements, a.initial(), prior=prior_on(a.key(0), a.gt[a.key(0)])))
    store.commit(store.stage(b.measurements, b.initial(), bridge=bridge_of(a, b, PRECISE_COV)))
    return store, a, b


def _find(store, k1, k2):
    return next(m for m in store.candidates() if (str(m.key1), str(m.key2)) == (k1, k2))


def test_true_loop_closure_passes_odometry_check(loaded):
    store, _, _ = loaded
    checker = ConsistencyChecker(store, 10.0, 10.0)
    verdict, residual = checker.check_odometry(_find(store, "a3", "a28"))
    assert verdict is Verdict.CONSISTENT
    assert residual == pytest.approx(0.0, abs=1e-6)


def test_outlier_fails_odometry_check(loaded):
    store, _, _ = loaded
    checker = ConsistencyChecker(store, 10.0, 10.0)
    verdict, residual = checker.check_odometry(_find(store, "a5", "a30"))
    assert verdict is Verdict.INCONSISTENT
    assert residual > 10.0


def test_zero_threshold_rejects_without_computing(loaded):
    store, _, _ = loaded
    checker = ConsistencyChecker(store, 0.0, 10.0)
    assert checker.check_odometry(_find(store, "a3", "a28")) == (Verdict.INCONSISTENT, None)


def test_inter_robot_candidates_chain_through_link(loaded):
    store, a, b = loaded
    checker = ConsistencyChecker(store, 10.0, 10.0)
    inter = _find(store, "a30", "b12")
    link = store.measurements()[-1]
    assert link.kind is MeasurementKind.LINK and str(link.key1) == "a0"
    assert link not in store.candidates()
    assert inter.kind is MeasurementKind.BRIDGE
    assert checker.group_of(inter) == ("a", "b")
    chain = checker.reference_chain(a.key(30), b.key(12))
    assert chain.pose.equals(a.gt[a.key(30)].between(b.gt[b.key(12)]), 1e-6)
    assert checker.check_odometry(inter)[0] is Verdict.CONSISTENT


def test_inter_robot_candidate_is_not_its_own_reference(loaded):
    store, a, b = loaded
    ka, kb = a.key(0), b.key(0)
    wrong = a.gt[ka].between(b.gt[kb]).compose(gtsam.Pose3(gtsam.Rot3.Yaw(1.0), gtsam.Point3(5.0, -4.0, 2.0)))
    store.commit(store.stage([between(ka, kb, wrong, PRECISE_COV)], None))
    candidate = store.measurements()[-1]
    assert candidate.is_candidate
    checker = ConsistencyChecker(store, 10.0, 10.0)
    verdict, residual = checker.check_odometry(candidate)
    assert verdict is Verdict.INCONSISTENT
    assert residual > 10.0


def test_pairwise_consistency(loaded):
    store, _, _ = loaded
    checker = ConsistencyChecker(store, 1e9, 10.0)
    true1, true2 = _find(store, "a3", "a28"), _find(store, "a10", "a35")
    bad1, bad2 = _find(store, "a5", "a30"), _find(store, "a15", "a40")
    assert checker.pairwise_residual(true1, true2) == pytest.approx(0.0, abs=1e-6)
    assert checker.are_consistent(true1, true2)
    assert checker.are_consistent(bad1, bad2)
    assert not checker.are_consistent(true1, bad1)
    assert not checker.are_consistent(bad2, true2)


def test_candidates_of_different_groups_are_consistent(loaded):
    store, _, _ = loaded
    checker = ConsistencyChecker(store, 10.0, 0.0)
    assert checker.are_consistent(_find(store, "a5", "a30"), _find(store, "b8", "b29"))


def test_orientation_does_not_change_pairwise_result(loaded):
    store, a, _ = loaded
    checker = ConsistencyChecker(store, 10.0, 10.0)
    reference = _find(store, "a3", "a28")
    forward = _find(store, "a10", "a35")
    k1, k2 = a.key(35), a.key(10)
    store.commit(store.stage([between(k1, k2, a.gt[k1].between(a.gt[k2]), PRECISE_COV)], None))
    backward = store.measurements()[-1]
    assert backward.key1 == k1
    assert checker.pairwise_residual(reference, backward) == pytest.approx(
        checker.pairwise_residual(reference, forward), abs=1e-6)


def test_robot_without_bridge_has_no_reference_chain():
    a = robot_a()
    store = PoseGraphStore()
    store.commit(store.stage(a.odometry, a.initial()))
    store.commit(store.stage([], {"z0": gtsam.Pose3()}))
    checker = ConsistencyChecker(store, 10.0, 10.0)
    chain = checker.reference_chain(a.key(0), a.key(5))
    assert chain.pose.equals(a.gt[a.key(0)].between(a.gt[a.key(5)]), 1e-9)
    assert checker.reference_chain(a.key(0), store.keys_by_robot()["z"][0]) is None
