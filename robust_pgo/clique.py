"""Consistency graph over loop-closure candidates and its maximum clique.

Nodes are measurement ids (``Measurement.mid``), grouped by the robot pair the
candidate connects. Edges only exist inside a group; candidates of different
groups never share a trajectory segment and count as mutually consistent, so
the maximum clique of the whole graph is the union of the per-group maximum
cliques. Only groups touched since the last update are re-solved.
"""
from bisect import insort
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple
import logging

logger = logging.getLogger("robust_pgo.clique")

Group = Tuple[str, str]


class ConsistencyGraph:

    def __init__(self):
        self._order: Dict[Group, List[int]] = {}
        self._adj: Dict[int, Set[int]] = {}
        self._group_of: Dict[int, Group] = {}
        self._rejected: Dict[int, str] = {}
        self._dirty: Set[Group] = set()

    def __contains__(self, mid: int) -> bool:
        return mid in self._adj

    def __len__(self) -> int:
        return len(self._adj)

    def add_node(self, mid: int, group: Group) -> None:
        if mid in self._adj:
            raise ValueError(f"Candidate {mid} is already in the consistency graph")
        insort(self._order.setdefault(group, []), mid)
        self._adj[mid] = set()
        self._group_of[mid] = group
        self._rejected.pop(mid, None)
        self._dirty.add(group)

    def add_edge(self, a: int, b: int) -> None:
        if self._group_of[a] != self._group_of[b]:
            raise ValueError(f"Edge ({a}, {b}) crosses consistency groups")
        self._adj[a].add(b)
        self._adj[b].add(a)
        self._dirty.add(self._group_of[a])

    def has_edge(self, a: int, b: int) -> bool:
        return b in self._adj.get(a, ())

    def neighbors(self, mid: int) -> Set[int]:
        return set(self._adj[mid])

    def group_of(self, mid: int) -> Group:
        return self._group_of[mid]

    def groups(self) -> List[Group]:
        return list(self._order)

    def nodes(self, group: Optional[Group] = None) -> List[int]:
        if group is not None:
            return list(self._order.get(group, ()))
        return [mid for g in self._order for mid in self._order[g]]

    def edge_count(self) -> int:
        return sum(len(n) for n in self._adj.values()) // 2

    def record_rejected(self, mid: int, reason: str) -> None:
        self._rejected[mid] = reason

    def rejected(self) -> Dict[int, str]:
        """Candidates kept out of the graph, with the reason."""
        return dict(self._rejected)

    def pop_dirty(self) -> List[Group]:
        dirty = [g for g in self._order if g in self._dirty]
        self._dirty.clear()
        return dirty


def is_clique(nodes: Iterable[int], adjacency: Mapping[int, Set[int]]) -> bool:
    nodes = list(nodes)
    return all(b in adjacency[a] for i, a in enumerate(nodes) for b in nodes[i + 1:])


def max_clique(order: Sequence[int],
               adjacency: Mapping[int, Set[int]],
               incumbent: Sequence[int] = ()) -> List[int]:
    """Exact maximum clique by branch and bound.

    ``order`` fixes the search order (candidate arrival order). The incumbent
    is kept unless a strictly larger clique exists; among larger cliques the
    one that comes first lexicographically in ``order`` is returned. Without
    an incumbent this is the lexicographically-first maximum clique.
    """
    rank = {v: i for i, v in enumerate(order)}
    best: List[int] = sorted(incumbent, key=rank.__getitem__)
    if not is_clique(best, adjacency):
        raise ValueError("Incumbent is not a clique")

    # A vertex with degree + 1 <= |best| cannot be part of a larger clique
    candidates = [v for v in order if len(adjacency[v]) + 1 > len(best)]

    def expand(clique: List[int], cands: List[int]) -> None:
        nonlocal best
        if len(clique) > len(best):
            best = list(clique)
        for idx, v in enumerate(cands):
            if len(clique) + len(cands) - idx <= len(best):
                return
            nbrs = adjacency[v]
            expand(clique + [v], [u for u in cands[idx + 1:] if u in nbrs])

    expand([], candidates)
    return best


class MaxCliqueSelector:
    """Keeps the current maximum clique of every group of a ConsistencyGraph."""

    def __init__(self):
        self._cliques: Dict[Group, List[int]] = {}

    def update(self, graph: ConsistencyGraph) -> List[int]:
        for group in graph.pop_dirty():
            order = graph.nodes(group)
            adjacency = {v: graph.neighbors(v) for v in order}
            previous = self._cliques.get(group, [])
            clique = max_clique(order, adjacency, previous)
            if clique != previous:
                logger.debug("Group %s: max clique %d -> %d of %d candidates",
                             "-".join(group), len(previous), len(clique), len(order))
            self._cliques[group] = clique
        return self.accepted()

    def clique(self, group: Group) -> List[int]:
        return list(self._cliques.get(group, ()))

    def accepted(self) -> List[int]:
        return sorted(mid for clique in self._cliques.values() for mid in clique)

    def clear(self) -> None:
        self._cliques.clear()
