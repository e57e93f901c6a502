import random

import pytest

from milestone_scheduler.core.errors import CycleDetectedError
from milestone_scheduler.core.graph.build_graph import assemble_graph
from milestone_scheduler.core.graph.topo_sort import check_new_edge, is_acyclic, topological_order
from milestone_scheduler.core.model import Milestone, MilestoneDependency


def _graph(ids, edges, seq=None):
    seq = seq or {}
    milestones = [Milestone(id=i, contract_id="c1", sequence_number=seq.get(i, n)) for n, i in enumerate(ids)]
    deps = [
        MilestoneDependency(id=f"d{n}", milestone_id=m, depends_on_id=p, dependency_type=t)
        for n, (m, p, t) in enumerate((e if len(e) == 3 else (*e, "prerequisite")) for e in edges)
    ]
    return assemble_graph("c1", milestones, deps)


def _random_dag(seed):
    rng = random.Random(seed)
    n = rng.randint(1, 14)
    ids = [f"M{i:02d}" for i in range(n)]
    # Edges only point from later to earlier index, so the graph is acyclic.
    edges = [
        (ids[j], ids[i], rng.choice(["prerequisite", "prerequisite", "parallel"]))
        for j in range(n)
        for i in range(j)
        if rng.random() < 0.3
    ]
    seq = {nid: rng.randint(0, 5) for nid in ids}
    shuffled = ids[:]
    rng.shuffle(shuffled)
    return _graph(shuffled, edges, seq)


@pytest.mark.parametrize("seed", range(25))
def test_order_is_permutation_with_prerequisites_first(seed):
    g = _random_dag(seed)
    order = topological_order(g)
    assert sorted(order) == sorted(g.milestones_by_id)
    pos = {nid: i for i, nid in enumerate(order)}
    for e in g.edges:
        assert pos[e.depends_on_id] < pos[e.milestone_id]


@pytest.mark.parametrize("seed", range(10))
def test_order_is_deterministic(seed):
    assert topological_order(_random_dag(seed)) == topological_order(_random_dag(seed))


def test_ready_milestones_released_by_sequence_number():
    g = _graph(["X", "Y", "Z"], [], seq={"X": 3, "Y": 1, "Z": 2})
    assert topological_order(g) == ["Y", "Z", "X"]


def test_sequence_ties_broken_by_id():
    g = _graph(["b", "a", "c"], [], seq={"a": 1, "b": 1, "c": 0})
    assert topological_order(g) == ["c", "a", "b"]


def test_two_node_cycle_names_both():
    g = _graph(["A", "B"], [("A", "B"), ("B", "A")])
    assert not is_acyclic(g)
    with pytest.raises(CycleDetectedError) as exc:
        topological_order(g)
    assert exc.value.code == "E_CYCLE_DETECTED"
    assert {"A", "B"} <= set(exc.value.milestone_ids)
    assert any({"A", "B"} == set(c) for c in exc.value.cycles)


def test_cycle_reports_blocked_downstream_milestones():
    g = _graph(["A", "B", "C", "D"], [("A", "B"), ("B", "A"), ("C", "A"), ("B", "D")])
    with pytest.raises(CycleDetectedError) as exc:
        topological_order(g)
    assert exc.value.milestone_ids == ("A", "B", "C")
    assert "D" not in exc.value.milestone_ids
    assert len(exc.value.cycles) == 1


def test_parallel_edges_take_part_in_cycles():
    g = _graph(["A", "B"], [("A", "B", "parallel"), ("B", "A")])
    assert not is_acyclic(g)


def test_check_new_edge_rejects_self_edge():
    g = _graph(["A"], [])
    with pytest.raises(CycleDetectedError) as exc:
        check_new_edge(g, "A", "A")
    assert exc.value.milestone_ids == ("A",)


def test_check_new_edge_rejects_closing_edge_with_path():
    g = _graph(["A", "B", "C"], [("B", "A"), ("C", "B")])
    with pytest.raises(CycleDetectedError) as exc:
        check_new_edge(g, "A", "C")
    assert exc.value.cycles == (("A", "B", "C", "A"),)
    assert set(exc.value.milestone_ids) == {"A", "B", "C"}


def test_check_new_edge_accepts_safe_edge():
    g = _graph(["A", "B", "C"], [("B", "A")])
    check_new_edge(g, "C", "B")
    check_new_edge(g, "C", "A")


def test_long_cycle_is_reported_not_crashed():
    n = 1500
    ids = [f"M{i:05d}" for i in range(n)]
    edges = [(ids[i + 1], ids[i]) for i in range(n - 1)] + [(ids[0], ids[-1])]
    g = _graph(ids, edges)
    assert not is_acyclic(g)
    with pytest.raises(CycleDetectedError) as exc:
        topological_order(g)
    assert exc.value.milestone_ids == tuple(ids)
    assert len(exc.value.cycles) == 1
    assert set(exc.value.cycles[0]) == set(ids)
    assert exc.value.cycles[0][0] == exc.value.cycles[0][-1]
