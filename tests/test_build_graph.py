import pytest

from milestone_scheduler.core.errors import GraphBuildError, StoreError
from milestone_scheduler.core.graph.build_graph import build_contract_graph
from milestone_scheduler.core.model import Milestone, MilestoneDependency
from milestone_scheduler.core.store.memory import InMemoryMilestoneStore


def _store(milestones, edges):
    store = InMemoryMilestoneStore()
    for m in milestones:
        store.create_milestone(m)
    for e in edges:
        store.create_dependency(e)
    return store


def _m(nid, cid="c1", seq=1, **kw):
    return Milestone(id=nid, contract_id=cid, sequence_number=seq, **kw)


def test_graph_built_from_edges_not_authored_list():
    store = _store(
        [_m("A"), _m("B", seq=2, dependencies=["A"]), _m("C", seq=3)],
        [MilestoneDependency(id="d1", milestone_id="C", depends_on_id="B")],
    )
    g = build_contract_graph(store, "c1")
    assert g.predecessors == {"A": [], "B": [], "C": ["B"]}
    assert g.successors["B"] == ["C"]
    assert g.sources() == ["A", "B"]
    assert g.sinks() == ["A", "C"]


def test_parallel_edges_kept_out_of_timing_adjacency():
    store = _store(
        [_m("A"), _m("B", seq=2)],
        [MilestoneDependency(id="d1", milestone_id="B", depends_on_id="A", dependency_type="parallel")],
    )
    g = build_contract_graph(store, "c1")
    assert g.predecessors["B"] == ["A"]
    assert g.prerequisite_predecessors["B"] == []
    assert g.parallel_groups() == [("B", "A")]


def test_duplicate_pairs_collapse_into_one_link():
    store = _store(
        [_m("A"), _m("B", seq=2)],
        [
            MilestoneDependency(id="d1", milestone_id="B", depends_on_id="A"),
            MilestoneDependency(id="d2", milestone_id="B", depends_on_id="A"),
        ],
    )
    g = build_contract_graph(store, "c1")
    assert g.predecessors["B"] == ["A"]
    assert g.successors["A"] == ["B"]
    assert len(g.edges) == 2


def test_dangling_edge_reported():
    store = _store([_m("A")], [MilestoneDependency(id="d1", milestone_id="A", depends_on_id="ghost")])
    with pytest.raises(GraphBuildError) as exc:
        build_contract_graph(store, "c1")
    assert exc.value.code == "E_DANGLING_EDGE"
    assert "ghost" in exc.value.message


def test_cross_contract_edge_reported():
    store = _store(
        [_m("A"), _m("X", cid="c2")],
        [MilestoneDependency(id="d1", milestone_id="A", depends_on_id="X")],
    )
    with pytest.raises(GraphBuildError) as exc:
        build_contract_graph(store, "c1")
    assert exc.value.code == "E_CROSS_CONTRACT_EDGE"


class BrokenStore(InMemoryMilestoneStore):
    def load_dependencies_by_contract(self, contract_id):
        raise StoreError(code="E_BACKEND_DOWN", message="connection refused")


def test_store_failure_surfaces_as_graph_build_error():
    store = BrokenStore()
    store.create_milestone(_m("A"))
    with pytest.raises(GraphBuildError) as exc:
        build_contract_graph(store, "c1")
    assert exc.value.code == "E_STORE_UNAVAILABLE"
    assert exc.value.contract_id == "c1"
    assert "connection refused" in exc.value.message
