from __future__ import annotations

import logging
from typing import Callable, Optional

from milestone_scheduler.core.errors import GraphBuildError, MilestoneNotFoundError, StoreError
from milestone_scheduler.core.model import ContractGraph, Milestone, MilestoneDependency
from milestone_scheduler.core.store.base import MilestoneStore

logger = logging.getLogger(__name__)


def build_contract_graph(store: MilestoneStore, contract_id: str) -> ContractGraph:
    """Load a contract's milestones and edges and build the adjacency view.

    The graph comes from MilestoneDependency edges only; `Milestone.dependencies`
    is never consulted. Dangling and cross-contract edges are reported, not dropped.
    """
    try:
        milestones = store.load_milestones_by_contract(contract_id)
        edges = store.load_dependencies_by_contract(contract_id)
    except StoreError as e:
        raise GraphBuildError(
            code="E_STORE_UNAVAILABLE",
            message=f"failed to load milestone graph: {e.message}",
            contract_id=contract_id,
        ) from e

    return assemble_graph(contract_id, milestones, edges, resolve=store.get_milestone)


def assemble_graph(
    contract_id: str,
    milestones: list[Milestone],
    edges: list[MilestoneDependency],
    *,
    resolve: Optional[Callable[[str], Milestone]] = None,
) -> ContractGraph:
    milestones_by_id: dict[str, Milestone] = {}
    for m in milestones:
        if m.id in milestones_by_id:
            raise GraphBuildError(
                code="E_DUPLICATE_MILESTONE",
                message=f"store returned milestone {m.id} more than once",
                contract_id=contract_id,
                path=m.id,
            )
        if m.contract_id != contract_id:
            raise GraphBuildError(
                code="E_FOREIGN_MILESTONE",
                message=f"milestone {m.id} belongs to contract {m.contract_id}",
                contract_id=contract_id,
                path=m.id,
            )
        milestones_by_id[m.id] = m

    predecessors: dict[str, list[str]] = {nid: [] for nid in milestones_by_id}
    successors: dict[str, list[str]] = {nid: [] for nid in milestones_by_id}
    prereq_preds: dict[str, list[str]] = {nid: [] for nid in milestones_by_id}
    prereq_succs: dict[str, list[str]] = {nid: [] for nid in milestones_by_id}

    kept: list[MilestoneDependency] = []
    for e in edges:
        for endpoint in (e.milestone_id, e.depends_on_id):
            if endpoint not in milestones_by_id:
                raise _unresolved_endpoint(contract_id, e, endpoint, resolve)
        kept.append(e)

        # Collapse repeated (dependent, prerequisite) pairs into one link.
        if e.depends_on_id not in predecessors[e.milestone_id]:
            predecessors[e.milestone_id].append(e.depends_on_id)
            successors[e.depends_on_id].append(e.milestone_id)
        if e.constrains_timing and e.depends_on_id not in prereq_preds[e.milestone_id]:
            prereq_preds[e.milestone_id].append(e.depends_on_id)
            prereq_succs[e.depends_on_id].append(e.milestone_id)

    for adj in (predecessors, successors, prereq_preds, prereq_succs):
        for nid in adj:
            adj[nid].sort()

    logger.debug(
        "built graph for contract %s: %d milestones, %d edges",
        contract_id,
        len(milestones_by_id),
        len(kept),
    )
    return ContractGraph(
        contract_id=contract_id,
        milestones_by_id=milestones_by_id,
        edges=kept,
        predecessors=predecessors,
        successors=successors,
        prerequisite_predecessors=prereq_preds,
        prerequisite_successors=prereq_succs,
    )


def _unresolved_endpoint(
    contract_id: str,
    edge: MilestoneDependency,
    endpoint: str,
    resolve: Optional[Callable[[str], Milestone]],
) -> GraphBuildError:
    path = f"dependencies.{edge.id}"
    if resolve is not None:
        try:
            other = resolve(endpoint)
        except MilestoneNotFoundError:
            other = None
        except StoreError as e:
            return GraphBuildError(
                code="E_STORE_UNAVAILABLE",
                message=f"failed to resolve milestone {endpoint}: {e.message}",
                contract_id=contract_id,
                path=path,
            )
        if other is not None and other.contract_id != contract_id:
            return GraphBuildError(
                code="E_CROSS_CONTRACT_EDGE",
                message=(
                    f"dependency {edge.id} links milestone {endpoint} "
                    f"of contract {other.contract_id}"
                ),
                contract_id=contract_id,
                path=path,
            )
    return GraphBuildError(
        code="E_DANGLING_EDGE",
        message=f"dependency {edge.id} references unknown milestone {endpoint}",
        contract_id=contract_id,
        path=path,
    )
