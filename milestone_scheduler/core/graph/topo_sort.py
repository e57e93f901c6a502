from __future__ import annotations

import heapq
from collections import deque
from typing import Iterator

from milestone_scheduler.core.errors import CycleDetectedError
from milestone_scheduler.core.model import ContractGraph


def topological_order(graph: ContractGraph) -> list[str]:
    """Kahn's algorithm over every edge type.

    Ready milestones are released by ascending (sequence_number, id), so the order
    is reproducible for an unchanged graph. Raises CycleDetectedError naming every
    milestone that could not be released.
    """
    in_degree: dict[str, int] = {nid: len(preds) for nid, preds in graph.predecessors.items()}

    ready: list[tuple[int, str]] = [
        (graph.milestones_by_id[nid].sequence_number, nid) for nid, d in in_degree.items() if d == 0
    ]
    heapq.heapify(ready)

    order: list[str] = []
    while ready:
        _, nid = heapq.heappop(ready)
        order.append(nid)
        for succ in graph.successors[nid]:
            in_degree[succ] -= 1
            if in_degree[succ] == 0:
                heapq.heappush(ready, (graph.milestones_by_id[succ].sequence_number, succ))

    if len(order) != len(in_degree):
        blocked = sorted(nid for nid, d in in_degree.items() if d > 0)
        cycles = _find_cycles(graph, set(blocked))
        rendered = "; ".join(" -> ".join(c) for c in cycles)
        raise CycleDetectedError(
            code="E_CYCLE_DETECTED",
            message=f"dependency cycle detected: {rendered} (unschedulable: {', '.join(blocked)})",
            contract_id=graph.contract_id,
            path="dependencies",
            milestone_ids=tuple(blocked),
            cycles=tuple(tuple(c) for c in cycles),
        )
    return order


def is_acyclic(graph: ContractGraph) -> bool:
    try:
        topological_order(graph)
    except CycleDetectedError:
        return False
    return True


def check_new_edge(graph: ContractGraph, milestone_id: str, depends_on_id: str) -> None:
    """Reject an edge (milestone_id depends on depends_on_id) that would close a cycle.

    The edge closes a cycle exactly when depends_on_id is already reachable from
    milestone_id along successor links.
    """
    if milestone_id == depends_on_id:
        raise CycleDetectedError(
            code="E_CYCLE_DETECTED",
            message=f"milestone {milestone_id} cannot depend on itself",
            contract_id=graph.contract_id,
            path=f"dependencies.{milestone_id}",
            milestone_ids=(milestone_id,),
            cycles=((milestone_id, milestone_id),),
        )

    parent: dict[str, str] = {}
    q: deque[str] = deque([milestone_id])
    seen: set[str] = {milestone_id}
    while q:
        cur = q.popleft()
        if cur == depends_on_id:
            break
        for nxt in graph.successors.get(cur, []):
            if nxt not in seen:
                seen.add(nxt)
                parent[nxt] = cur
                q.append(nxt)
    else:
        return

    # Path milestone_id -> ... -> depends_on_id, closed by the new edge.
    path = [depends_on_id]
    while path[-1] != milestone_id:
        path.append(parent[path[-1]])
    path.reverse()
    cycle = path + [milestone_id]
    raise CycleDetectedError(
        code="E_CYCLE_DETECTED",
        message=(
            f"{milestone_id} depends on {depends_on_id} would create a cycle: "
            + " -> ".join(cycle)
        ),
        contract_id=graph.contract_id,
        path=f"dependencies.{milestone_id}",
        milestone_ids=tuple(sorted(set(path))),
        cycles=(tuple(cycle),),
    )


def _find_cycles(graph: ContractGraph, within: set[str]) -> list[list[str]]:
    """Concrete cycles among `within`, found by DFS along prerequisite-of links."""
    WHITE, GRAY, BLACK = 0, 1, 2
    state: dict[str, int] = {nid: WHITE for nid in within}
    stack: list[str] = []
    emitted: set[frozenset[str]] = set()
    out: list[list[str]] = []

    for root in sorted(state):
        if state[root] != WHITE:
            continue
        state[root] = GRAY
        stack.append(root)
        frames: list[tuple[str, Iterator[str]]] = [(root, iter(graph.predecessors.get(root, [])))]
        while frames:
            u, preds = frames[-1]
            v = next(preds, None)
            if v is None:
                frames.pop()
                stack.pop()
                state[u] = BLACK
                continue
            if v not in state:
                continue
            if state[v] == GRAY:
                # cycle: v ... u -> v
                cycle = stack[stack.index(v):] + [v]
                key = frozenset(cycle)
                if key not in emitted:
                    emitted.add(key)
                    out.append(cycle)
            elif state[v] == WHITE:
                state[v] = GRAY
                stack.append(v)
                frames.append((v, iter(graph.predecessors.get(v, []))))

    return out
