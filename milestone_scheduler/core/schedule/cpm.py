"""Critical-path method over a validated contract graph.

Times are offsets from the schedule's zero-time, expressed as `timedelta`, so
slack comparisons are exact. Only prerequisite edges constrain timing; parallel
edges are carried through for reporting.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from milestone_scheduler.core.errors import InconsistentDurationError
from milestone_scheduler.core.model import ContractGraph


ZERO = timedelta(0)

# Chain enumeration is exponential on dense critical lattices.
MAX_CRITICAL_CHAINS = 256


@dataclass(frozen=True)
class MilestoneTiming:
    milestone_id: str
    duration: timedelta
    earliest_start: timedelta
    earliest_finish: timedelta
    latest_start: timedelta
    latest_finish: timedelta
    slack: timedelta
    is_critical: bool


@dataclass(frozen=True)
class CalendarWindow:
    earliest_start: datetime
    earliest_finish: datetime
    latest_start: datetime
    latest_finish: datetime


@dataclass(frozen=True)
class Schedule:
    contract_id: str
    order: list[str]
    timings: dict[str, MilestoneTiming]
    total_duration: timedelta
    critical_path_duration: timedelta
    slack_time: timedelta
    critical_ids: list[str]
    critical_chains: list[list[str]]

    def timing(self, milestone_id: str) -> MilestoneTiming:
        return self.timings[milestone_id]

    def to_calendar(self, start: datetime) -> dict[str, CalendarWindow]:
        return {
            nid: CalendarWindow(
                earliest_start=start + t.earliest_start,
                earliest_finish=start + t.earliest_finish,
                latest_start=start + t.latest_start,
                latest_finish=start + t.latest_finish,
            )
            for nid, t in self.timings.items()
        }


def milestone_duration(graph: ContractGraph, milestone_id: str) -> timedelta:
    m = graph.milestones_by_id[milestone_id]
    if m.estimated_duration is None:
        # Unset duration: an instantaneous gate, not an activity.
        return ZERO
    if m.estimated_duration < ZERO:
        raise InconsistentDurationError(
            code="E_NEGATIVE_DURATION",
            message=f"estimated_duration must be >= 0, got {m.estimated_duration}",
            contract_id=graph.contract_id,
            path=f"milestones.{milestone_id}.estimated_duration",
            milestone_id=milestone_id,
        )
    return m.estimated_duration


def compute_schedule(graph: ContractGraph, order: list[str]) -> Schedule:
    """Forward and backward CPM passes.

    `order` must be a topological order of `graph` (see topo_sort); the graph is
    not re-validated here.
    """
    if len(order) != len(graph.milestones_by_id) or set(order) != set(graph.milestones_by_id):
        raise ValueError("order must be a permutation of the graph's milestone ids")

    durations = {nid: milestone_duration(graph, nid) for nid in order}
    preds = graph.prerequisite_predecessors
    succs = graph.prerequisite_successors

    es: dict[str, timedelta] = {}
    ef: dict[str, timedelta] = {}
    for nid in order:
        es[nid] = max((ef[p] for p in preds[nid]), default=ZERO)
        ef[nid] = es[nid] + durations[nid]

    total = max((ef[nid] for nid in order if not succs[nid]), default=ZERO)

    ls: dict[str, timedelta] = {}
    lf: dict[str, timedelta] = {}
    for nid in reversed(order):
        lf[nid] = min((ls[s] for s in succs[nid]), default=total)
        ls[nid] = lf[nid] - durations[nid]

    timings: dict[str, MilestoneTiming] = {}
    for nid in order:
        slack = ls[nid] - es[nid]
        if slack < ZERO or slack != lf[nid] - ef[nid]:
            raise InconsistentDurationError(
                code="E_NEGATIVE_SLACK",
                message=f"computed slack {slack} is inconsistent; is the order topological?",
                contract_id=graph.contract_id,
                path=f"milestones.{nid}",
                milestone_id=nid,
            )
        timings[nid] = MilestoneTiming(
            milestone_id=nid,
            duration=durations[nid],
            earliest_start=es[nid],
            earliest_finish=ef[nid],
            latest_start=ls[nid],
            latest_finish=lf[nid],
            slack=slack,
            is_critical=slack == ZERO,
        )

    critical_ids = [nid for nid in order if timings[nid].is_critical]
    critical_path_duration = _longest_critical_chain(graph, order, timings)
    if critical_path_duration != total:
        raise InconsistentDurationError(
            code="E_CPM_MISMATCH",
            message=(
                f"critical path duration {critical_path_duration} "
                f"differs from total duration {total}"
            ),
            contract_id=graph.contract_id,
        )

    return Schedule(
        contract_id=graph.contract_id,
        order=list(order),
        timings=timings,
        total_duration=total,
        critical_path_duration=critical_path_duration,
        slack_time=sum((t.slack for t in timings.values() if not t.is_critical), ZERO),
        critical_ids=critical_ids,
        critical_chains=_critical_chains(graph, order, timings),
    )


def _tight_critical_successors(
    graph: ContractGraph, nid: str, timings: dict[str, MilestoneTiming]
) -> list[str]:
    t = timings[nid]
    return [
        s
        for s in graph.prerequisite_successors[nid]
        if timings[s].is_critical and timings[s].earliest_start == t.earliest_finish
    ]


def _chain_heads(
    graph: ContractGraph, order: list[str], timings: dict[str, MilestoneTiming]
) -> list[str]:
    heads: list[str] = []
    for nid in order:
        t = timings[nid]
        if not t.is_critical or t.earliest_start != ZERO:
            continue
        # A zero-duration critical gate ahead of nid makes nid interior, not a head.
        if any(
            timings[p].is_critical and timings[p].earliest_finish == ZERO
            for p in graph.prerequisite_predecessors[nid]
        ):
            continue
        heads.append(nid)
    return heads


def _longest_critical_chain(
    graph: ContractGraph, order: list[str], timings: dict[str, MilestoneTiming]
) -> timedelta:
    """Longest chain of zero-slack milestones linked finish-to-start, summed by duration."""
    if not order:
        return ZERO
    best: dict[str, timedelta] = {}
    for nid in _chain_heads(graph, order, timings):
        best[nid] = timings[nid].duration
    for nid in order:
        if nid not in best:
            continue
        for s in _tight_critical_successors(graph, nid, timings):
            candidate = best[nid] + timings[s].duration
            if s not in best or candidate > best[s]:
                best[s] = candidate
    return max(best.values(), default=ZERO)


def _critical_chains(
    graph: ContractGraph, order: list[str], timings: dict[str, MilestoneTiming]
) -> list[list[str]]:
    """Source-to-sink chains made only of critical milestones, in a stable order."""
    chains: list[list[str]] = []
    for head in _chain_heads(graph, order, timings):
        # Explicit (milestone, depth) frames; `path` holds the current prefix.
        path: list[str] = []
        stack: list[tuple[str, int]] = [(head, 0)]
        while stack and len(chains) < MAX_CRITICAL_CHAINS:
            nid, depth = stack.pop()
            del path[depth:]
            path.append(nid)
            nxt = _tight_critical_successors(graph, nid, timings)
            if not nxt:
                chains.append(list(path))
                continue
            stack.extend((s, depth + 1) for s in reversed(nxt))
    return chains
