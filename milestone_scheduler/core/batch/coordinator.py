from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, TypeVar

from milestone_scheduler.core.config import DEFAULT_CONFIG, SchedulerConfig
from milestone_scheduler.core.engine import MilestoneEngine, run_pipeline
from milestone_scheduler.core.errors import (
    BatchMutationError,
    InconsistentDurationError,
    SchedulerError,
    StoreError,
)
from milestone_scheduler.core.graph.build_graph import assemble_graph, build_contract_graph
from milestone_scheduler.core.graph.topo_sort import check_new_edge
from milestone_scheduler.core.model import (
    DEPENDENCY_TYPES,
    Milestone,
    MilestoneDependency,
    ProgressEntry,
    ProgressUpdate,
    utc_now,
)
from milestone_scheduler.core.schedule.cpm import Schedule

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATUSES: tuple[str, ...] = ("pending", "in_progress", "completed")


class BatchMutationCoordinator:
    """Write side of the engine.

    Every operation write-locks the affected contracts, runs inside one store
    transaction, and drops the engine's cached analysis for those contracts
    before the lock is released. Any failure rolls the whole operation back.
    """

    def __init__(self, engine: MilestoneEngine, config: Optional[SchedulerConfig] = None) -> None:
        self.engine = engine
        self.store = engine.store
        self.config = config or engine.config or DEFAULT_CONFIG

    def _mutate(self, op: str, contract_ids: Iterable[str], fn: Callable[[], T]) -> T:
        ids = sorted(set(contract_ids))
        with self.engine.locks.write_many(ids):
            try:
                with self.store.transaction():
                    result = fn()
            except SchedulerError as e:
                logger.warning("%s rolled back for contracts %s: %s", op, ids, e)
                raise
            except Exception as e:
                logger.warning("%s rolled back for contracts %s: %s", op, ids, e)
                raise BatchMutationError(
                    code="E_BATCH_FAILED",
                    message=f"{op} failed and was rolled back: {e}",
                    contract_id=ids[0] if len(ids) == 1 else None,
                ) from e
            finally:
                for cid in ids:
                    self.engine.invalidate(cid)
        logger.info("%s committed for contracts %s", op, ids)
        return result

    def _contracts_of(self, milestone_ids: Iterable[str]) -> list[str]:
        # Resolved before locking. A milestone never changes contract (update_milestone
        # rejects it with E_CONTRACT_CHANGED), so the lock set cannot go stale.
        return sorted({self.store.get_milestone(mid).contract_id for mid in milestone_ids})

    # Milestones

    def create_milestone(self, milestone: Milestone) -> Milestone:
        return self.batch_create_milestones([milestone])[0]

    def batch_create_milestones(self, milestones: list[Milestone]) -> list[Milestone]:
        now = utc_now()
        stamped = [replace(m, created_at=m.created_at or now, updated_at=now) for m in milestones]
        for m in stamped:
            _check_milestone_fields(m)

        def apply() -> list[Milestone]:
            for m in stamped:
                self.store.create_milestone(m)
            return stamped

        return self._mutate("batch_create_milestones", [m.contract_id for m in stamped], apply)

    def update_milestone(self, milestone: Milestone) -> Milestone:
        _check_milestone_fields(milestone)
        current = self.store.get_milestone(milestone.id)
        if current.contract_id != milestone.contract_id:
            raise BatchMutationError(
                code="E_CONTRACT_CHANGED",
                message=f"milestone {milestone.id} cannot move from {current.contract_id} to {milestone.contract_id}",
                contract_id=current.contract_id,
                path=milestone.id,
            )
        updated = replace(milestone, updated_at=utc_now())

        def apply() -> Milestone:
            self.store.update_milestone(updated)
            return updated

        return self._mutate("update_milestone", [milestone.contract_id], apply)

    def delete_milestone(self, milestone_id: str) -> None:
        self.batch_delete_milestones([milestone_id])

    def batch_delete_milestones(self, milestone_ids: list[str]) -> None:
        """Delete milestones and every dependency edge touching them."""
        contracts = self._contracts_of(milestone_ids)
        doomed = set(milestone_ids)

        def apply() -> None:
            incident = {
                edge.id
                for cid in contracts
                for edge in self.store.load_dependencies_by_contract(cid)
                if edge.milestone_id in doomed or edge.depends_on_id in doomed
            }
            for edge_id in sorted(incident):
                self.store.delete_dependency(edge_id)
            for mid in milestone_ids:
                self.store.delete_milestone(mid)

        self._mutate("batch_delete_milestones", contracts, apply)

    # Dependencies

    def create_dependency(self, edge: MilestoneDependency) -> MilestoneDependency:
        """Accept an edge only if it keeps the contract graph valid and acyclic."""
        if edge.dependency_type not in DEPENDENCY_TYPES:
            raise BatchMutationError(
                code="E_INVALID_DEPENDENCY_TYPE",
                message=f"dependency_type must be one of {list(DEPENDENCY_TYPES)}",
                path=f"dependencies.{edge.id}.dependency_type",
            )
        dependent = self.store.get_milestone(edge.milestone_id)
        prerequisite = self.store.get_milestone(edge.depends_on_id)
        if dependent.contract_id != prerequisite.contract_id:
            raise BatchMutationError(
                code="E_CROSS_CONTRACT_EDGE",
                message=(
                    f"{edge.milestone_id} ({dependent.contract_id}) cannot depend on "
                    f"{edge.depends_on_id} ({prerequisite.contract_id})"
                ),
                contract_id=dependent.contract_id,
                path=f"dependencies.{edge.id}",
            )
        cid = dependent.contract_id

        def apply() -> MilestoneDependency:
            graph = build_contract_graph(self.store, cid)
            if any(
                e.milestone_id == edge.milestone_id and e.depends_on_id == edge.depends_on_id
                for e in graph.edges
            ):
                raise BatchMutationError(
                    code="E_DUPLICATE_DEPENDENCY",
                    message=f"{edge.milestone_id} already depends on {edge.depends_on_id}",
                    contract_id=cid,
                    path=f"dependencies.{edge.id}",
                )
            check_new_edge(graph, edge.milestone_id, edge.depends_on_id)
            self.store.create_dependency(edge)
            return edge

        return self._mutate("create_dependency", [cid], apply)

    def delete_dependency(self, dependency_id: str) -> None:
        edge = self.store.get_dependency(dependency_id)
        contracts: set[str] = set()
        for mid in (edge.milestone_id, edge.depends_on_id):
            try:
                contracts.add(self.store.get_milestone(mid).contract_id)
            except StoreError:
                continue

        self._mutate("delete_dependency", contracts, lambda: self.store.delete_dependency(dependency_id))

    def resolve_sequential_dependencies(self, contract_id: str) -> list[MilestoneDependency]:
        """Chain milestones by sequence number with prerequisite edges.

        Pairs already linked in either direction are skipped; a link that would
        close a cycle with existing edges aborts the whole operation.
        """

        def apply() -> list[MilestoneDependency]:
            milestones = self.store.load_milestones_by_contract(contract_id)
            edges = list(self.store.load_dependencies_by_contract(contract_id))
            linked = {(e.milestone_id, e.depends_on_id) for e in edges}
            created: list[MilestoneDependency] = []
            for prev, cur in zip(milestones, milestones[1:]):
                if (cur.id, prev.id) in linked or (prev.id, cur.id) in linked:
                    continue
                graph = assemble_graph(contract_id, milestones, edges)
                check_new_edge(graph, cur.id, prev.id)
                edge = MilestoneDependency(
                    id=f"dep-{cur.id}-{prev.id}",
                    milestone_id=cur.id,
                    depends_on_id=prev.id,
                    dependency_type="prerequisite",
                )
                self.store.create_dependency(edge)
                edges.append(edge)
                created.append(edge)
            return created

        return self._mutate("resolve_sequential_dependencies", [contract_id], apply)

    # Progress

    def batch_update_status(
        self, milestone_ids: list[str], status: str, *, now: Optional[datetime] = None
    ) -> None:
        if status not in STATUSES:
            raise BatchMutationError(
                code="E_INVALID_STATUS",
                message=f"invalid status: {status} (choose one of: {', '.join(STATUSES)})",
                path="status",
            )
        ts = now or utc_now()
        contracts = self._contracts_of(milestone_ids)

        def apply() -> None:
            self.store.batch_update_status(
                milestone_ids,
                status,
                in_progress_percentage=self.config.in_progress_percentage,
                now=ts,
            )
            self._record_progress(milestone_ids, ts, notes=f"status set to {status}")

        self._mutate("batch_update_status", contracts, apply)

    def batch_update_progress(
        self, updates: list[ProgressUpdate], *, now: Optional[datetime] = None, notes: str = ""
    ) -> None:
        for u in updates:
            if not 0 <= u.percentage_complete <= 100:
                raise BatchMutationError(
                    code="E_INVALID_PERCENTAGE",
                    message=f"percentage_complete must be within 0..100, got {u.percentage_complete}",
                    path=f"updates.{u.milestone_id}",
                )
        ts = now or utc_now()
        contracts = self._contracts_of(u.milestone_id for u in updates)

        def apply() -> None:
            self.store.batch_update_progress(updates, now=ts)
            self._record_progress([u.milestone_id for u in updates], ts, notes=notes)

        self._mutate("batch_update_progress", contracts, apply)

    def update_milestone_progress(
        self, milestone_id: str, percentage: float, notes: str = "", *, now: Optional[datetime] = None
    ) -> Milestone:
        self.batch_update_progress(
            [ProgressUpdate(milestone_id=milestone_id, percentage_complete=percentage)],
            now=now,
            notes=notes,
        )
        return self.store.get_milestone(milestone_id)

    def _record_progress(self, milestone_ids: list[str], ts: datetime, *, notes: str) -> None:
        """Stamp actual start/end dates and append one history entry per milestone."""
        for mid in milestone_ids:
            m = self.store.get_milestone(mid)
            stamped = m
            if m.percentage_complete > 0 and m.actual_start_date is None:
                stamped = replace(stamped, actual_start_date=ts)
            if m.percentage_complete >= 100 and m.actual_end_date is None:
                stamped = replace(stamped, actual_end_date=ts)
                if stamped.actual_start_date is not None:
                    stamped = replace(stamped, actual_duration=ts - stamped.actual_start_date)
            if stamped is not m:
                self.store.update_milestone(stamped)
            self.store.add_progress_entry(
                ProgressEntry(
                    id=f"pe-{mid}-{uuid.uuid4().hex[:12]}",
                    milestone_id=mid,
                    percentage_complete=m.percentage_complete,
                    status=m.status,
                    recorded_at=ts,
                    notes=notes,
                )
            )

    # Derived output

    def persist_critical_path(self, contract_id: str) -> Schedule:
        """Recompute CPM and overwrite every milestone's stored critical_path flag."""

        def apply() -> Schedule:
            analysis = run_pipeline(self.store, contract_id)
            schedule = analysis.require_schedule()
            critical = set(schedule.critical_ids)
            for nid, m in analysis.graph.milestones_by_id.items():
                flag = nid in critical
                if m.critical_path != flag:
                    self.store.update_milestone(replace(m, critical_path=flag))
            return schedule

        return self._mutate("persist_critical_path", [contract_id], apply)

    def apply_schedule_dates(self, contract_id: str, start: datetime) -> Schedule:
        """Write estimated start/end dates from the CPM earliest times, anchored at `start`."""

        def apply() -> Schedule:
            analysis = run_pipeline(self.store, contract_id)
            schedule = analysis.require_schedule()
            windows = schedule.to_calendar(start)
            for nid, m in analysis.graph.milestones_by_id.items():
                w = windows[nid]
                self.store.update_milestone(
                    replace(m, estimated_start_date=w.earliest_start, estimated_end_date=w.earliest_finish)
                )
            return schedule

        return self._mutate("apply_schedule_dates", [contract_id], apply)


def _check_milestone_fields(m: Milestone) -> None:
    if not 0 <= m.percentage_complete <= 100:
        raise BatchMutationError(
            code="E_INVALID_PERCENTAGE",
            message=f"percentage_complete must be within 0..100, got {m.percentage_complete}",
            contract_id=m.contract_id,
            path=f"milestones.{m.id}.percentage_complete",
        )
    if not 0 <= m.criticality_score <= 100:
        raise BatchMutationError(
            code="E_INVALID_CRITICALITY",
            message=f"criticality_score must be within 0..100, got {m.criticality_score}",
            contract_id=m.contract_id,
            path=f"milestones.{m.id}.criticality_score",
        )
    if m.estimated_duration is not None and m.estimated_duration < timedelta(0):
        raise InconsistentDurationError(
            code="E_NEGATIVE_DURATION",
            message=f"estimated_duration must be >= 0, got {m.estimated_duration}",
            contract_id=m.contract_id,
            path=f"milestones.{m.id}.estimated_duration",
            milestone_id=m.id,
        )
