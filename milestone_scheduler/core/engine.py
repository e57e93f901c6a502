from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional, Union

from milestone_scheduler.core.analytics.aggregate import (
    CompletionStats,
    DelayedMilestone,
    MilestoneFilter,
    PerformanceMetrics,
    ProgressTrend,
    RiskAnalysis,
    completion_stats,
    delayed_milestones,
    filter_milestones,
    performance_metrics,
    progress_trends,
    resolve_due_dates,
    risk_analysis,
)
from milestone_scheduler.core.config import DEFAULT_CONFIG, SchedulerConfig
from milestone_scheduler.core.errors import CycleDetectedError, InconsistentDurationError, SchedulerError
from milestone_scheduler.core.graph.build_graph import build_contract_graph
from milestone_scheduler.core.graph.topo_sort import topological_order
from milestone_scheduler.core.locks import ContractLocks
from milestone_scheduler.core.model import ContractGraph, Milestone, utc_now
from milestone_scheduler.core.schedule.cpm import CalendarWindow, Schedule, compute_schedule
from milestone_scheduler.core.store.base import MilestoneStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContractAnalysis:
    """One scheduling pass over a store snapshot.

    `order`/`schedule` are None when the pass failed; the failure is kept in
    `error` so read paths that do not need CPM output still work.
    """

    graph: ContractGraph
    order: Optional[list[str]]
    schedule: Optional[Schedule]
    error: Optional[SchedulerError] = None

    def require_order(self) -> list[str]:
        if self.order is None:
            assert self.error is not None
            raise self.error
        return self.order

    def require_schedule(self) -> Schedule:
        if self.schedule is None:
            assert self.error is not None
            raise self.error
        return self.schedule

    def milestones(self) -> list[Milestone]:
        ids = self.order or sorted(
            self.graph.milestones_by_id,
            key=lambda nid: (self.graph.milestones_by_id[nid].sequence_number, nid),
        )
        return [self.graph.milestones_by_id[nid] for nid in ids]


@dataclass(frozen=True)
class TimelineEntry:
    milestone_id: str
    duration: timedelta
    earliest_start: timedelta
    earliest_finish: timedelta
    latest_start: timedelta
    latest_finish: timedelta
    slack: timedelta
    is_critical: bool
    window: Optional[CalendarWindow] = None


@dataclass(frozen=True)
class TimelineAnalysis:
    contract_id: str
    total_duration: timedelta
    critical_path_duration: timedelta
    slack_time: timedelta
    milestones: list[TimelineEntry]
    critical_chains: list[list[str]]
    parallel_groups: list[tuple[str, str]]


@dataclass(frozen=True)
class ContractReport:
    timeline: TimelineAnalysis
    completion: CompletionStats
    risk: RiskAnalysis


def run_pipeline(store: MilestoneStore, contract_id: str) -> ContractAnalysis:
    """Store -> graph -> topological order -> CPM, without locking or caching."""
    graph = build_contract_graph(store, contract_id)
    try:
        order = topological_order(graph)
    except CycleDetectedError as e:
        return ContractAnalysis(graph=graph, order=None, schedule=None, error=e)
    try:
        schedule = compute_schedule(graph, order)
    except InconsistentDurationError as e:
        return ContractAnalysis(graph=graph, order=order, schedule=None, error=e)
    return ContractAnalysis(graph=graph, order=order, schedule=schedule)


class MilestoneEngine:
    """Read-side entry point for reporting, UI and payment-release consumers."""

    def __init__(
        self,
        store: MilestoneStore,
        config: SchedulerConfig = DEFAULT_CONFIG,
        locks: Optional[ContractLocks] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.locks = locks or ContractLocks()
        self._cache: dict[str, ContractAnalysis] = {}
        self._cache_lock = threading.Lock()

    # Cache

    def invalidate(self, contract_id: str) -> None:
        with self._cache_lock:
            dropped = self._cache.pop(contract_id, None) is not None
        if dropped:
            logger.info("invalidated cached schedule for contract %s", contract_id)

    def analyze(self, contract_id: str) -> ContractAnalysis:
        with self.locks.read(contract_id):
            return self._analyze_locked(contract_id)

    def _analyze_locked(self, contract_id: str) -> ContractAnalysis:
        if self.config.cache_enabled:
            with self._cache_lock:
                hit = self._cache.get(contract_id)
            if hit is not None:
                logger.debug("schedule cache hit for contract %s", contract_id)
                return hit

        analysis = run_pipeline(self.store, contract_id)
        if self.config.cache_enabled:
            with self._cache_lock:
                self._cache[contract_id] = analysis
        return analysis

    # Graph and CPM

    def validate_dependency_graph(self, contract_id: str) -> bool:
        analysis = self.analyze(contract_id)
        return not isinstance(analysis.error, CycleDetectedError)

    def get_topological_order(self, contract_id: str) -> list[str]:
        return list(self.analyze(contract_id).require_order())

    def get_critical_path_milestones(self, contract_id: str) -> list[Milestone]:
        """Critical milestones in topological order, with the derived flag refreshed."""
        analysis = self.analyze(contract_id)
        schedule = analysis.require_schedule()
        return [
            replace(analysis.graph.milestones_by_id[nid], critical_path=True)
            for nid in schedule.critical_ids
        ]

    def get_milestone_timeline_analysis(
        self, contract_id: str, start: Optional[datetime] = None
    ) -> TimelineAnalysis:
        analysis = self.analyze(contract_id)
        schedule = analysis.require_schedule()
        windows = schedule.to_calendar(start) if start is not None else {}
        entries = [
            TimelineEntry(
                milestone_id=t.milestone_id,
                duration=t.duration,
                earliest_start=t.earliest_start,
                earliest_finish=t.earliest_finish,
                latest_start=t.latest_start,
                latest_finish=t.latest_finish,
                slack=t.slack,
                is_critical=t.is_critical,
                window=windows.get(t.milestone_id),
            )
            for t in schedule.timings.values()
        ]
        return TimelineAnalysis(
            contract_id=contract_id,
            total_duration=schedule.total_duration,
            critical_path_duration=schedule.critical_path_duration,
            slack_time=schedule.slack_time,
            milestones=entries,
            critical_chains=[list(c) for c in schedule.critical_chains],
            parallel_groups=analysis.graph.parallel_groups(),
        )

    # Progress and risk

    def get_milestone_completion_stats(
        self,
        contract_id: str,
        *,
        now: Optional[datetime] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        anchor: Optional[datetime] = None,
    ) -> CompletionStats:
        analysis = self.analyze(contract_id)
        milestones = analysis.milestones()
        return completion_stats(
            milestones,
            now=now or utc_now(),
            due_dates=resolve_due_dates(milestones, analysis.schedule, anchor),
            start=start,
            end=end,
        )

    def get_milestone_risk_analysis(self, contract_id: str) -> RiskAnalysis:
        analysis = self.analyze(contract_id)
        return risk_analysis(
            analysis.milestones(), analysis.require_schedule(), self.config.risk_weights
        )

    def get_delayed_milestones_report(
        self,
        contract_id: str,
        *,
        now: Optional[datetime] = None,
        threshold: Optional[timedelta] = None,
        anchor: Optional[datetime] = None,
    ) -> list[DelayedMilestone]:
        analysis = self.analyze(contract_id)
        milestones = analysis.milestones()
        return delayed_milestones(
            milestones,
            now=now or utc_now(),
            threshold=self.config.delay_threshold if threshold is None else threshold,
            due_dates=resolve_due_dates(milestones, analysis.schedule, anchor),
            schedule=analysis.schedule,
        )

    def get_progress_trends(
        self, contract_id: str, *, now: Optional[datetime] = None, days: Optional[int] = None
    ) -> list[ProgressTrend]:
        analysis = self.analyze(contract_id)
        milestones = analysis.milestones()
        history = self.store.load_progress_history([m.id for m in milestones])
        return progress_trends(
            milestones,
            history,
            now=now or utc_now(),
            days=self.config.trend_days if days is None else days,
        )

    def get_performance_metrics(self, contract_id: str) -> PerformanceMetrics:
        return performance_metrics(self.analyze(contract_id).milestones())

    def filter_milestones(self, contract_id: str, f: MilestoneFilter) -> list[Milestone]:
        return filter_milestones(self.analyze(contract_id).milestones(), f)

    def check_dependencies_met(self, milestone_id: str) -> bool:
        """True when every prerequisite of the milestone is complete."""
        milestone = self.store.get_milestone(milestone_id)
        graph = self.analyze(milestone.contract_id).graph
        return all(
            graph.milestones_by_id[p].is_complete
            for p in graph.prerequisite_predecessors.get(milestone_id, [])
        )

    # Fan-out

    def contract_report(self, contract_id: str, *, now: Optional[datetime] = None) -> ContractReport:
        return ContractReport(
            timeline=self.get_milestone_timeline_analysis(contract_id),
            completion=self.get_milestone_completion_stats(contract_id, now=now),
            risk=self.get_milestone_risk_analysis(contract_id),
        )

    def analyze_contracts(
        self,
        contract_ids: list[str],
        *,
        workers: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> dict[str, Union[ContractReport, SchedulerError]]:
        """Report on many contracts in parallel; per-contract failures are returned, not raised."""
        out: dict[str, Union[ContractReport, SchedulerError]] = {}
        n = max(1, workers or self.config.workers)
        with ThreadPoolExecutor(max_workers=n) as ex:
            futures = {ex.submit(self.contract_report, cid, now=now): cid for cid in contract_ids}
            for f in as_completed(futures):
                cid = futures[f]
                try:
                    out[cid] = f.result()
                except SchedulerError as e:
                    logger.warning("analysis failed for contract %s: %s", cid, e)
                    out[cid] = e
        return {cid: out[cid] for cid in contract_ids if cid in out}
