from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from statistics import fmean
from typing import Iterable, Optional

from milestone_scheduler.core.config import RiskWeights
from milestone_scheduler.core.model import RISK_LEVELS, Milestone, ProgressEntry, RiskLevel
from milestone_scheduler.core.schedule.cpm import Schedule


@dataclass(frozen=True)
class CompletionStats:
    total: int
    completed: int
    pending: int  # started but not finished
    not_started: int
    overdue: int
    completion_rate: float
    average_completion: float


@dataclass(frozen=True)
class RiskEntry:
    milestone_id: str
    risk_level: RiskLevel
    criticality_score: int
    slack: Optional[timedelta]
    risk_score: float
    contingency_plans: list[str]


@dataclass(frozen=True)
class RiskAnalysis:
    high_risk_count: int
    medium_risk_count: int
    low_risk_count: int
    risk_distribution: dict[str, int]
    overall_risk_score: float
    risk_milestones: list[RiskEntry]
    high_risk_contingencies: dict[str, list[str]]


@dataclass(frozen=True)
class DelayedMilestone:
    milestone_id: str
    contract_id: str
    title: str
    original_due_date: datetime
    current_due_date: Optional[datetime]
    delay: timedelta
    percentage_complete: float
    is_critical: bool
    impact_level: RiskLevel


@dataclass(frozen=True)
class ProgressTrend:
    date: date
    completion_rate: float
    milestones_completed: int
    total_milestones: int


@dataclass(frozen=True)
class PerformanceMetrics:
    sample_size: int
    average_completion_time: Optional[timedelta]
    on_time_completion_rate: float
    early_completion_rate: float
    delayed_completion_rate: float
    average_delay: timedelta
    efficiency_score: float


@dataclass(frozen=True)
class MilestoneFilter:
    """Typed filter; every field is optional and unset fields do not constrain."""

    category: Optional[str] = None
    priority: Optional[int] = None
    risk_level: Optional[RiskLevel] = None
    critical_path: Optional[bool] = None
    start_date_from: Optional[datetime] = None
    start_date_to: Optional[datetime] = None
    due_date_from: Optional[datetime] = None
    due_date_to: Optional[datetime] = None
    min_completion: Optional[float] = None
    max_completion: Optional[float] = None
    search_text: Optional[str] = None
    exclude_statuses: list[str] = field(default_factory=list)


def resolve_due_dates(
    milestones: Iterable[Milestone],
    schedule: Optional[Schedule] = None,
    anchor: Optional[datetime] = None,
) -> dict[str, Optional[datetime]]:
    """Due date per milestone: estimated_end_date, else CPM latest finish from `anchor`."""
    windows = schedule.to_calendar(anchor) if schedule is not None and anchor is not None else {}
    out: dict[str, Optional[datetime]] = {}
    for m in milestones:
        if m.estimated_end_date is not None:
            out[m.id] = m.estimated_end_date
        elif m.id in windows:
            out[m.id] = windows[m.id].latest_finish
        else:
            out[m.id] = None
    return out


def completion_stats(
    milestones: list[Milestone],
    *,
    now: datetime,
    due_dates: Optional[dict[str, Optional[datetime]]] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> CompletionStats:
    selected = [m for m in milestones if _created_within(m, start, end)]
    due = due_dates if due_dates is not None else resolve_due_dates(selected)

    total = len(selected)
    completed = sum(1 for m in selected if m.percentage_complete >= 100)
    pending = sum(1 for m in selected if 0 < m.percentage_complete < 100)
    not_started = sum(1 for m in selected if m.percentage_complete <= 0)
    overdue = sum(1 for m in selected if _is_overdue(m, due.get(m.id), now))

    return CompletionStats(
        total=total,
        completed=completed,
        pending=pending,
        not_started=not_started,
        overdue=overdue,
        completion_rate=(completed / total * 100) if total else 0.0,
        average_completion=fmean(m.percentage_complete for m in selected) if selected else 0.0,
    )


def risk_analysis(
    milestones: list[Milestone],
    schedule: Optional[Schedule],
    weights: RiskWeights,
) -> RiskAnalysis:
    """Bucket by risk level and score each milestone.

    score = (wc * criticality + ws * slack_factor) / (wc + ws), where
    slack_factor = 100 * (1 - slack / total_duration). Zero slack scores 100;
    without a schedule the slack term is 0.
    """
    counts = {level: 0 for level in RISK_LEVELS}
    entries: list[RiskEntry] = []
    weight_sum = weights.criticality + weights.slack

    for m in milestones:
        counts[m.risk_level] = counts.get(m.risk_level, 0) + 1

        slack: Optional[timedelta] = None
        slack_factor = 0.0
        if schedule is not None and m.id in schedule.timings:
            slack = schedule.timings[m.id].slack
            if schedule.total_duration > timedelta(0):
                slack_factor = 100.0 * (1.0 - slack / schedule.total_duration)
            else:
                slack_factor = 100.0

        raw = weights.criticality * m.criticality_score + weights.slack * slack_factor
        score = raw / weight_sum if weight_sum > 0 else 0.0
        entries.append(
            RiskEntry(
                milestone_id=m.id,
                risk_level=m.risk_level,
                criticality_score=m.criticality_score,
                slack=slack,
                risk_score=round(score, 4),
                contingency_plans=list(m.contingency_plans),
            )
        )

    entries.sort(key=lambda e: (-e.risk_score, e.milestone_id))
    return RiskAnalysis(
        high_risk_count=counts["high"],
        medium_risk_count=counts["medium"],
        low_risk_count=counts["low"],
        risk_distribution=dict(counts),
        overall_risk_score=round(fmean(e.risk_score for e in entries), 4) if entries else 0.0,
        risk_milestones=entries,
        high_risk_contingencies={
            e.milestone_id: e.contingency_plans
            for e in entries
            if e.risk_level == "high" and e.contingency_plans
        },
    )


def delayed_milestones(
    milestones: list[Milestone],
    *,
    now: datetime,
    threshold: timedelta = timedelta(0),
    due_dates: Optional[dict[str, Optional[datetime]]] = None,
    schedule: Optional[Schedule] = None,
) -> list[DelayedMilestone]:
    """Unfinished milestones whose due date is older than now - threshold."""
    due = due_dates if due_dates is not None else resolve_due_dates(milestones)
    cutoff = now - threshold

    out: list[DelayedMilestone] = []
    for m in milestones:
        due_at = due.get(m.id)
        if due_at is None or m.percentage_complete >= 100 or not due_at < cutoff:
            continue
        critical = schedule is not None and m.id in schedule.timings and schedule.timings[m.id].is_critical
        out.append(
            DelayedMilestone(
                milestone_id=m.id,
                contract_id=m.contract_id,
                title=m.title,
                original_due_date=due_at,
                current_due_date=m.actual_end_date,
                delay=(m.actual_end_date or now) - due_at,
                percentage_complete=m.percentage_complete,
                is_critical=critical,
                impact_level=_impact_level(m, critical),
            )
        )
    out.sort(key=lambda d: (d.original_due_date, d.milestone_id))
    return out


def progress_trends(
    milestones: list[Milestone],
    history: list[ProgressEntry],
    *,
    now: datetime,
    days: int,
) -> list[ProgressTrend]:
    """Daily buckets from now-days through now (inclusive).

    Each bucket reflects the latest recorded percentage per milestone as of the
    end of that day. Milestones with no record yet are not counted.
    """
    wanted = {m.id for m in milestones}
    entries = sorted(
        (h for h in history if h.milestone_id in wanted), key=lambda h: (h.recorded_at, h.id)
    )

    today = now.date()
    latest: dict[str, float] = {}
    idx = 0
    out: list[ProgressTrend] = []
    for offset in range(days, -1, -1):
        day = today - timedelta(days=offset)
        while idx < len(entries) and entries[idx].recorded_at.date() <= day:
            latest[entries[idx].milestone_id] = entries[idx].percentage_complete
            idx += 1
        values = list(latest.values())
        out.append(
            ProgressTrend(
                date=day,
                completion_rate=fmean(values) if values else 0.0,
                milestones_completed=sum(1 for v in values if v >= 100),
                total_milestones=len(values),
            )
        )
    return out


def performance_metrics(milestones: list[Milestone]) -> PerformanceMetrics:
    done = [
        m
        for m in milestones
        if m.percentage_complete >= 100 and m.actual_end_date is not None and m.estimated_end_date is not None
    ]
    if not done:
        return PerformanceMetrics(
            sample_size=0,
            average_completion_time=None,
            on_time_completion_rate=0.0,
            early_completion_rate=0.0,
            delayed_completion_rate=0.0,
            average_delay=timedelta(0),
            efficiency_score=100.0,
        )

    n = len(done)
    spans = [m.actual_end_date - m.actual_start_date for m in done if m.actual_start_date is not None]
    on_time = sum(1 for m in done if m.actual_end_date <= m.estimated_end_date)
    early = sum(1 for m in done if m.actual_end_date < m.estimated_end_date)
    late = [m.actual_end_date - m.estimated_end_date for m in done if m.actual_end_date > m.estimated_end_date]
    delayed_rate = len(late) * 100.0 / n

    return PerformanceMetrics(
        sample_size=n,
        average_completion_time=sum(spans, timedelta(0)) / len(spans) if spans else None,
        on_time_completion_rate=on_time * 100.0 / n,
        early_completion_rate=early * 100.0 / n,
        delayed_completion_rate=delayed_rate,
        average_delay=sum(late, timedelta(0)) / n,
        efficiency_score=100.0 - delayed_rate,
    )


def filter_milestones(milestones: list[Milestone], f: MilestoneFilter) -> list[Milestone]:
    return [m for m in milestones if _matches(m, f)]


def _matches(m: Milestone, f: MilestoneFilter) -> bool:
    if f.category is not None and m.category != f.category:
        return False
    if f.priority is not None and m.priority != f.priority:
        return False
    if f.risk_level is not None and m.risk_level != f.risk_level:
        return False
    if f.critical_path is not None and m.critical_path != f.critical_path:
        return False
    if not _within(m.estimated_start_date, f.start_date_from, f.start_date_to):
        return False
    if not _within(m.estimated_end_date, f.due_date_from, f.due_date_to):
        return False
    if f.min_completion is not None and m.percentage_complete < f.min_completion:
        return False
    if f.max_completion is not None and m.percentage_complete > f.max_completion:
        return False
    if f.search_text and f.search_text.lower() not in m.title.lower():
        return False
    if m.status in f.exclude_statuses:
        return False
    return True


def _within(value: Optional[datetime], lo: Optional[datetime], hi: Optional[datetime]) -> bool:
    if lo is None and hi is None:
        return True
    if value is None:
        return False
    if lo is not None and value < lo:
        return False
    if hi is not None and value > hi:
        return False
    return True


def _created_within(m: Milestone, start: Optional[datetime], end: Optional[datetime]) -> bool:
    if start is None and end is None:
        return True
    return _within(m.created_at, start, end)


def _is_overdue(m: Milestone, due_at: Optional[datetime], now: datetime) -> bool:
    return due_at is not None and due_at < now and m.percentage_complete < 100


def _impact_level(m: Milestone, critical: bool) -> RiskLevel:
    if critical or m.criticality_score >= 75:
        return "high"
    if m.criticality_score >= 40:
        return "medium"
    return "low"
