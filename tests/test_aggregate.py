from dataclasses import replace
from datetime import date, datetime, timedelta, timezone

import pytest

from milestone_scheduler.core.analytics.aggregate import (
    MilestoneFilter,
    completion_stats,
    delayed_milestones,
    filter_milestones,
    performance_metrics,
    progress_trends,
    resolve_due_dates,
    risk_analysis,
)
from milestone_scheduler.core.config import RiskWeights
from milestone_scheduler.core.graph.build_graph import assemble_graph
from milestone_scheduler.core.graph.topo_sort import topological_order
from milestone_scheduler.core.model import Milestone, MilestoneDependency, ProgressEntry
from milestone_scheduler.core.schedule.cpm import compute_schedule


D = timedelta(days=1)
T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _abc():
    milestones = [
        Milestone(
            id="A",
            contract_id="c1",
            sequence_number=1,
            risk_level="low",
            criticality_score=40,
            estimated_duration=2 * D,
            estimated_end_date=T0 + 2 * D,
            actual_start_date=T0,
            actual_end_date=T0 + 2 * D,
            percentage_complete=100,
        ),
        Milestone(
            id="B",
            contract_id="c1",
            sequence_number=2,
            title="Foundation poured",
            risk_level="high",
            criticality_score=90,
            estimated_duration=3 * D,
            estimated_end_date=T0 + 5 * D,
            percentage_complete=50,
            contingency_plans=["extend escrow window"],
        ),
        Milestone(
            id="C",
            contract_id="c1",
            sequence_number=3,
            risk_level="medium",
            criticality_score=30,
            estimated_duration=1 * D,
            estimated_end_date=T0 + 3 * D,
        ),
    ]
    edges = [
        MilestoneDependency(id="d1", milestone_id="B", depends_on_id="A"),
        MilestoneDependency(id="d2", milestone_id="C", depends_on_id="A"),
    ]
    g = assemble_graph("c1", milestones, edges)
    return milestones, compute_schedule(g, topological_order(g))


def test_completion_stats_counts():
    milestones, _ = _abc()
    s = completion_stats(milestones, now=T0 + 9 * D)
    assert (s.total, s.completed, s.pending, s.not_started, s.overdue) == (3, 1, 1, 1, 2)
    assert s.completion_rate == pytest.approx(100 / 3)
    assert s.average_completion == pytest.approx(50)


def test_completion_stats_empty():
    s = completion_stats([], now=T0)
    assert s.total == 0
    assert s.completion_rate == 0
    assert s.average_completion == 0


def test_completion_stats_created_window():
    milestones, _ = _abc()
    stamped = [replace(m, created_at=T0 + i * D) for i, m in enumerate(milestones)]
    s = completion_stats(stamped, now=T0, start=T0 + D, end=T0 + 2 * D)
    assert s.total == 2


def test_due_date_falls_back_to_latest_finish():
    milestones, schedule = _abc()
    undated = [replace(m, estimated_end_date=None) for m in milestones]
    due = resolve_due_dates(undated, schedule, anchor=T0)
    assert due == {"A": T0 + 2 * D, "B": T0 + 5 * D, "C": T0 + 5 * D}
    assert resolve_due_dates(undated) == {"A": None, "B": None, "C": None}


def test_risk_scores_favour_criticality_and_low_slack():
    milestones, schedule = _abc()
    r = risk_analysis(milestones, schedule, RiskWeights(criticality=0.6, slack=0.4))
    assert (r.high_risk_count, r.medium_risk_count, r.low_risk_count) == (1, 1, 1)
    assert r.risk_distribution == {"high": 1, "medium": 1, "low": 1}
    assert [e.milestone_id for e in r.risk_milestones] == ["B", "A", "C"]
    scores = {e.milestone_id: e.risk_score for e in r.risk_milestones}
    assert scores["B"] == pytest.approx(94)
    assert scores["A"] == pytest.approx(64)
    # C: slack 2 of 5 days -> slack factor 60.
    assert scores["C"] == pytest.approx(42)
    assert r.overall_risk_score == pytest.approx(200 / 3, abs=1e-4)
    assert r.high_risk_contingencies == {"B": ["extend escrow window"]}


def test_risk_without_schedule_uses_criticality_only():
    milestones, _ = _abc()
    r = risk_analysis(milestones, None, RiskWeights(criticality=1.0, slack=0.0))
    assert {e.milestone_id: e.risk_score for e in r.risk_milestones} == {"A": 40, "B": 90, "C": 30}
    assert all(e.slack is None for e in r.risk_milestones)


def test_delayed_report_threshold_and_impact():
    milestones, schedule = _abc()
    now = T0 + 9 * D
    report = delayed_milestones(milestones, now=now, schedule=schedule)
    assert [d.milestone_id for d in report] == ["C", "B"]
    by_id = {d.milestone_id: d for d in report}
    assert by_id["B"].delay == 4 * D
    assert by_id["B"].is_critical and by_id["B"].impact_level == "high"
    assert by_id["C"].delay == 6 * D
    assert by_id["C"].impact_level == "low"

    late = delayed_milestones(milestones, now=now, threshold=5 * D, schedule=schedule)
    assert [d.milestone_id for d in late] == ["C"]


def test_progress_trends_replay_history():
    milestones, _ = _abc()
    history = [
        ProgressEntry(id="p1", milestone_id="A", percentage_complete=50, status="in_progress", recorded_at=T0 + D),
        ProgressEntry(id="p2", milestone_id="A", percentage_complete=100, status="completed", recorded_at=T0 + 2 * D),
        ProgressEntry(id="p3", milestone_id="B", percentage_complete=50, status="in_progress", recorded_at=T0 + 4 * D),
        ProgressEntry(id="p4", milestone_id="Z", percentage_complete=100, status="completed", recorded_at=T0),
    ]
    points = progress_trends(milestones, history, now=T0 + 4 * D + timedelta(hours=6), days=3)
    assert [p.date for p in points] == [date(2026, 1, 2), date(2026, 1, 3), date(2026, 1, 4), date(2026, 1, 5)]
    assert [(p.completion_rate, p.milestones_completed, p.total_milestones) for p in points] == [
        (50, 0, 1),
        (100, 1, 1),
        (100, 1, 1),
        (75, 1, 2),
    ]


def test_performance_metrics():
    base = dict(contract_id="c1", percentage_complete=100, estimated_end_date=T0 + 5 * D, actual_start_date=T0)
    milestones = [
        Milestone(id="early", sequence_number=1, actual_end_date=T0 + 4 * D, **base),
        Milestone(id="ontime", sequence_number=2, actual_end_date=T0 + 5 * D, **base),
        Milestone(id="late", sequence_number=3, actual_end_date=T0 + 7 * D, **base),
        Milestone(id="open", contract_id="c1", sequence_number=4),
    ]
    p = performance_metrics(milestones)
    assert p.sample_size == 3
    assert p.on_time_completion_rate == pytest.approx(200 / 3)
    assert p.early_completion_rate == pytest.approx(100 / 3)
    assert p.delayed_completion_rate == pytest.approx(100 / 3)
    assert p.efficiency_score == pytest.approx(200 / 3)
    assert p.average_delay == timedelta(days=2) / 3
    assert p.average_completion_time == timedelta(days=16) / 3


def test_performance_metrics_without_sample():
    p = performance_metrics([Milestone(id="x", contract_id="c1", sequence_number=1)])
    assert p.sample_size == 0
    assert p.efficiency_score == 100


def test_filter_milestones():
    milestones, _ = _abc()
    assert [m.id for m in filter_milestones(milestones, MilestoneFilter(risk_level="high"))] == ["B"]
    assert [m.id for m in filter_milestones(milestones, MilestoneFilter(search_text="foundation"))] == ["B"]
    assert [m.id for m in filter_milestones(milestones, MilestoneFilter(exclude_statuses=["completed"]))] == ["B", "C"]
    assert [m.id for m in filter_milestones(milestones, MilestoneFilter(min_completion=10, max_completion=99))] == ["B"]
    assert [
        m.id for m in filter_milestones(milestones, MilestoneFilter(due_date_to=T0 + 3 * D))
    ] == ["A", "C"]
