from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from milestone_scheduler.core.config import DEFAULT_CONFIG
from milestone_scheduler.core.engine import MilestoneEngine
from milestone_scheduler.core.errors import CycleDetectedError, GraphBuildError, InconsistentDurationError
from milestone_scheduler.core.model import Milestone, MilestoneDependency, ProgressEntry
from milestone_scheduler.core.store.memory import InMemoryMilestoneStore


D = timedelta(days=1)
NOW = datetime(2026, 1, 10, tzinfo=timezone.utc)


def _load(store, cid, durations, edges):
    for n, (nid, d) in enumerate(durations.items()):
        store.create_milestone(
            Milestone(
                id=nid,
                contract_id=cid,
                sequence_number=n,
                estimated_duration=None if d is None else d * D,
                estimated_end_date=datetime(2026, 1, 1 + n, tzinfo=timezone.utc),
            )
        )
    for m, p in edges:
        store.create_dependency(MilestoneDependency(id=f"{cid}-{m}-{p}", milestone_id=m, depends_on_id=p))


def _abc_engine(**config):
    store = InMemoryMilestoneStore()
    _load(store, "c1", {"A": 2, "B": 3, "C": 1}, [("B", "A"), ("C", "A")])
    return store, MilestoneEngine(store, config=replace(DEFAULT_CONFIG, **config))


def test_cycle_scenario():
    store = InMemoryMilestoneStore()
    _load(store, "c1", {"A": 1, "B": 1}, [("A", "B"), ("B", "A")])
    engine = MilestoneEngine(store)
    assert engine.validate_dependency_graph("c1") is False
    with pytest.raises(CycleDetectedError) as exc:
        engine.get_topological_order("c1")
    assert set(exc.value.milestone_ids) == {"A", "B"}
    with pytest.raises(CycleDetectedError):
        engine.get_milestone_timeline_analysis("c1")


def test_reads_that_skip_cpm_survive_a_cycle():
    store = InMemoryMilestoneStore()
    _load(store, "c1", {"A": 1, "B": 1}, [("A", "B"), ("B", "A")])
    engine = MilestoneEngine(store)
    assert engine.get_milestone_completion_stats("c1", now=NOW).total == 2
    assert engine.get_performance_metrics("c1").sample_size == 0


def test_negative_duration_is_schedulable_error_not_graph_error():
    store = InMemoryMilestoneStore()
    _load(store, "c1", {"A": -1, "B": 1}, [("B", "A")])
    engine = MilestoneEngine(store)
    assert engine.validate_dependency_graph("c1")
    assert engine.get_topological_order("c1") == ["A", "B"]
    with pytest.raises(InconsistentDurationError):
        engine.get_critical_path_milestones("c1")


def test_timeline_analysis():
    _, engine = _abc_engine()
    start = datetime(2026, 2, 1, tzinfo=timezone.utc)
    t = engine.get_milestone_timeline_analysis("c1", start)
    assert t.total_duration == t.critical_path_duration == 5 * D
    assert t.slack_time == 2 * D
    assert [e.milestone_id for e in t.milestones] == ["A", "B", "C"]
    c = t.milestones[2]
    assert c.window is not None and c.window.latest_finish == start + 5 * D
    assert t.critical_chains == [["A", "B"]]


def test_critical_path_milestones_carry_fresh_flag():
    _, engine = _abc_engine()
    critical = engine.get_critical_path_milestones("c1")
    assert [m.id for m in critical] == ["A", "B"]
    assert all(m.critical_path for m in critical)


def test_completion_stats_idempotent():
    _, engine = _abc_engine()
    first = engine.get_milestone_completion_stats("c1", now=NOW)
    second = engine.get_milestone_completion_stats("c1", now=NOW)
    assert first == second
    assert first.overdue == 3


def test_cache_disabled_recomputes():
    _, engine = _abc_engine(cache_enabled=False)
    assert engine.analyze("c1") is not engine.analyze("c1")


def test_delay_threshold_from_config():
    _, engine = _abc_engine(delay_threshold=timedelta(days=8))
    # Due dates are Jan 1..3; cutoff Jan 2 leaves only A.
    assert [d.milestone_id for d in engine.get_delayed_milestones_report("c1", now=NOW)] == ["A"]
    assert len(engine.get_delayed_milestones_report("c1", now=NOW, threshold=timedelta(0))) == 3


def test_analyze_contracts_reports_per_contract_failures():
    store = InMemoryMilestoneStore()
    _load(store, "ok", {"A": 2, "B": 3}, [("B", "A")])
    _load(store, "cyc", {"X": 1, "Y": 1}, [("X", "Y"), ("Y", "X")])
    _load(store, "dangling", {"P": 1}, [])
    store.create_dependency(MilestoneDependency(id="bad", milestone_id="P", depends_on_id="ghost"))
    engine = MilestoneEngine(store)

    out = engine.analyze_contracts(["ok", "cyc", "dangling"], workers=3, now=NOW)

    assert list(out) == ["ok", "cyc", "dangling"]
    assert out["ok"].timeline.total_duration == 5 * D
    assert out["ok"].completion.total == 2
    assert isinstance(out["cyc"], CycleDetectedError)
    assert isinstance(out["dangling"], GraphBuildError)
    assert out["dangling"].code == "E_DANGLING_EDGE"


def test_risk_analysis_uses_schedule_slack():
    _, engine = _abc_engine()
    r = engine.get_milestone_risk_analysis("c1")
    scores = {e.milestone_id: e.risk_score for e in r.risk_milestones}
    # criticality 0 everywhere: score is the slack term weighted 0.4
    assert scores == pytest.approx({"A": 40, "B": 40, "C": 24})
    assert [e.milestone_id for e in r.risk_milestones] == ["A", "B", "C"]
    assert r.risk_distribution == {"high": 0, "medium": 0, "low": 3}


def test_progress_trends_from_history():
    store, engine = _abc_engine()
    for i, (mid, pct, day, hour) in enumerate([("A", 50, 8, 10), ("A", 100, 9, 9), ("B", 40, 9, 15)]):
        store.add_progress_entry(
            ProgressEntry(
                id=f"pe-{i}",
                milestone_id=mid,
                percentage_complete=pct,
                status="completed" if pct >= 100 else "in_progress",
                recorded_at=datetime(2026, 1, day, hour, tzinfo=timezone.utc),
            )
        )
    points = engine.get_progress_trends("c1", now=NOW, days=2)
    assert [p.date.day for p in points] == [8, 9, 10]
    assert [p.completion_rate for p in points] == [50, 70, 70]
    assert [(p.milestones_completed, p.total_milestones) for p in points] == [(0, 1), (1, 2), (1, 2)]
