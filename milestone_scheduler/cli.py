from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, NoReturn, Optional, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from milestone_scheduler.core.config import SchedulerConfig, load_config
from milestone_scheduler.core.engine import MilestoneEngine
from milestone_scheduler.core.errors import (
    ConfigError,
    ContractLoadError,
    CycleDetectedError,
    GraphBuildError,
    InconsistentDurationError,
    SchedulerError,
    sorted_errors,
)
from milestone_scheduler.core.io.load_contract import hydrate_store, load_contract, parse_contract, parse_datetime

app = typer.Typer(add_completion=False, no_args_is_help=True)

FORMATS = ("text", "json")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

T = TypeVar("T")


@app.callback()
def _callback(
    ctx: typer.Context,
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Log level: DEBUG|INFO|WARNING|ERROR"),
    config: Optional[str] = typer.Option(
        None, "--config", help="Scheduler config YAML (defaults to $MILESTONE_SCHEDULER_CONFIG)"
    ),
) -> None:
    """Milestone dependency and critical-path scheduling CLI."""
    if log_level is not None:
        if log_level.upper() not in LOG_LEVELS:
            _print_errors(
                [
                    ConfigError(
                        code="E_UNKNOWN_LOG_LEVEL",
                        message=f"unknown log level: {log_level} (choose one of: {', '.join(LOG_LEVELS)})",
                        path="log_level",
                    )
                ]
            )
            raise typer.Exit(code=2)
        logging.basicConfig(level=log_level.upper(), format="%(levelname)s %(name)s: %(message)s")
    try:
        ctx.obj = load_config(config)
    except ConfigError as e:
        _print_errors([e])
        raise typer.Exit(code=1)


@app.command("validate")
def validate(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Path to a contract file (.yaml/.yml/.json)"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Check that a contract's dependency graph can be ordered and scheduled."""
    engine, contract_id = _open(ctx, "validate", path, format)
    analysis = _run("validate", format, lambda: engine.analyze(contract_id))
    if analysis.error is not None:
        _fail("validate", format, [analysis.error], exit_code=2)

    graph = analysis.graph
    prerequisite = sum(1 for e in graph.edges if e.constrains_timing)
    summary = {
        "contract_id": contract_id,
        "milestone_count": len(graph.milestones_by_id),
        "dependency_counts": {"prerequisite": prerequisite, "parallel": len(graph.edges) - prerequisite},
        "sources": graph.sources(),
        "sinks": graph.sinks(),
    }
    if format == "json":
        _emit_json("validate", True, [], {"summary": summary}, exit_code=0)

    typer.echo(
        f"OK: {contract_id}: {summary['milestone_count']} milestones, "
        f"{len(graph.edges)} dependencies (prerequisite={prerequisite}, "
        f"parallel={len(graph.edges) - prerequisite})"
    )
    typer.echo("Sources: " + ", ".join(summary["sources"]))


@app.command("order")
def order(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Path to a contract file (.yaml/.yml/.json)"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Print the deterministic execution order."""
    engine, contract_id = _open(ctx, "order", path, format)
    ids = _run("order", format, lambda: engine.get_topological_order(contract_id))
    if format == "json":
        _emit_json("order", True, [], {"contract_id": contract_id, "order": ids}, exit_code=0)
    for i, mid in enumerate(ids, start=1):
        typer.echo(f"{i}. {mid}")


@app.command("timeline")
def timeline(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Path to a contract file (.yaml/.yml/.json)"),
    start: Optional[str] = typer.Option(None, "--start", help="Schedule start (ISO-8601) for calendar dates"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Print the CPM timeline: earliest/latest times, slack and criticality."""
    engine, contract_id = _open(ctx, "timeline", path, format)
    anchor = _timestamp("timeline", format, start, "start")
    t = _run("timeline", format, lambda: engine.get_milestone_timeline_analysis(contract_id, anchor))

    if format == "json":
        result = {
            "contract_id": contract_id,
            "total_duration_days": _days(t.total_duration),
            "critical_path_duration_days": _days(t.critical_path_duration),
            "slack_time_days": _days(t.slack_time),
            "critical_chains": t.critical_chains,
            "parallel_groups": [list(g) for g in t.parallel_groups],
            "milestones": [
                {
                    "milestone_id": e.milestone_id,
                    "duration_days": _days(e.duration),
                    "earliest_start_days": _days(e.earliest_start),
                    "earliest_finish_days": _days(e.earliest_finish),
                    "latest_start_days": _days(e.latest_start),
                    "latest_finish_days": _days(e.latest_finish),
                    "slack_days": _days(e.slack),
                    "is_critical": e.is_critical,
                    "window": None
                    if e.window is None
                    else {
                        "earliest_start": e.window.earliest_start.isoformat(),
                        "earliest_finish": e.window.earliest_finish.isoformat(),
                        "latest_start": e.window.latest_start.isoformat(),
                        "latest_finish": e.window.latest_finish.isoformat(),
                    },
                }
                for e in t.milestones
            ],
        }
        _emit_json("timeline", True, [], result, exit_code=0)

    table = Table(title=f"timeline {contract_id}")
    for col in ("Milestone", "Days", "ES", "EF", "LS", "LF", "Slack", "Critical"):
        table.add_column(col)
    for e in t.milestones:
        table.add_row(
            e.milestone_id,
            f"{_days(e.duration):g}",
            f"{_days(e.earliest_start):g}",
            f"{_days(e.earliest_finish):g}",
            f"{_days(e.latest_start):g}",
            f"{_days(e.latest_finish):g}",
            f"{_days(e.slack):g}",
            "yes" if e.is_critical else "no",
        )
    Console().print(table)
    typer.echo(f"Total duration: {_days(t.total_duration):g} days")
    typer.echo(f"Slack time: {_days(t.slack_time):g} days")


@app.command("critical-path")
def critical_path(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Path to a contract file (.yaml/.yml/.json)"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Print the critical milestones and every critical chain."""
    engine, contract_id = _open(ctx, "critical-path", path, format)
    milestones = _run("critical-path", format, lambda: engine.get_critical_path_milestones(contract_id))
    t = _run("critical-path", format, lambda: engine.get_milestone_timeline_analysis(contract_id))

    if format == "json":
        result = {
            "contract_id": contract_id,
            "critical_ids": [m.id for m in milestones],
            "critical_chains": t.critical_chains,
            "critical_path_duration_days": _days(t.critical_path_duration),
        }
        _emit_json("critical-path", True, [], result, exit_code=0)

    typer.echo("Critical: " + ", ".join(m.id for m in milestones))
    for chain in t.critical_chains:
        typer.echo("  " + " -> ".join(chain))
    typer.echo(f"Critical path duration: {_days(t.critical_path_duration):g} days")


@app.command("stats")
def stats(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Path to a contract file (.yaml/.yml/.json)"),
    now: Optional[str] = typer.Option(None, "--now", help="Evaluation time (ISO-8601); defaults to now"),
    anchor: Optional[str] = typer.Option(
        None, "--anchor", help="Schedule start used to derive due dates for milestones without one"
    ),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Print completion statistics."""
    engine, contract_id = _open(ctx, "stats", path, format)
    at = _timestamp("stats", format, now, "now")
    start = _timestamp("stats", format, anchor, "anchor")
    s = _run("stats", format, lambda: engine.get_milestone_completion_stats(contract_id, now=at, anchor=start))

    if format == "json":
        _emit_json("stats", True, [], {"contract_id": contract_id, "stats": vars(s)}, exit_code=0)

    typer.echo(
        f"Total: {s.total}  Completed: {s.completed}  In progress: {s.pending}  "
        f"Not started: {s.not_started}  Overdue: {s.overdue}"
    )
    typer.echo(f"Completion rate: {s.completion_rate:.1f}%  Average completion: {s.average_completion:.1f}%")


@app.command("risk")
def risk(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Path to a contract file (.yaml/.yml/.json)"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Print risk distribution and per-milestone risk scores."""
    engine, contract_id = _open(ctx, "risk", path, format)
    r = _run("risk", format, lambda: engine.get_milestone_risk_analysis(contract_id))

    if format == "json":
        result = {
            "contract_id": contract_id,
            "risk_distribution": r.risk_distribution,
            "overall_risk_score": r.overall_risk_score,
            "high_risk_contingencies": r.high_risk_contingencies,
            "risk_milestones": [
                {
                    "milestone_id": e.milestone_id,
                    "risk_level": e.risk_level,
                    "criticality_score": e.criticality_score,
                    "slack_days": None if e.slack is None else _days(e.slack),
                    "risk_score": e.risk_score,
                }
                for e in r.risk_milestones
            ],
        }
        _emit_json("risk", True, [], result, exit_code=0)

    typer.echo(f"High: {r.high_risk_count}  Medium: {r.medium_risk_count}  Low: {r.low_risk_count}")
    typer.echo(f"Overall risk score: {r.overall_risk_score:.2f}")
    for e in r.risk_milestones:
        typer.echo(f"- {e.milestone_id} [{e.risk_level}] score={e.risk_score:.2f}")
    for mid, plans in r.high_risk_contingencies.items():
        typer.echo(f"Contingencies for {mid}: " + "; ".join(plans))


@app.command("delays")
def delays(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Path to a contract file (.yaml/.yml/.json)"),
    threshold_days: Optional[float] = typer.Option(
        None, "--threshold-days", help="Only report milestones overdue by more than this many days"
    ),
    now: Optional[str] = typer.Option(None, "--now", help="Evaluation time (ISO-8601); defaults to now"),
    anchor: Optional[str] = typer.Option(
        None, "--anchor", help="Schedule start used to derive due dates for milestones without one"
    ),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Print milestones past their due date."""
    engine, contract_id = _open(ctx, "delays", path, format)
    at = _timestamp("delays", format, now, "now")
    start = _timestamp("delays", format, anchor, "anchor")
    threshold = None if threshold_days is None else timedelta(days=threshold_days)
    report = _run(
        "delays",
        format,
        lambda: engine.get_delayed_milestones_report(contract_id, now=at, threshold=threshold, anchor=start),
    )

    if format == "json":
        result = {
            "contract_id": contract_id,
            "delayed": [
                {
                    "milestone_id": d.milestone_id,
                    "title": d.title,
                    "original_due_date": d.original_due_date.isoformat(),
                    "delay_days": _days(d.delay),
                    "percentage_complete": d.percentage_complete,
                    "is_critical": d.is_critical,
                    "impact_level": d.impact_level,
                }
                for d in report
            ],
        }
        _emit_json("delays", True, [], result, exit_code=0)

    if not report:
        typer.echo("OK: no delayed milestones")
        return
    for d in report:
        typer.echo(
            f"- {d.milestone_id}: {_days(d.delay):.1f} days late "
            f"({d.percentage_complete:g}% complete, impact={d.impact_level})"
        )


@app.command("trends")
def trends(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Path to a contract file (.yaml/.yml/.json)"),
    days: Optional[int] = typer.Option(None, "--days", min=0, help="Days of history to report"),
    now: Optional[str] = typer.Option(None, "--now", help="Evaluation time (ISO-8601); defaults to now"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Print daily progress trends from recorded progress history."""
    engine, contract_id = _open(ctx, "trends", path, format)
    at = _timestamp("trends", format, now, "now")
    points = _run("trends", format, lambda: engine.get_progress_trends(contract_id, now=at, days=days))

    if format == "json":
        result = {
            "contract_id": contract_id,
            "trends": [
                {
                    "date": p.date.isoformat(),
                    "completion_rate": p.completion_rate,
                    "milestones_completed": p.milestones_completed,
                    "total_milestones": p.total_milestones,
                }
                for p in points
            ],
        }
        _emit_json("trends", True, [], result, exit_code=0)

    for p in points:
        typer.echo(
            f"{p.date.isoformat()}  {p.completion_rate:5.1f}%  "
            f"completed={p.milestones_completed}/{p.total_milestones}"
        )


def _open(ctx: typer.Context, command: str, path: str, format: str) -> tuple[MilestoneEngine, str]:
    """Check the output format, then load, parse and hydrate a contract file."""
    if format not in FORMATS:
        err = ContractLoadError(
            code="E_UNKNOWN_FORMAT",
            message=f"unknown format: {format} (choose one of: {', '.join(FORMATS)})",
            path="format",
        )
        _print_errors([err])
        raise typer.Exit(code=2)

    try:
        raw = load_contract(path)
    except ContractLoadError as e:
        _fail(command, format, [e], exit_code=1)

    doc, errors = parse_contract(raw)
    if errors:
        _fail(command, format, list(errors), exit_code=2)
    assert doc is not None

    store = _run(command, format, lambda: hydrate_store(doc))
    config = ctx.obj if isinstance(ctx.obj, SchedulerConfig) else load_config()
    return MilestoneEngine(store, config=config), doc.contract_id


def _run(command: str, format: str, fn: Callable[[], T]) -> T:
    try:
        return fn()
    except SchedulerError as e:
        _fail(command, format, [e], exit_code=2)


def _timestamp(command: str, format: str, value: Optional[str], name: str) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return parse_datetime(value)
    except ValueError:
        err = ContractLoadError(
            code="E_INVALID_DATE", message=f"--{name} must be an ISO-8601 date or datetime", path=name
        )
        _fail(command, format, [err], exit_code=2)


def _days(td: timedelta) -> float:
    return td / timedelta(days=1)


def _to_item(e: SchedulerError) -> dict[str, Any]:
    if isinstance(e, ContractLoadError):
        source = "load"
    elif isinstance(e, (GraphBuildError, CycleDetectedError)):
        source = "graph"
    elif isinstance(e, InconsistentDurationError):
        source = "schedule"
    else:
        source = "engine"
    item: dict[str, Any] = {
        "code": e.code,
        "message": e.message,
        "contract_id": e.contract_id,
        "path": e.path,
        "severity": "error",
        "source": source,
    }
    if isinstance(e, CycleDetectedError):
        item["milestone_ids"] = list(e.milestone_ids)
        item["cycles"] = [list(c) for c in e.cycles]
    return item


def _emit_json(
    command: str, ok: bool, errors: list[SchedulerError], result: Optional[dict[str, Any]], *, exit_code: int
) -> NoReturn:
    payload = {
        "tool": "milestones",
        "command": command,
        "ok": ok,
        "error_count": len(errors),
        "errors": [_to_item(e) for e in sorted_errors(errors)],
        "result": result,
    }
    typer.echo(json.dumps(payload, indent=2, sort_keys=True, default=_json_default))
    raise typer.Exit(code=exit_code)


def _json_default(v: Any) -> Any:
    if isinstance(v, timedelta):
        return _days(v)
    if isinstance(v, datetime):
        return v.isoformat()
    raise TypeError(f"not JSON serializable: {type(v).__name__}")


def _fail(command: str, format: str, errors: list[SchedulerError], *, exit_code: int) -> NoReturn:
    if format == "json":
        _emit_json(command, False, errors, None, exit_code=exit_code)
    _print_errors(errors)
    raise typer.Exit(code=exit_code)


def _print_errors(errors: list[SchedulerError]) -> None:
    for e in sorted_errors(errors):
        typer.echo(str(e), err=True)


def main() -> None:
    app(prog_name="milestones")


cli = typer.main.get_command(app)

if __name__ == "__main__":
    main()
