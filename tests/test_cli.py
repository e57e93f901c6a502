from typer.testing import CliRunner

from milestone_scheduler.cli import app


runner = CliRunner()


def test_cli_validate_success():
    r = runner.invoke(app, ["validate", "examples/basic-contract.yaml"])
    assert r.exit_code == 0, r.stdout + r.stderr
    assert "OK: SC-1001: 3 milestones" in r.stdout
    assert "Sources: A" in r.stdout


def test_cli_validate_cycle():
    r = runner.invoke(app, ["validate", "examples/cycle-contract.yaml"])
    assert r.exit_code == 2
    assert "E_CYCLE_DETECTED" in r.stderr
    assert "A -> B -> A" in r.stderr


def test_cli_validate_dangling_edge():
    r = runner.invoke(app, ["validate", "examples/invalid-dangling-edge.yaml"])
    assert r.exit_code == 2
    assert "E_DANGLING_EDGE" in r.stderr


def test_cli_validate_negative_duration():
    r = runner.invoke(app, ["validate", "examples/invalid-negative-duration.yaml"])
    assert r.exit_code == 2
    assert "E_NEGATIVE_DURATION" in r.stderr


def test_cli_validate_field_errors():
    r = runner.invoke(app, ["validate", "examples/invalid-missing-fields.yaml"])
    assert r.exit_code == 2
    assert "E_REQUIRED_FIELD" in r.stderr
    assert "E_INVALID_ENUM" in r.stderr


def test_cli_missing_file_is_load_error():
    r = runner.invoke(app, ["order", "examples/nope.yaml"])
    assert r.exit_code == 1
    assert "E_FILE_NOT_FOUND" in r.stderr


def test_cli_unknown_format():
    r = runner.invoke(app, ["order", "examples/basic-contract.yaml", "--format", "xml"])
    assert r.exit_code == 2
    assert "E_UNKNOWN_FORMAT" in r.stderr


def test_cli_order():
    r = runner.invoke(app, ["order", "examples/basic-contract.yaml"])
    assert r.exit_code == 0
    assert r.stdout.splitlines() == ["1. A", "2. B", "3. C"]


def test_cli_order_ignores_negative_duration():
    r = runner.invoke(app, ["order", "examples/invalid-negative-duration.yaml"])
    assert r.exit_code == 0
    assert r.stdout.splitlines() == ["1. A", "2. B"]


def test_cli_timeline_text():
    r = runner.invoke(app, ["timeline", "examples/basic-contract.yaml"])
    assert r.exit_code == 0, r.stdout + r.stderr
    assert "Total duration: 5 days" in r.stdout
    assert "Slack time: 2 days" in r.stdout


def test_cli_critical_path_text():
    r = runner.invoke(app, ["critical-path", "examples/parallel-contract.json"])
    assert r.exit_code == 0
    assert "Critical: KICKOFF, DESIGN, BUILD" in r.stdout
    assert "KICKOFF -> DESIGN -> BUILD" in r.stdout
    assert "Critical path duration: 9 days" in r.stdout


def test_cli_stats_text():
    r = runner.invoke(app, ["stats", "examples/basic-contract.yaml", "--now", "2026-01-10"])
    assert r.exit_code == 0
    assert "Total: 3  Completed: 1  In progress: 1  Not started: 1  Overdue: 2" in r.stdout


def test_cli_delays_text():
    r = runner.invoke(app, ["delays", "examples/basic-contract.yaml", "--now", "2026-01-10", "--threshold-days", "5"])
    assert r.exit_code == 0
    assert r.stdout.splitlines() == ["- C: 6.0 days late (0% complete, impact=low)"]


def test_cli_delays_none():
    r = runner.invoke(app, ["delays", "examples/basic-contract.yaml", "--now", "2026-01-01"])
    assert r.exit_code == 0
    assert "OK: no delayed milestones" in r.stdout


def test_cli_bad_now():
    r = runner.invoke(app, ["stats", "examples/basic-contract.yaml", "--now", "soon"])
    assert r.exit_code == 2
    assert "E_INVALID_DATE" in r.stderr


def test_cli_risk_text():
    r = runner.invoke(app, ["risk", "examples/basic-contract.yaml"])
    assert r.exit_code == 0
    lines = r.stdout.splitlines()
    assert lines[0] == "High: 1  Medium: 1  Low: 1"
    assert lines[2].startswith("- B [high]")
    assert "Contingencies for B: extend escrow window; engage backup supplier" in r.stdout


def test_cli_trends_text():
    r = runner.invoke(
        app, ["trends", "examples/basic-contract.yaml", "--now", "2026-01-05T18:00:00Z", "--days", "1"]
    )
    assert r.exit_code == 0
    assert r.stdout.splitlines() == [
        "2026-01-04  100.0%  completed=1/1",
        "2026-01-05   75.0%  completed=1/2",
    ]


def test_cli_bad_config_file():
    r = runner.invoke(app, ["--config", "examples/nope.yaml", "order", "examples/basic-contract.yaml"])
    assert r.exit_code == 1
    assert "E_CONFIG_NOT_FOUND" in r.stderr


def test_cli_bad_log_level():
    r = runner.invoke(app, ["--log-level", "LOUD", "order", "examples/basic-contract.yaml"])
    assert r.exit_code == 2
    assert "E_UNKNOWN_LOG_LEVEL" in r.stderr


def test_cli_null_recorded_at_is_field_error(tmp_path):
    p = tmp_path / "contract.yaml"
    p.write_text(
        "contract_id: c1\n"
        "milestones:\n"
        "  - {id: A, sequence_number: 1}\n"
        "progress_history:\n"
        "  - {milestone_id: A, percentage_complete: 50, recorded_at: null}\n",
        encoding="utf-8",
    )
    r = runner.invoke(app, ["validate", str(p)])
    assert r.exit_code == 2
    assert "E_REQUIRED_FIELD" in r.stderr


def test_cli_nan_duration_is_field_error(tmp_path):
    p = tmp_path / "contract.yaml"
    p.write_text(
        "contract_id: c1\nmilestones:\n  - {id: A, sequence_number: 1, estimated_duration_days: .nan}\n",
        encoding="utf-8",
    )
    r = runner.invoke(app, ["validate", str(p)])
    assert r.exit_code == 2
    assert "E_INVALID_TYPE" in r.stderr
