from __future__ import annotations

import argparse
import importlib.util
import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from ralphy import cli
from ralphy.orchestrator import RunSummary, Termination
from ralphy.storage import AgentRunRecord


def load_diag(module_name: str):
    module_path = Path(__file__).resolve().parents[1] / "scripts" / "ralphy_diag.py"
    spec = importlib.util.spec_from_file_location(module_name, module_path)
    assert spec and spec.loader
    diag = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(diag)
    return diag


def parse(*argv: str):
    return cli.settings_from_args(cli.build_parser().parse_args(list(argv)))


def test_flags_map_to_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)

    settings = parse(
        "--opencode",
        "--yaml",
        "tasks.yaml",
        "--fast",
        "--parallel",
        "--max-parallel",
        "5",
        "--max-iterations",
        "2",
        "--draft-pr",
        "-v",
    )

    assert settings.engine == "opencode"
    assert settings.task_source == "yaml"
    assert settings.prd_file == Path("tasks.yaml")
    assert settings.skip_tests and settings.skip_lint
    assert settings.parallel and settings.max_parallel == 5
    assert settings.max_iterations == 2
    assert settings.create_pr and settings.draft_pr
    assert settings.log_level == "DEBUG"


def test_unset_flags_keep_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("RALPHY_MAX_RETRIES", "7")
    monkeypatch.setenv("RALPHY_SKIP_TESTS", "true")

    settings = parse("--github", "acme/app", "--github-label", "ralphy")

    assert settings.max_retries == 7
    assert settings.skip_tests
    assert settings.task_source == "github"
    assert settings.github_repo == "acme/app"
    assert settings.github_label == "ralphy"


def test_source_flags_are_exclusive() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["--prd", "a.md", "--yaml", "b.yaml"])


def test_preflight_reports_missing_prd(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)

    problems = cli.preflight(parse())

    assert problems == ["PRD.md not found"]


def test_main_exits_nonzero_on_preflight_failure(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)

    assert cli.main(["--prd", "missing.md"]) == 1


def test_main_rejects_invalid_configuration(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)

    assert cli.main(["--max-parallel", "0"]) == 2


def test_main_maps_interrupted_run_to_130(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "PRD.md").write_text("- [ ] Add login\n", encoding="utf-8")

    async def fake_run(settings):
        return RunSummary(termination=Termination.INTERRUPTED, iterations=1)

    monkeypatch.setattr(cli, "_run", fake_run)

    assert cli.main([]) == cli.EXIT_INTERRUPTED


def test_format_summary() -> None:
    summary = RunSummary(
        termination=Termination.ALL_COMPLETE,
        iterations=2,
        completed_tasks=["1", "2"],
        failed_tasks=["3"],
        input_tokens=1000,
        output_tokens=100,
        branches=["ralphy/agent-1-x"],
        marker_disagreement=True,
    )

    text = cli.format_summary(summary)

    assert "all_complete after 2 iteration(s)" in text
    assert "Tasks failed: 1 (3)" in text
    assert "estimated cost: $0.0045" in text
    assert "ralphy/agent-1-x" in text
    assert "still pending" in text


def test_format_summary_prefers_reported_cost() -> None:
    summary = RunSummary(termination=Termination.ALL_COMPLETE, actual_cost=0.25)

    assert "cost: $0.2500" in cli.format_summary(summary)
    assert "estimated" not in cli.format_summary(summary)


def test_diag_runs_lists_records(monkeypatch, capsys) -> None:
    record = AgentRunRecord(
        run_id="run-1",
        task_id="4",
        agent_index=2,
        recorded_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
        status="done",
        input_tokens=10,
        output_tokens=2,
        cost=None,
        branch="ralphy/agent-2-x",
        metadata={},
    )

    class StubStore:
        def list_agent_runs(self, task_id=None):
            return [record]

    diag = load_diag("ralphy_diag_runs_module")
    monkeypatch.setattr(diag, "load_store", lambda _settings: StubStore())

    diag.cmd_runs(argparse.Namespace(task_id=None, json=False))
    assert capsys.readouterr().out.strip() == "run-1 agent 2 4 [done] -> ralphy/agent-2-x"

    diag.cmd_runs(argparse.Namespace(task_id=None, json=True))
    payload = json.loads(capsys.readouterr().out)
    assert payload[0]["branch"] == "ralphy/agent-2-x"


def test_diag_metrics_aggregates(monkeypatch, capsys) -> None:
    stamp = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def run(run_id, status, cost):
        return AgentRunRecord(run_id, "1", 1, stamp, status, 100, 10, cost, None, {})

    class StubStore:
        def list_agent_runs(self, task_id=None):
            return [run("run-1", "done", 0.5), run("run-1", "failed", None), run("run-2", "done", 0.25)]

        def search_events(self, query=None, *, filters=None, limit=None):
            assert filters == {"event_type": "run_summary"}
            return [
                argparse.Namespace(metadata={"termination": "all_complete"}),
                argparse.Namespace(metadata={"termination": "interrupted"}),
            ]

    diag = load_diag("ralphy_diag_metrics_module")
    monkeypatch.setattr(diag, "load_store", lambda _settings: StubStore())

    diag.cmd_metrics(argparse.Namespace())

    payload = json.loads(capsys.readouterr().out)
    assert payload["runs_total"] == 2
    assert payload["agent_runs_total"] == 3
    assert payload["status_counts"] == {"done": 2, "failed": 1}
    assert payload["termination_counts"] == {"all_complete": 1, "interrupted": 1}
    assert payload["input_tokens"] == 300
    assert payload["reported_cost"] == 0.75


def test_diag_without_command_prints_help(capsys) -> None:
    diag = load_diag("ralphy_diag_help_module")

    diag.main([])

    assert "usage" in capsys.readouterr().out
