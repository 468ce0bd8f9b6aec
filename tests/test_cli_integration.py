import json
from collections.abc import AsyncIterator
from pathlib import Path

from click.testing import CliRunner

from trinity import __version__
from trinity.agents import AgentBackend, AgentRequest
from trinity.cli import MetricsRecorder, cli
from trinity.config import load_config
from trinity.state import JsonStateStore


class FakeBackend(AgentBackend):
    name = "fake"

    async def execute(self, request: AgentRequest) -> AsyncIterator[str]:
        if "broken" in request.description:
            yield f'<item-failed id="{request.item_id}">cannot do it</item-failed>'
            return
        yield f'<item-done id="{request.item_id}">done</item-done>'


def _write_prd(path: Path) -> None:
    path.write_text(
        json.dumps(
            {
                "userStories": [
                    {"id": "S1", "title": "Login", "description": "Build login"},
                    {"id": "S2", "title": "Logout", "dependsOn": ["S1"]},
                ]
            }
        ),
        encoding="utf-8",
    )


def _patch_backend(monkeypatch) -> None:
    monkeypatch.setattr(
        "trinity.cli._build_backend", lambda config, repo_root, hook: FakeBackend()
    )


def test_cli_full_lifecycle_commands(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    _patch_backend(monkeypatch)
    _write_prd(tmp_path / "prd.json")
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init", "--agent", "codex", "--prd", "prd.json"])
    assert init_result.exit_code == 0, init_result.output
    assert "Imported 2 item(s)" in init_result.output
    assert load_config(tmp_path / "trinity.toml").agent.kind == "codex"
    assert (tmp_path / ".trinity" / "state" / "backlog.json").exists()

    add_result = runner.invoke(
        cli, ["plan", "add", "S3", "Add audit log", "--title", "Audit", "--depends-on", "S2"]
    )
    assert add_result.exit_code == 0, add_result.output
    assert "Added S3" in add_result.output

    list_result = runner.invoke(cli, ["plan", "list"])
    assert list_result.exit_code == 0
    assert "S3" in list_result.output
    assert "<- S2" in list_result.output

    analyze_result = runner.invoke(cli, ["analyze"])
    assert analyze_result.exit_code == 0
    analysis = json.loads(analyze_result.output)
    assert analysis["eligible"] == ["S1"]
    assert analysis["counts"]["pending"] == 3
    assert analysis["dependency_cycles"] == []

    run_result = runner.invoke(cli, ["run", "--concurrency", "2"])
    assert run_result.exit_code == 0, run_result.output
    assert "Run ID:" in run_result.output
    assert "Status: completed" in run_result.output

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code == 0
    status = json.loads(status_result.output)
    assert status["status"] == "completed"
    assert status["counts"]["succeeded"] == 3
    assert status["metrics"]["dispatch_count"] == 3
    assert status["recent_events"]

    report_result = runner.invoke(cli, ["report"])
    assert report_result.exit_code == 0
    assert json.loads(report_result.output)["counts"]["succeeded"] == 3


def test_run_with_failed_items_exits_nonzero(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    _patch_backend(monkeypatch)
    runner = CliRunner()

    assert runner.invoke(cli, ["init"]).exit_code == 0
    assert runner.invoke(cli, ["plan", "add", "A", "broken feature"]).exit_code == 0
    assert runner.invoke(cli, ["plan", "add", "B", "after A", "--depends-on", "A"]).exit_code == 0

    run_result = runner.invoke(cli, ["run", "--max-attempts", "1"])

    assert run_result.exit_code == 1
    assert '"failed"' in run_result.output
    assert "cannot do it" in run_result.output
    assert '"waiting_on"' in run_result.output


def test_plan_add_rejects_duplicate_ids(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    assert runner.invoke(cli, ["plan", "add", "A", "first"]).exit_code == 0
    duplicate = runner.invoke(cli, ["plan", "add", "A", "again"])

    assert duplicate.exit_code != 0
    assert "already exists" in duplicate.output


def test_invalid_config_is_reported(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "trinity.toml").write_text('[agent]\nkind = "gemini"\n', encoding="utf-8")

    result = CliRunner().invoke(cli, ["status"])

    assert result.exit_code != 0
    assert "Unsupported agent kind" in result.output


def test_report_without_runs(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["report"])

    assert result.exit_code == 0
    assert "No run report available." in result.output


def test_version_option() -> None:
    result = CliRunner().invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_plan_import_reads_prd_file(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    _write_prd(tmp_path / "stories.json")
    runner = CliRunner()

    import_result = runner.invoke(cli, ["plan", "import", "stories.json"])
    assert import_result.exit_code == 0, import_result.output
    assert "Imported 2 item(s)" in import_result.output

    again = runner.invoke(cli, ["plan", "import", "stories.json"])
    assert again.exit_code != 0
    assert "already exists" in again.output

    missing = runner.invoke(cli, ["plan", "import", "absent.json"])
    assert missing.exit_code != 0
    assert "not found" in missing.output


def test_metrics_recorder_writes_once_per_attempt(tmp_path: Path) -> None:
    state = JsonStateStore(tmp_path / "state")
    recorder = MetricsRecorder(state)

    recorder({"event": "item_dispatched", "item_id": "A"})
    recorder({"event": "agent_run_start", "item_id": "A"})
    recorder({"event": "agent_run_end", "item_id": "A", "outcome": "timeout"})
    assert state.get_envelope("metrics")["revision"] == 0

    recorder({"event": "attempt_recorded", "item_id": "A"})
    envelope = state.get_envelope("metrics")
    assert envelope["revision"] == 1
    assert envelope["data"]["dispatch_count"] == 1
    assert envelope["data"]["timeout_count"] == 1
    assert [event["event"] for event in envelope["data"]["events"]] == [
        "item_dispatched",
        "agent_run_start",
        "agent_run_end",
        "attempt_recorded",
    ]

    recorder({"event": "state_io_retry", "attempt": 1})
    recorder.flush()
    recorder.flush()
    metrics = state.get_metrics()
    assert state.get_envelope("metrics")["revision"] == 2
    assert metrics["state_io_retry_count"] == 1
    assert all("at" in event for event in metrics["events"])
