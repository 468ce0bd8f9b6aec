import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from trinity.agents import Outcome
from trinity.config import TrinityConfig
from trinity.controller import RunStatus
from trinity.session import RunSession
from trinity.state import (
    Attempt,
    AttemptLedger,
    BacklogStore,
    CorruptStateError,
    JsonStateStore,
    StateError,
    StateIOError,
    WorkItem,
    WorkItemState,
)

SCRIPT: dict[str, list[Outcome]] = {
    "A": [Outcome.timeout(1), Outcome.success("a")],
    "B": [Outcome.agent_failure("flaky"), Outcome.agent_failure("still flaky")],
    "C": [Outcome.success("c")],
    "D": [Outcome.crashed(1, "oom"), Outcome.crashed(1, "oom")],
    "E": [Outcome.success("e")],
}


class DeterministicRunner:
    """Outcome depends only on the item and which attempt this is."""

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.calls: list[tuple[str, int]] = []

    async def run(self, item: WorkItem, timeout: float) -> Outcome:
        _ = timeout
        self.calls.append((item.id, item.attempt_count))
        await asyncio.sleep(self.delay)
        outcomes = SCRIPT.get(item.id, [])
        index = item.attempt_count - 1
        return outcomes[index] if index < len(outcomes) else Outcome.success()


def _config() -> TrinityConfig:
    config = TrinityConfig.default()
    config.loop.max_attempts_per_item = 2
    config.loop.per_attempt_timeout_seconds = 5.0
    config.state.persist_retries = 1
    config.state.persist_backoff_seconds = 0.0
    return config


def _seed(repo: Path, config: TrinityConfig) -> None:
    backlog = BacklogStore(JsonStateStore(config.state_dir(repo)))
    backlog.load()
    backlog.add("A", "build the api")
    backlog.add("B", "wire the ui")
    backlog.add("C", "docs", depends_on=["A"])
    backlog.add("D", "migrations")
    backlog.add("E", "after B", depends_on=["B"])
    backlog.persist()


def _final_state(repo: Path, config: TrinityConfig) -> list[tuple[str, str, int, list[str]]]:
    state = JsonStateStore(config.state_dir(repo))
    backlog = BacklogStore(state)
    backlog.load()
    ledger = AttemptLedger(state.state_dir)
    ledger.load()
    return [
        (
            item.id,
            item.state.value,
            item.attempt_count,
            [str(attempt.outcome) for attempt in ledger.history(item.id)],
        )
        for item in backlog.items()
    ]


def test_run_produces_report_and_session_record(tmp_path: Path) -> None:
    config = _config()
    _seed(tmp_path, config)
    events: list[dict[str, Any]] = []
    session = RunSession.open(tmp_path, config, DeterministicRunner(), event_hook=events.append)

    assert session.status() is RunStatus.IDLE
    report = asyncio.run(session.run())

    assert report.status == "completed"
    assert session.status() is RunStatus.COMPLETED
    assert [entry.item.id for entry in report.failed] == ["B"]
    assert [entry.item.id for entry in report.blocked] == ["D"]
    assert [entry.item.id for entry in report.dependency_blocked] == ["E"]
    assert report.dependency_blocked[0].waiting_on == ["B"]
    assert len(report.failed[0].attempts) == 2
    assert report.has_failures

    record = session.state.get_session()
    assert record["current_run_id"] == report.run_id
    assert record["status"] == "completed"
    assert record["runs"][-1]["report"]["counts"]["succeeded"] == 2
    assert events[-1] == {"event": "run_finished", "run_id": report.run_id, "status": "completed"}


def test_resume_after_cancel_matches_uninterrupted_run(tmp_path: Path) -> None:
    config = _config()
    straight = tmp_path / "straight"
    resumed = tmp_path / "resumed"
    for repo in (straight, resumed):
        repo.mkdir()
        _seed(repo, config)

    asyncio.run(RunSession.open(straight, config, DeterministicRunner()).run())

    async def _interrupted() -> RunStatus:
        runner = DeterministicRunner(delay=0.01)
        session = RunSession.open(resumed, config, runner)
        handle = session.start()
        while not runner.calls:
            await asyncio.sleep(0.001)
        assert await session.cancel(handle) is True
        return session.status(handle)

    assert asyncio.run(_interrupted()) is RunStatus.CANCELLED
    interrupted = _final_state(resumed, config)
    assert any(state == "pending" for _, state, _, _ in interrupted)

    asyncio.run(RunSession.open(resumed, config, DeterministicRunner()).run())

    assert _final_state(resumed, config) == _final_state(straight, config)


def test_resume_recovers_item_left_in_progress(tmp_path: Path) -> None:
    config = _config()
    _seed(tmp_path, config)
    state = JsonStateStore(config.state_dir(tmp_path))
    backlog = BacklogStore(state)
    backlog.load()
    backlog.transition("A", WorkItemState.IN_PROGRESS)
    backlog.persist()

    events: list[dict[str, Any]] = []
    runner = DeterministicRunner()
    session = RunSession.open(tmp_path, config, runner, event_hook=events.append)
    asyncio.run(session.run())

    assert ("A", 1) in runner.calls
    assert session.backlog.get("A").state is WorkItemState.SUCCEEDED
    assert session.backlog.get("A").attempt_count == 2
    recovered = [event for event in events if event["event"] == "in_flight_recovered"]
    assert recovered and recovered[0]["item_ids"] == ["A"]


def test_resume_routes_attempt_recorded_before_backlog_write(tmp_path: Path) -> None:
    config = _config()
    _seed(tmp_path, config)
    state = JsonStateStore(config.state_dir(tmp_path))
    ledger = AttemptLedger(state.state_dir)
    ledger.record(Attempt.begin("A").seal(Outcome.timeout(1)))
    ledger.record(Attempt.begin("A").seal(Outcome.success("done before the crash")))

    runner = DeterministicRunner()
    session = RunSession.open(tmp_path, config, runner)
    asyncio.run(session.run())

    item = session.backlog.get("A")
    assert item.state is WorkItemState.SUCCEEDED
    assert item.attempt_count == 2
    assert item.last_diagnostic == "done before the crash"
    assert all(item_id != "A" for item_id, _ in runner.calls)
    assert ("C", 1) in runner.calls


def test_backlog_ahead_of_ledger_is_corrupt(tmp_path: Path) -> None:
    config = _config()
    _seed(tmp_path, config)
    state = JsonStateStore(config.state_dir(tmp_path))
    backlog = BacklogStore(state)
    backlog.load()
    backlog.transition("A", WorkItemState.IN_PROGRESS)
    backlog.transition("A", WorkItemState.PENDING)
    backlog.persist()

    session = RunSession.open(tmp_path, config, DeterministicRunner())

    with pytest.raises(CorruptStateError, match="ledger"):
        asyncio.run(session.run())


def test_io_failure_halts_then_resume_completes(tmp_path: Path, monkeypatch) -> None:
    config = _config()
    _seed(tmp_path, config)
    session = RunSession.open(tmp_path, config, DeterministicRunner())

    def _fail() -> None:
        raise StateIOError("disk unavailable")

    monkeypatch.setattr(session.backlog, "persist", _fail)
    report = asyncio.run(session.run())

    assert report.status == "halted"
    assert "disk unavailable" in (report.halt_reason or "")
    assert session.status() is RunStatus.HALTED
    assert session.state.get_session()["status"] == "halted"

    asyncio.run(RunSession.open(tmp_path, config, DeterministicRunner()).run())

    straight = tmp_path / "straight"
    straight.mkdir()
    _seed(straight, config)
    asyncio.run(RunSession.open(straight, config, DeterministicRunner()).run())
    assert _final_state(tmp_path, config) == _final_state(straight, config)


def test_corrupt_backlog_is_rejected_on_open(tmp_path: Path) -> None:
    config = _config()
    state_dir = config.state_dir(tmp_path)
    state_dir.mkdir(parents=True)
    document = {
        "schema_version": 1,
        "revision": 1,
        "data": {"items": [{"id": "A", "state": "half-done"}]},
    }
    (state_dir / "backlog.json").write_text(json.dumps(document), encoding="utf-8")

    with pytest.raises(CorruptStateError):
        RunSession.open(tmp_path, config, DeterministicRunner())


def test_second_start_while_active_is_rejected(tmp_path: Path) -> None:
    config = _config()
    _seed(tmp_path, config)
    session = RunSession.open(tmp_path, config, DeterministicRunner(delay=0.01))

    async def _scenario() -> None:
        handle = session.start()
        with pytest.raises(StateError, match="still active"):
            session.start()
        await session.wait(handle)

    asyncio.run(_scenario())


def test_start_requires_running_loop(tmp_path: Path) -> None:
    config = _config()
    _seed(tmp_path, config)
    session = RunSession.open(tmp_path, config, DeterministicRunner())

    with pytest.raises(RuntimeError):
        session.start()
