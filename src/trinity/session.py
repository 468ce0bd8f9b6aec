from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from trinity.agents.base import Outcome
from trinity.config import TrinityConfig
from trinity.controller import LoopController, Runner, RunStatus
from trinity.policy import LoopPolicy
from trinity.report import RunReport, build_report
from trinity.state.backlog import BacklogStore, WorkItemState
from trinity.state.ledger import AttemptLedger
from trinity.state.store import JsonStateStore, StateError, StateIOError, utcnow_iso

SessionEventHook = Callable[[dict[str, Any]], None]

MAX_RUN_HISTORY = 20


def new_run_id() -> str:
    return f"run-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


@dataclass(slots=True)
class RunHandle:
    run_id: str
    task: asyncio.Task[RunReport]

    def done(self) -> bool:
        return self.task.done()


class RunSession:
    """Binds backlog, ledger, runner and policy into one resumable run."""

    def __init__(
        self,
        state: JsonStateStore,
        backlog: BacklogStore,
        ledger: AttemptLedger,
        runner: Runner,
        policy: LoopPolicy,
        *,
        event_hook: SessionEventHook | None = None,
    ) -> None:
        self.state = state
        self.backlog = backlog
        self.ledger = ledger
        self.runner = runner
        self.policy = policy
        self.event_hook = event_hook
        self._status = RunStatus.IDLE
        self._handle: RunHandle | None = None
        self._controller: LoopController | None = None
        self._started_at: str | None = None

    @classmethod
    def open(
        cls,
        repo_root: Path,
        config: TrinityConfig,
        runner: Runner,
        *,
        policy: LoopPolicy | None = None,
        event_hook: SessionEventHook | None = None,
    ) -> RunSession:
        state = JsonStateStore(config.state_dir(repo_root))
        backlog = BacklogStore(state)
        backlog.load()
        ledger = AttemptLedger(state.state_dir)
        ledger.load()
        return cls(
            state,
            backlog,
            ledger,
            runner,
            policy or LoopPolicy.from_config(config),
            event_hook=event_hook,
        )

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _check_handle(self, handle: RunHandle) -> None:
        if self._handle is None or handle is not self._handle:
            raise StateError(f"Unknown run handle: {handle.run_id}")

    def _policy_snapshot(self) -> dict[str, Any]:
        return {
            "concurrency_limit": self.policy.concurrency_limit,
            "max_attempts_per_item": self.policy.max_attempts_per_item,
            "per_attempt_timeout": self.policy.per_attempt_timeout,
            "dispatch_order": self.policy.dispatch_order,
            "halt_after_failed_items": self.policy.halt_after_failed_items,
        }

    def _write_session_record(self, run_id: str, updates: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            session = payload if isinstance(payload, dict) else {}
            runs = session.get("runs", [])
            if not isinstance(runs, list):
                runs = []
            record: dict[str, Any] = {}
            for existing in runs:
                if isinstance(existing, dict) and existing.get("run_id") == run_id:
                    record = existing
                    break
            else:
                runs.append(record)
            record.update({"run_id": run_id, **updates})
            session["current_run_id"] = run_id
            session["status"] = record.get("status")
            session["runs"] = runs[-MAX_RUN_HISTORY:]
            return session

        self.state.update_json("session", _updater, default={})

    async def _checkpoint_session(self, run_id: str, updates: dict[str, Any]) -> bool:
        try:
            await self.policy.io_retry.call(
                lambda: self._write_session_record(run_id, updates), on_retry=self._emit
            )
        except StateIOError as exc:
            if self._controller is not None:
                self._controller.request_halt(f"session record write failed: {exc}")
            return False
        return True

    def _recover(self) -> list[str]:
        recovered = self.backlog.recover_in_flight(self.ledger.counts())
        for item_id in recovered:
            history = self.ledger.history(item_id)
            if not history or history[-1].outcome is None:
                continue
            last = history[-1]
            outcome = Outcome(last.outcome, reason=last.diagnostic, exit_code=last.exit_code)
            next_state = self.policy.next_state(self.backlog.get(item_id), outcome, history)
            if next_state is not WorkItemState.PENDING:
                self.backlog.resolve_recovered(
                    item_id, next_state, outcome=last.outcome.value, diagnostic=last.diagnostic
                )
        return recovered

    def start(self) -> RunHandle:
        """Begin the dispatch loop on the running event loop and return its handle."""
        asyncio.get_running_loop()
        if self._handle is not None and not self._handle.done():
            raise StateError(f"Run {self._handle.run_id} is still active.")

        recovered = self._recover()
        run_id = new_run_id()
        self._controller = LoopController(
            self.backlog,
            self.ledger,
            self.runner,
            self.policy,
            event_hook=self.event_hook,
        )
        self._started_at = utcnow_iso()
        self._status = RunStatus.RUNNING
        if recovered:
            self._emit({"event": "in_flight_recovered", "run_id": run_id, "item_ids": recovered})
        task = asyncio.create_task(self._drive(run_id, recovered), name=f"trinity-{run_id}")
        self._handle = RunHandle(run_id=run_id, task=task)
        return self._handle

    async def _drive(self, run_id: str, recovered: list[str]) -> RunReport:
        controller = self._controller
        assert controller is not None
        try:
            await self._checkpoint_session(
                run_id,
                {
                    "status": RunStatus.RUNNING.value,
                    "started_at": self._started_at,
                    "ended_at": None,
                    "halt_reason": None,
                    "recovered_items": recovered,
                    "policy": self._policy_snapshot(),
                },
            )
            status = await controller.run()
            if status is not RunStatus.HALTED:
                try:
                    await self.policy.io_retry.call(self.backlog.persist, on_retry=self._emit)
                except StateIOError as exc:
                    controller.request_halt(f"final backlog persistence failed: {exc}")
                    status = RunStatus.HALTED
        except BaseException:
            self._status = RunStatus.HALTED
            raise

        ended_at = utcnow_iso()
        report = build_report(
            self.backlog,
            self.ledger,
            run_id=run_id,
            status=status.value,
            started_at=self._started_at,
            ended_at=ended_at,
            halt_reason=controller.halt_reason,
        )
        await self._checkpoint_session(
            run_id,
            {
                "status": status.value,
                "ended_at": ended_at,
                "halt_reason": controller.halt_reason,
                "report": report.to_dict(),
            },
        )
        if controller.halt_reason is not None:
            status = RunStatus.HALTED
            report.status = status.value
            report.halt_reason = controller.halt_reason
        self._status = status
        self._emit({"event": "run_finished", "run_id": run_id, "status": status.value})
        return report

    async def cancel(self, handle: RunHandle) -> bool:
        """Stop dispatching, let in-flight attempts finish, persist, then return."""
        self._check_handle(handle)
        if not handle.done() and self._controller is not None:
            self._controller.request_cancel()
        await asyncio.wait({handle.task})
        return True

    def status(self, handle: RunHandle | None = None) -> RunStatus:
        if handle is not None:
            self._check_handle(handle)
        return self._status

    async def wait(self, handle: RunHandle) -> RunReport:
        self._check_handle(handle)
        return await handle.task

    async def run(self) -> RunReport:
        return await self.wait(self.start())
