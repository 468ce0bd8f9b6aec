from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from trinity.agents.base import Outcome, OutcomeKind
from trinity.config import DispatchOrder, TrinityConfig
from trinity.state.backlog import WorkItem, WorkItemState
from trinity.state.ledger import Attempt
from trinity.state.store import StateIOError

T = TypeVar("T")

BlockPredicate = Callable[[WorkItem, Outcome, Sequence[Attempt]], bool]


def consecutive_crash_predicate(threshold: int) -> BlockPredicate:
    """Block an item once its latest ``threshold`` attempts all crashed."""

    def _predicate(item: WorkItem, outcome: Outcome, history: Sequence[Attempt]) -> bool:
        _ = item, outcome
        if threshold <= 0 or len(history) < threshold:
            return False
        return all(
            attempt.outcome is OutcomeKind.CRASHED_PROCESS for attempt in history[-threshold:]
        )

    return _predicate


def never_block(item: WorkItem, outcome: Outcome, history: Sequence[Attempt]) -> bool:
    _ = item, outcome, history
    return False


@dataclass(slots=True)
class IoRetryPolicy:
    """Retries persistence operations with exponential backoff."""

    retries: int = 3
    backoff_seconds: float = 0.5

    async def call(
        self,
        operation: Callable[[], T],
        *,
        on_retry: Callable[[dict[str, Any]], None] | None = None,
    ) -> T:
        attempt = 0
        while True:
            try:
                return operation()
            except StateIOError as exc:
                if attempt >= self.retries:
                    raise
                attempt += 1
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                if on_retry is not None:
                    on_retry(
                        {
                            "event": "state_io_retry",
                            "attempt": attempt,
                            "delay_seconds": delay,
                            "error": str(exc),
                        }
                    )
                await asyncio.sleep(delay)


@dataclass(slots=True)
class LoopPolicy:
    """Retry, concurrency and routing policy for one run, as plain data."""

    concurrency_limit: int = 1
    max_attempts_per_item: int = 3
    per_attempt_timeout: float = 1800.0
    dispatch_order: DispatchOrder = "fewest_attempts"
    halt_after_failed_items: int = 0
    block_predicate: BlockPredicate = field(default_factory=lambda: consecutive_crash_predicate(2))
    io_retry: IoRetryPolicy = field(default_factory=IoRetryPolicy)

    def __post_init__(self) -> None:
        if self.concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1.")
        if self.max_attempts_per_item < 1:
            raise ValueError("max_attempts_per_item must be at least 1.")
        if self.per_attempt_timeout <= 0:
            raise ValueError("per_attempt_timeout must be positive.")

    @classmethod
    def from_config(cls, config: TrinityConfig) -> LoopPolicy:
        return cls(
            concurrency_limit=int(config.loop.concurrency_limit),
            max_attempts_per_item=int(config.loop.max_attempts_per_item),
            per_attempt_timeout=float(config.loop.per_attempt_timeout_seconds),
            dispatch_order=config.loop.dispatch_order,
            halt_after_failed_items=int(config.loop.halt_after_failed_items),
            block_predicate=consecutive_crash_predicate(
                int(config.loop.block_after_consecutive_crashes)
            ),
            io_retry=IoRetryPolicy(
                retries=int(config.state.persist_retries),
                backoff_seconds=max(0.0, float(config.state.persist_backoff_seconds)),
            ),
        )

    def order_for_dispatch(self, eligible: Sequence[WorkItem]) -> list[WorkItem]:
        # ``eligible`` already arrives in insertion order; sorted() is stable.
        if self.dispatch_order == "insertion":
            return list(eligible)
        return sorted(eligible, key=lambda item: item.attempt_count)

    def next_state(
        self,
        item: WorkItem,
        outcome: Outcome,
        history: Sequence[Attempt],
    ) -> WorkItemState:
        """Route an ``in_progress`` item after an attempt.

        ``item.attempt_count`` already includes the attempt that produced
        ``outcome`` and ``history`` ends with it.
        """
        if outcome.is_success:
            return WorkItemState.SUCCEEDED
        if self.block_predicate(item, outcome, history):
            return WorkItemState.BLOCKED
        if item.attempt_count < self.max_attempts_per_item:
            return WorkItemState.PENDING
        return WorkItemState.FAILED
