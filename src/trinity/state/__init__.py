from trinity.state.backlog import (
    BacklogStore,
    DuplicateWorkItemError,
    InvalidTransitionError,
    WorkItem,
    WorkItemNotFoundError,
    WorkItemState,
)
from trinity.state.ledger import Attempt, AttemptLedger
from trinity.state.store import (
    CorruptStateError,
    JsonStateStore,
    StaleRevisionError,
    StateError,
    StateIOError,
)

__all__ = [
    "Attempt",
    "AttemptLedger",
    "BacklogStore",
    "CorruptStateError",
    "DuplicateWorkItemError",
    "InvalidTransitionError",
    "JsonStateStore",
    "StaleRevisionError",
    "StateError",
    "StateIOError",
    "WorkItem",
    "WorkItemNotFoundError",
    "WorkItemState",
]
