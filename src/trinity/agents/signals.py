"""Completion signals emitted by agents at the end of a work item.

- ``<item-done id="ID">summary</item-done>``
- ``<item-failed id="ID">reason</item-failed>``

The ``id`` attribute is optional; when present it must match the item.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum

SIGNAL_PATTERN = re.compile(
    r"<(?P<tag>item-done|item-failed)(?:\s+id=\"(?P<id>[^\"]*)\")?\s*>"
    r"(?P<body>.*?)</(?P=tag)>",
    re.DOTALL,
)


class SignalType(StrEnum):
    DONE = "item-done"
    FAILED = "item-failed"


@dataclass(frozen=True, slots=True)
class Signal:
    signal_type: SignalType
    item_id: str | None
    content: str


def parse_signals(text: str) -> list[Signal]:
    signals: list[Signal] = []
    for match in SIGNAL_PATTERN.finditer(text):
        signals.append(
            Signal(
                signal_type=SignalType(match.group("tag")),
                item_id=match.group("id"),
                content=match.group("body").strip(),
            )
        )
    return signals


def final_signal(text: str, item_id: str) -> Signal | None:
    """Return the last signal addressed to ``item_id`` (or unaddressed)."""
    matching = [
        signal
        for signal in parse_signals(text)
        if signal.item_id is None or signal.item_id == item_id
    ]
    return matching[-1] if matching else None
