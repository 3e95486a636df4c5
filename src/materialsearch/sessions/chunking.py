"""Batch planning for conversation-history writes.

The remote conversation store accepts at most 20 items per write and rejects
a batch that separates a reasoning item from the item right after it. The
planner runs without I/O so the ordering rules can be tested in isolation:

* only message and reasoning items are persisted;
* reasoning items that end a call are held back and prepended to the next
  call, so each one always travels with its follower;
* a full batch never ends in a reasoning item while more items remain.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

from ..utils.payloads import get_field

__all__ = [
    "MAX_ITEMS_PER_WRITE",
    "PERSISTED_ITEM_TYPES",
    "BatchPlan",
    "item_type",
    "requires_follower",
    "is_persisted",
    "plan_batches",
]

MAX_ITEMS_PER_WRITE = 20
PERSISTED_ITEM_TYPES = frozenset({"message", "reasoning"})


def item_type(item: Any) -> str | None:
    kind = get_field(item, "type")
    if kind is None and get_field(item, "role") is not None:
        # EasyInputMessage items ({"role", "content"}) omit the type field
        return "message"
    return str(kind) if kind is not None else None


def requires_follower(item: Any) -> bool:
    return item_type(item) == "reasoning"


def is_persisted(item: Any) -> bool:
    return item_type(item) in PERSISTED_ITEM_TYPES


@dataclass(slots=True)
class BatchPlan:
    """Ordered batches to send now, plus items to carry into the next call."""

    batches: list[list[Any]] = field(default_factory=list)
    pending: list[Any] = field(default_factory=list)

    @property
    def item_count(self) -> int:
        return sum(len(batch) for batch in self.batches)


def plan_batches(
    items: Sequence[Any],
    pending: Sequence[Any] = (),
    *,
    max_items: int = MAX_ITEMS_PER_WRITE,
) -> BatchPlan:
    """Split ``items`` into write batches honoring the ordering rules.

    Args:
        items: Items produced since the last write, in conversation order.
        pending: Reasoning items held back by the previous call.
        max_items: Per-write ceiling.

    Returns:
        The batches to send in order and the items to hold for the next call.
    """

    if max_items < 2:
        raise ValueError("max_items must be at least 2")
    fresh = [item for item in items if is_persisted(item)]
    if not fresh:
        return BatchPlan(pending=list(pending))
    sequence = [*pending, *fresh]

    # consecutive reasoning items at the tail all wait for the next call
    split = len(sequence)
    while split > 0 and requires_follower(sequence[split - 1]):
        split -= 1
    sequence, held = sequence[:split], sequence[split:]

    batches: list[list[Any]] = []
    index = 0
    while index < len(sequence):
        batch = sequence[index:index + max_items]
        if len(batch) == max_items and index + len(batch) < len(sequence):
            while len(batch) > 1 and requires_follower(batch[-1]):
                batch.pop()
        batches.append(batch)
        index += len(batch)
    return BatchPlan(batches=batches, pending=held)
