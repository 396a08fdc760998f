"""
Bounded, insertion-ordered store of recent exchanges.

The Controller owns one HistoryRing and passes it to the prompt
composer. It is not safe for concurrent writers.
"""

from __future__ import annotations

from collections import deque
from typing import Iterator

from cmdforge.models import ConversationEntry

MAX_HISTORY_ENTRIES = 10


class HistoryRing:
    """FIFO ring of ConversationEntry, capped at MAX_HISTORY_ENTRIES."""

    def __init__(self, capacity: int = MAX_HISTORY_ENTRIES):
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._entries: deque[ConversationEntry] = deque(maxlen=capacity)

    def append(self, entry: ConversationEntry) -> None:
        self._entries.append(entry)

    def snapshot(self) -> tuple[ConversationEntry, ...]:
        """Ordered copy, newest last."""
        return tuple(self._entries)

    def latest(self) -> ConversationEntry | None:
        return self._entries[-1] if self._entries else None

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ConversationEntry]:
        return iter(self.snapshot())
