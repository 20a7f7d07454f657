"""
History Store - bounded undo/redo over GraphStore snapshots.

The UI layer calls ``record()`` before every user command. The scheduler
never records: run results are not undoable steps.
"""

import logging
from collections import deque

from flowcanvas.config import get_history_limit
from flowcanvas.graph.store import GraphSnapshot, GraphStore

logger = logging.getLogger(__name__)


class HistoryStore:
    """
    Undo/redo stacks of graph snapshots.

    ``past`` is bounded at ``limit`` entries, evicting the oldest on
    overflow; ``future`` is cleared by every new ``record()``.
    """

    def __init__(self, store: GraphStore, limit: int | None = None):
        self.store = store
        self.limit = limit if limit is not None else get_history_limit()
        if self.limit < 1:
            raise ValueError("History limit must be at least 1")
        self._past: deque[GraphSnapshot] = deque(maxlen=self.limit)
        self._future: list[GraphSnapshot] = []

    @property
    def can_undo(self) -> bool:
        return bool(self._past)

    @property
    def can_redo(self) -> bool:
        return bool(self._future)

    @property
    def depth(self) -> tuple[int, int]:
        """(past, future) stack sizes."""
        return len(self._past), len(self._future)

    def record(self) -> None:
        """Push the current live state; invalidates any redo path."""
        self._past.append(self.store.snapshot())
        self._future.clear()

    def undo(self) -> bool:
        if not self._past:
            return False
        previous = self._past.pop()
        self._future.insert(0, self.store.snapshot())
        self.store.restore(previous)
        logger.debug(f"Undo: {len(self._past)} step(s) left")
        return True

    def redo(self) -> bool:
        if not self._future:
            return False
        following = self._future.pop(0)
        self._past.append(self.store.snapshot())
        self.store.restore(following)
        logger.debug(f"Redo: {len(self._future)} step(s) left")
        return True

    def clear(self) -> None:
        self._past.clear()
        self._future.clear()
