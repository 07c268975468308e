"""Max-priority queue of pending octree nodes."""

from __future__ import annotations

import heapq
import itertools
import math
from dataclasses import dataclass
from typing import List, Tuple


@dataclass(frozen=True)
class QueueEntry:
    """A node waiting to be visited.

    Attributes
    ----------
    node : int
        Node handle.
    weight : float
        Priority; larger pops first. The root is seeded with ``inf``.
    """

    node: int
    weight: float


class NodeQueue:
    """Binary max-heap of :class:`QueueEntry` keyed on ``weight``.

    Entries of equal weight pop in insertion order. Weights are stored
    negated in a :mod:`heapq` min-heap, which is exact for ``inf``.

    Examples
    --------
    >>> queue = NodeQueue()
    >>> queue.push(QueueEntry(node=1, weight=0.5))
    >>> queue.push(QueueEntry(node=0, weight=float("inf")))
    >>> queue.pop().node
    0
    """

    def __init__(self) -> None:
        self._heap: List[Tuple[float, int, QueueEntry]] = []
        self._counter = itertools.count()

    def push(self, entry: QueueEntry) -> None:
        if math.isnan(entry.weight):
            raise ValueError(
                f"NodeQueue.push: weight must not be NaN (node {entry.node})"
            )
        heapq.heappush(self._heap, (-entry.weight, next(self._counter), entry))

    def pop(self) -> QueueEntry:
        if not self._heap:
            raise IndexError("NodeQueue.pop: queue is empty")
        return heapq.heappop(self._heap)[2]

    def peek(self) -> QueueEntry:
        if not self._heap:
            raise IndexError("NodeQueue.peek: queue is empty")
        return self._heap[0][2]

    def clear(self) -> None:
        self._heap.clear()

    def __len__(self) -> int:
        return len(self._heap)

    def __bool__(self) -> bool:
        return bool(self._heap)
