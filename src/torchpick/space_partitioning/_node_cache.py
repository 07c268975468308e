"""Least-recently-used bookkeeping for loaded nodes."""

from __future__ import annotations

from collections import OrderedDict
from typing import Iterator, Optional, Protocol


class NodeCache(Protocol):
    def touch(self, handle: int) -> None: ...


class LRUNodeCache:
    """Records node accesses in recency order.

    Eviction policy belongs to the host; this class only keeps the order so
    the host can pick victims from :meth:`least_recently_used`.
    """

    def __init__(self) -> None:
        self._order: "OrderedDict[int, int]" = OrderedDict()

    def touch(self, handle: int) -> None:
        self._order[handle] = self._order.get(handle, 0) + 1
        self._order.move_to_end(handle)

    def touches(self, handle: int) -> int:
        """Number of times ``handle`` has been touched."""
        return self._order.get(handle, 0)

    def least_recently_used(self) -> Optional[int]:
        return next(iter(self._order), None)

    def discard(self, handle: int) -> None:
        self._order.pop(handle, None)

    def __contains__(self, handle: object) -> bool:
        return handle in self._order

    def __iter__(self) -> Iterator[int]:
        return iter(self._order)

    def __len__(self) -> int:
        return len(self._order)
