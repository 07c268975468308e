"""Node loaders that complete asynchronously from the query's point of view."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Dict, Mapping, Optional, Protocol

from torch import Tensor

if TYPE_CHECKING:
    from torchpick.space_partitioning._point_cloud_octree import (
        PointCloudOctree,
    )

logger = logging.getLogger(__name__)

NodeSource = Callable[["PointCloudOctree", int], Mapping[str, Tensor]]


class NodeLoader(Protocol):
    """Receives load requests for unloaded nodes.

    ``request`` must return immediately and be idempotent. The load completes
    later by calling :meth:`PointCloudOctree.set_loaded`.
    """

    def request(self, octree: "PointCloudOctree", handle: int) -> None: ...


class DeferredNodeLoader:
    """Loader that completes queued loads only when the host pumps it.

    Models an asynchronous fetch-and-decode pipeline on a single thread:
    :meth:`request` enqueues, and :meth:`process` (called by the host between
    query steps, typically once per frame) fetches arrays from ``source`` and
    installs them.

    Parameters
    ----------
    source : callable
        ``source(octree, handle) -> {name: flat array}``. The source may add
        new descendant nodes to the octree to expand the hierarchy.
    """

    def __init__(self, source: NodeSource) -> None:
        self.source = source
        self._pending: Dict[int, "PointCloudOctree"] = {}
        self.requests = 0

    @property
    def pending(self) -> int:
        return len(self._pending)

    def request(self, octree: "PointCloudOctree", handle: int) -> None:
        self.requests += 1
        if handle in self._pending or octree.node(handle).loaded:
            return
        self._pending[handle] = octree

    def process(self, limit: Optional[int] = None) -> int:
        """Complete up to ``limit`` pending loads in request order.

        Returns
        -------
        int
            Number of loads completed.
        """
        completed = 0
        while self._pending and (limit is None or completed < limit):
            handle = next(iter(self._pending))
            octree = self._pending.pop(handle)
            if octree.node(handle).loaded:
                continue
            octree.set_loaded(handle, self.source(octree, handle))
            logger.debug("loaded node '%s'", octree.node(handle).name)
            completed += 1
        return completed
