"""Resumable per-node point filtering and attribute compaction."""

from __future__ import annotations

from typing import Callable, List, Optional

import torch
from tensordict import TensorDict
from torch import Tensor

from torchpick.geometry import (
    BoxVolume,
    bounding_box_from_points,
    box_volume_contains,
)
from torchpick.geometry.transform import transform_points
from torchpick.picking._exceptions import MalformedAttributeLayoutError
from torchpick.picking._point_batch import PointBatch
from torchpick.space_partitioning import (
    RESERVED_ATTRIBUTES,
    OctreeNode,
    PointCloudOctree,
)


def validate_attribute_layout(node: OctreeNode) -> None:
    """Check that every array of ``node`` holds whole elements per point.

    ``"position"`` must hold exactly three elements per point, ``"indices"``
    is ignored, and every other attribute must match ``num_points`` times its
    schema's ``elements`` (or, without a schema entry, a positive multiple of
    ``num_points``).

    Raises
    ------
    MalformedAttributeLayoutError
        On the first attribute that does not.
    """
    n = node.num_points
    if "position" not in node.attributes:
        raise MalformedAttributeLayoutError(node.handle, "position", 0, n)
    for name in node.schema:
        if name not in node.attributes and name not in RESERVED_ATTRIBUTES:
            raise MalformedAttributeLayoutError(node.handle, name, 0, n)
    for name, array in node.attributes.items():
        if name == "indices":
            continue
        if name == "position":
            elements = 3
        elif name in node.schema:
            elements = node.schema[name].elements
        else:
            elements = array.numel() // n
        if elements <= 0 or array.numel() != n * elements:
            raise MalformedAttributeLayoutError(
                node.handle, name, array.numel(), n
            )


class PointFilter:
    """Tests the points of one loaded node against a volume, in resumable chunks.

    The filter keeps its own progress (next point index and the accepted
    indices and positions found so far) so the caller can stop after any
    chunk and call :meth:`resume` again later without redoing or repeating
    work.

    Each point is moved to world space through the cloud's world matrix and
    the node's bounding-box origin, then accepted when it lies strictly inside
    ``volume`` (see :func:`~torchpick.geometry.box_volume_contains`).

    Parameters
    ----------
    octree : PointCloudOctree
        Octree owning the node.
    handle : int
        Loaded node to filter. Must have at least one point.
    volume : BoxVolume
        Query volume.
    check_interval : int, default=1000
        Points tested between two calls of the ``should_yield`` predicate.

    Raises
    ------
    MalformedAttributeLayoutError
        If any attribute of the node is malformed. Raised before any point is
        processed.

    Examples
    --------
    >>> point_filter = PointFilter(cloud, handle, volume)
    >>> batch = None
    >>> while batch is None:
    ...     batch = point_filter.resume(lambda: False)
    """

    def __init__(
        self,
        octree: PointCloudOctree,
        handle: int,
        volume: BoxVolume,
        *,
        check_interval: int = 1000,
    ) -> None:
        if check_interval < 1:
            raise ValueError(
                f"PointFilter: check_interval must be >= 1, got {check_interval}"
            )
        node = octree.node(handle)
        if not node.loaded:
            raise ValueError(f"PointFilter: node '{node.name}' is not loaded")
        if node.num_points <= 0:
            raise ValueError(f"PointFilter: node '{node.name}' has no points")
        validate_attribute_layout(node)

        self.octree = octree
        self.node = node
        self.volume = volume
        self.check_interval = check_interval
        self.next_index = 0
        self.accepted_indices: Optional[Tensor] = None
        self._matrix = octree.node_matrix(handle)
        self._positions = node.attributes["position"].reshape(-1, 3)
        self._indices: List[Tensor] = []
        self._world: List[Tensor] = []

    @property
    def done(self) -> bool:
        return self.next_index >= self.node.num_points

    def resume(self, should_yield: Callable[[], bool]) -> Optional[PointBatch]:
        """Process chunks until the node is done or ``should_yield()`` is true.

        ``should_yield`` is consulted after every chunk of ``check_interval``
        points, so at least one chunk is processed per call.

        Returns
        -------
        PointBatch or None
            The compacted batch once every point has been tested, ``None``
            when suspended with points left.
        """
        num_points = self.node.num_points
        while self.next_index < num_points:
            start = self.next_index
            stop = min(start + self.check_interval, num_points)
            local = self._positions[start:stop].to(self._matrix.dtype)
            world = transform_points(self._matrix, local)
            inside = box_volume_contains(self.volume, world)
            self._indices.append(torch.nonzero(inside).squeeze(-1) + start)
            self._world.append(world[inside])
            self.next_index = stop
            if self.next_index < num_points and should_yield():
                return None
        return self._compact()

    def _compact(self) -> PointBatch:
        node = self.node
        indices = torch.cat(self._indices)
        world = torch.cat(self._world)
        self.accepted_indices = indices

        attributes = {}
        for name, array in node.attributes.items():
            if name in RESERVED_ATTRIBUTES:
                continue
            layout = node.schema.get(name)
            dtype = layout.dtype if layout is not None else array.dtype
            rows = array.reshape(node.num_points, -1)
            attributes[name] = rows.index_select(0, indices).to(dtype)

        positions = world - self.octree.position.to(world.dtype)
        return PointBatch(
            positions=positions.to(torch.float32),
            attributes=TensorDict(attributes, batch_size=[]),
            bounding_box=bounding_box_from_points(world),
        )
