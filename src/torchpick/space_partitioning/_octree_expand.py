"""Discovery of octree descendants that intersect a query volume."""

from __future__ import annotations

from typing import List, Optional, Set

from torchpick.geometry import BoxVolume, box_volume_intersects_box
from torchpick.space_partitioning._node_queue import QueueEntry
from torchpick.space_partitioning._point_cloud_octree import PointCloudOctree


def octree_node_intersects(
    octree: PointCloudOctree, handle: int, volume: BoxVolume
) -> bool:
    """Conservative test of a node's bounding box against ``volume``."""
    return box_volume_intersects_box(
        volume, octree.node(handle).bounding_box, octree.matrix_world
    )


def octree_expandable(octree: PointCloudOctree, handle: int) -> bool:
    """Whether a loaded node starts a new traversal of its descendants.

    The root always does. Other nodes do only on hierarchy chunk
    boundaries, i.e. when their level is a multiple of the octree's
    ``hierarchy_step_size`` and they are flagged as having children.
    """
    node = octree.node(handle)
    if node.level == 0:
        return True
    return node.level % octree.hierarchy_step_size == 0 and node.has_children


def octree_expand(
    octree: PointCloudOctree,
    handle: int,
    volume: BoxVolume,
    *,
    max_depth: Optional[int] = None,
    seen: Optional[Set[int]] = None,
) -> List[QueueEntry]:
    """Collect the descendants of ``handle`` that intersect ``volume``.

    Walks the materialized subtree depth first. A child is visited only if
    it passes :func:`octree_node_intersects`; visited nodes are emitted with
    their bounding-sphere radius as weight and, while shallower than
    ``max_depth``, their own intersecting children are visited too.

    Parameters
    ----------
    octree : PointCloudOctree
        Octree owning ``handle``.
    handle : int
        Node whose descendants are collected. The node itself is not emitted.
    volume : BoxVolume
        Query volume.
    max_depth : int, optional
        Deepest level emitted. Unbounded when ``None``.
    seen : set of int, optional
        Handles already enqueued by the caller. Nodes in ``seen`` are neither
        emitted nor descended into; emitted handles are added to it. Pass
        ``None`` to allow the same node to be emitted by several expansions.

    Returns
    -------
    list of QueueEntry
        Entries in discovery order.
    """

    def intersecting_children(parent: int) -> List[int]:
        return [
            child
            for child in octree.children(parent)
            if octree_node_intersects(octree, child, volume)
        ]

    entries: List[QueueEntry] = []
    stack = intersecting_children(handle)
    while stack:
        child = stack.pop()
        node = octree.node(child)
        if max_depth is not None and node.level > max_depth:
            continue
        if seen is not None:
            if child in seen:
                continue
            seen.add(child)

        entries.append(QueueEntry(node=child, weight=node.radius))

        if max_depth is None or node.level < max_depth:
            stack.extend(intersecting_children(child))
    return entries
