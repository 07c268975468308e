"""Out-of-core level-of-detail point cloud octree stored as a node arena."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Tuple,
)

import torch
from torch import Tensor

from torchpick.geometry import (
    BoundingBox,
    BoundingSphere,
    bounding_box_to_sphere,
)
from torchpick.geometry.transform import translation_matrix

if TYPE_CHECKING:
    from torchpick.geometry import BoxVolume
    from torchpick.picking import VolumeQueryRequest
    from torchpick.space_partitioning._loader import NodeLoader
    from torchpick.space_partitioning._node_cache import NodeCache

logger = logging.getLogger(__name__)

# Storage encodings reported by point cloud metadata
ENCODING_DEFAULT = "DEFAULT"
ENCODING_BROTLI = "BROTLI"

# Attributes that carry geometry rather than per-point payload
RESERVED_ATTRIBUTES = ("position", "indices")


@dataclass(frozen=True)
class AttributeSpec:
    """Layout of one point attribute, fixed when the node is loaded.

    Attributes
    ----------
    name : str
        Attribute name, e.g. ``"rgba"`` or ``"classification"``.
    dtype : torch.dtype
        Element type of the flat array.
    elements : int
        Number of array elements belonging to each point.
    """

    name: str
    dtype: torch.dtype
    elements: int


@dataclass
class OctreeNode:
    """One node of a :class:`PointCloudOctree`.

    Nodes are owned by the octree and addressed by integer handles. Children
    are stored as handles in eight octant slots; empty slots are ``None``.

    ``attributes`` maps names to flat arrays of length
    ``num_points * schema[name].elements``. Positions are stored under
    ``"position"`` as three floats per point, relative to
    ``bounding_box.lower``.
    """

    handle: int
    name: str
    level: int
    bounding_box: BoundingBox
    bounding_sphere: BoundingSphere
    num_points: int = 0
    has_children: bool = False
    encoding: str = ENCODING_DEFAULT
    byte_offset: int = 0
    children: List[Optional[int]] = field(default_factory=lambda: [None] * 8)
    loaded: bool = False
    attributes: Dict[str, Tensor] = field(default_factory=dict)
    schema: Dict[str, AttributeSpec] = field(default_factory=dict)

    @property
    def radius(self) -> float:
        return float(self.bounding_sphere.radius)


def infer_attribute_schema(
    attributes: Mapping[str, Tensor], num_points: int
) -> Dict[str, AttributeSpec]:
    """Derive an :class:`AttributeSpec` per array from its length.

    ``elements`` is the floor of ``numel / num_points``; arrays whose length
    is not a multiple of ``num_points`` are rejected later, when the node is
    filtered.
    """
    return {
        name: AttributeSpec(
            name=name,
            dtype=array.dtype,
            elements=array.numel() // num_points if num_points > 0 else 0,
        )
        for name, array in attributes.items()
    }


class PointCloudOctree:
    """Point cloud hierarchy with externally driven, asynchronous node loading.

    Parameters
    ----------
    matrix_world : Tensor, shape (4, 4), optional
        Transform from the cloud's local frame to world space. Identity by
        default.
    offset : Tensor, shape (3,), optional
        Offset subtracted from source coordinates when the cloud was
        converted. Only used by :meth:`export_transform`.
    hierarchy_step_size : int, default=1
        Number of levels materialized by one hierarchy chunk. Loaded nodes on
        multiples of this level may bring new descendants with them.
    loader : NodeLoader, optional
        Receives load requests from :meth:`load_node`.
    cache : NodeCache, optional
        Receives a :meth:`~NodeCache.touch` for every visited loaded node.
    encoding : str, default="DEFAULT"
        Storage encoding given to new nodes.

    Examples
    --------
    >>> cloud = PointCloudOctree()
    >>> root = cloud.add_node(bounding_box(torch.zeros(3), torch.ones(3)))
    >>> child = cloud.add_node(
    ...     bounding_box(torch.zeros(3), torch.full((3,), 0.5)),
    ...     parent=root,
    ...     octant=0,
    ... )
    >>> cloud.node(child).level
    1
    """

    def __init__(
        self,
        matrix_world: Optional[Tensor] = None,
        *,
        offset: Optional[Tensor] = None,
        hierarchy_step_size: int = 1,
        loader: Optional["NodeLoader"] = None,
        cache: Optional["NodeCache"] = None,
        encoding: str = ENCODING_DEFAULT,
    ) -> None:
        if hierarchy_step_size < 1:
            raise ValueError(
                f"PointCloudOctree: hierarchy_step_size must be >= 1, "
                f"got {hierarchy_step_size}"
            )
        if matrix_world is None:
            matrix_world = torch.eye(4)
        if matrix_world.shape != (4, 4):
            raise ValueError(
                f"PointCloudOctree: matrix_world must be shape (4, 4), "
                f"got {tuple(matrix_world.shape)}"
            )
        self.matrix_world = matrix_world
        self.offset = offset if offset is not None else torch.zeros(3)
        self.hierarchy_step_size = hierarchy_step_size
        self.loader = loader
        self.cache = cache
        self.encoding = encoding
        self._nodes: List[OctreeNode] = []
        self._requests: Dict[int, "VolumeQueryRequest"] = {}
        self._next_request_handle = 0

    # ------------------------------------------------------------------
    # Node arena
    # ------------------------------------------------------------------

    @property
    def root(self) -> int:
        if not self._nodes:
            raise LookupError("PointCloudOctree: octree has no root node")
        return 0

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[OctreeNode]:
        return iter(self._nodes)

    def node(self, handle: int) -> OctreeNode:
        return self._nodes[handle]

    def children(self, handle: int) -> List[int]:
        """Handles of the existing children of ``handle`` in octant order."""
        return [c for c in self._nodes[handle].children if c is not None]

    def add_node(
        self,
        box: BoundingBox,
        *,
        parent: Optional[int] = None,
        octant: Optional[int] = None,
        num_points: int = 0,
        has_children: bool = False,
        byte_offset: int = 0,
    ) -> int:
        """Create a node and return its handle.

        The first node added is the root and must have no parent. Every
        other node fills an empty octant slot of an existing parent; slots
        are never reassigned.

        Raises
        ------
        ValueError
            On a missing or duplicate parent/octant, or negative point count.
        """
        if num_points < 0:
            raise ValueError(
                f"add_node: num_points must be >= 0, got {num_points}"
            )
        if parent is None:
            if self._nodes:
                raise ValueError("add_node: only the root may omit parent")
            level = 0
            name = "r"
        else:
            if octant is None or not 0 <= octant < 8:
                raise ValueError(
                    f"add_node: octant must be in [0, 7], got {octant}"
                )
            parent_node = self._nodes[parent]
            if parent_node.children[octant] is not None:
                raise ValueError(
                    f"add_node: octant {octant} of node "
                    f"'{parent_node.name}' is already occupied"
                )
            level = parent_node.level + 1
            name = f"{parent_node.name}{octant}"

        handle = len(self._nodes)
        self._nodes.append(
            OctreeNode(
                handle=handle,
                name=name,
                level=level,
                bounding_box=box,
                bounding_sphere=bounding_box_to_sphere(box),
                num_points=num_points,
                has_children=has_children,
                encoding=self.encoding,
                byte_offset=byte_offset,
            )
        )
        if parent is not None:
            self._nodes[parent].children[octant] = handle
            self._nodes[parent].has_children = True
        return handle

    def load_node(self, handle: int) -> None:
        """Ask the loader for ``handle``. Idempotent and non-blocking."""
        if self._nodes[handle].loaded:
            return
        if self.loader is None:
            raise RuntimeError(
                f"load_node: node '{self._nodes[handle].name}' is not loaded "
                f"and the octree has no loader"
            )
        self.loader.request(self, handle)

    def set_loaded(
        self,
        handle: int,
        attributes: Mapping[str, Tensor],
        *,
        num_points: Optional[int] = None,
        schema: Optional[Mapping[str, AttributeSpec]] = None,
    ) -> None:
        """Install the decoded arrays of ``handle`` and mark it loaded.

        Called by loaders when a load completes. When ``num_points`` is not
        given and the node has none recorded, it is taken from the length of
        ``"position"``.

        Raises
        ------
        RuntimeError
            If the node is already loaded.
        """
        node = self._nodes[handle]
        if node.loaded:
            raise RuntimeError(
                f"set_loaded: node '{node.name}' is already loaded"
            )
        if num_points is not None:
            node.num_points = num_points
        elif node.num_points == 0 and "position" in attributes:
            node.num_points = attributes["position"].numel() // 3
        node.attributes = dict(attributes)
        node.schema = (
            dict(schema)
            if schema is not None
            else infer_attribute_schema(attributes, node.num_points)
        )
        node.loaded = True

    def touch(self, handle: int) -> None:
        if self.cache is not None:
            self.cache.touch(handle)

    # ------------------------------------------------------------------
    # Transforms
    # ------------------------------------------------------------------

    @property
    def position(self) -> Tensor:
        """World-space origin of the cloud's local frame."""
        return self.matrix_world[:3, 3]

    def node_matrix(self, handle: int) -> Tensor:
        """Transform from the node's stored point frame to world space."""
        lower = self._nodes[handle].bounding_box.lower
        return self.matrix_world @ translation_matrix(
            lower.to(self.matrix_world.dtype)
        )

    def export_transform(self) -> Tensor:
        """World matrix composed with a translation by ``-offset``."""
        return self.matrix_world @ translation_matrix(
            -self.offset.to(self.matrix_world.dtype)
        )

    # ------------------------------------------------------------------
    # Request registry
    # ------------------------------------------------------------------

    @property
    def active_requests(self) -> Tuple["VolumeQueryRequest", ...]:
        return tuple(self._requests.values())

    def register_request(self, request: "VolumeQueryRequest") -> int:
        handle = self._next_request_handle
        self._next_request_handle += 1
        self._requests[handle] = request
        logger.debug("registered request %d", handle)
        return handle

    def deregister_request(self, handle: int) -> None:
        if self._requests.pop(handle, None) is not None:
            logger.debug("deregistered request %d", handle)

    def get_points_in_volume(
        self,
        volume: "BoxVolume",
        max_depth: Optional[int] = None,
        **kwargs: Any,
    ) -> "VolumeQueryRequest":
        """Create and register a progressive query for points in ``volume``.

        Keyword arguments are forwarded to
        :class:`~torchpick.picking.VolumeQueryRequest` (callbacks and
        budgets). The host advances the returned request with
        :meth:`~torchpick.picking.VolumeQueryRequest.step`.
        """
        from torchpick.picking import VolumeQueryRequest

        return VolumeQueryRequest(self, volume, max_depth, **kwargs)
