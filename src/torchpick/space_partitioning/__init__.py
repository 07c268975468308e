"""Level-of-detail point cloud octrees and their traversal.

Nodes live in an arena owned by :class:`PointCloudOctree` and are addressed
by integer handles. Loading is asynchronous: queries request loads through
the octree's loader and observe the ``loaded`` flag on later steps.
"""

from ._loader import DeferredNodeLoader, NodeLoader, NodeSource
from ._node_cache import LRUNodeCache, NodeCache
from ._node_queue import NodeQueue, QueueEntry
from ._octree_expand import (
    octree_expand,
    octree_expandable,
    octree_node_intersects,
)
from ._point_cloud_octree import (
    ENCODING_BROTLI,
    ENCODING_DEFAULT,
    RESERVED_ATTRIBUTES,
    AttributeSpec,
    OctreeNode,
    PointCloudOctree,
    infer_attribute_schema,
)

__all__ = [
    "ENCODING_BROTLI",
    "ENCODING_DEFAULT",
    "RESERVED_ATTRIBUTES",
    "AttributeSpec",
    "DeferredNodeLoader",
    "LRUNodeCache",
    "NodeCache",
    "NodeLoader",
    "NodeQueue",
    "NodeSource",
    "OctreeNode",
    "PointCloudOctree",
    "QueueEntry",
    "infer_attribute_schema",
    "octree_expand",
    "octree_expandable",
    "octree_node_intersects",
]
