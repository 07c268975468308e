"""Geometric primitives and queries."""

from ._bounding_box import (
    BoundingBox,
    BoundingSphere,
    bounding_box,
    bounding_box_corners,
    bounding_box_from_points,
    bounding_box_is_empty,
    bounding_box_to_sphere,
    bounding_box_transform,
    bounding_box_union,
    empty_bounding_box,
)
from ._volume import (
    BoxVolume,
    box_volume,
    box_volume_clip_planes,
    box_volume_contains,
    box_volume_from_matrix,
    box_volume_half_extents,
    box_volume_make_uniform,
    box_volume_measure,
    box_volume_reset_orientation,
    box_volume_to_local,
    box_volume_to_matrix,
)
from .intersection import (
    box_volume_intersects_box,
    box_volume_intersects_sphere,
)

__all__ = [
    "BoundingBox",
    "BoundingSphere",
    "BoxVolume",
    "bounding_box",
    "bounding_box_corners",
    "bounding_box_from_points",
    "bounding_box_is_empty",
    "bounding_box_to_sphere",
    "bounding_box_transform",
    "bounding_box_union",
    "box_volume",
    "box_volume_clip_planes",
    "box_volume_contains",
    "box_volume_from_matrix",
    "box_volume_half_extents",
    "box_volume_intersects_box",
    "box_volume_intersects_sphere",
    "box_volume_make_uniform",
    "box_volume_measure",
    "box_volume_reset_orientation",
    "box_volume_to_local",
    "box_volume_to_matrix",
    "empty_bounding_box",
]
