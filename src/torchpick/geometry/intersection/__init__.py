from ._box_volume_intersection import (
    box_volume_intersects_box,
    box_volume_intersects_sphere,
)

__all__ = [
    "box_volume_intersects_box",
    "box_volume_intersects_sphere",
]
