"""torchpick: progressive volume queries over level-of-detail point cloud octrees."""

from . import (
    geometry,
    picking,
    space_partitioning,
)

__all__ = [
    "geometry",
    "picking",
    "space_partitioning",
]

__version__ = "0.1.0"
