"""Conservative oriented-box versus bounding-volume admissibility tests."""

from __future__ import annotations

import torch
from torch import Tensor

from torchpick.geometry._bounding_box import (
    BoundingBox,
    BoundingSphere,
    bounding_box_is_empty,
    bounding_box_to_sphere,
    bounding_box_transform,
)
from torchpick.geometry._volume import (
    BoxVolume,
    box_volume_half_extents,
    box_volume_to_matrix,
)
from torchpick.geometry.transform import (
    quaternion_apply,
    quaternion_conjugate,
    transform_points,
)


def box_volume_intersects_sphere(
    volume: BoxVolume, sphere: BoundingSphere
) -> bool:
    r"""Approximate test of a world-space sphere against an oriented box.

    The box is replaced by the segment running through its center along the
    local x axis, from ``-scale_x / 2`` to ``+scale_x / 2``. With
    :math:`c` the closest point of that segment to the sphere center
    :math:`p`, and :math:`d = R^{-1}(c - p)` the offset in the box's
    unrotated frame, the test admits the sphere when

    .. math::

        |d_x| < r, \quad |d_y| < r + h_y, \quad |d_z| < r + h_z

    where :math:`h` are the half-extents.

    The test is conservative: it may admit spheres that miss the box, but it
    never rejects a sphere containing a point that lies inside the box.
    Callers must re-test points exactly.

    Parameters
    ----------
    volume : BoxVolume
        Query box.
    sphere : BoundingSphere
        World-space sphere.

    Returns
    -------
    bool
    """
    matrix = box_volume_to_matrix(volume)
    ends = transform_points(
        matrix,
        torch.tensor(
            [[-0.5, 0.0, 0.0], [0.5, 0.0, 0.0]],
            dtype=matrix.dtype,
            device=matrix.device,
        ),
    )
    center = sphere.center.to(matrix.dtype)
    closest = _closest_point_on_segment(ends[0], ends[1], center)

    offset = quaternion_apply(
        quaternion_conjugate(volume.rotation), closest - center
    ).abs()

    radius = float(sphere.radius)
    half = box_volume_half_extents(volume)
    return (
        float(offset[1]) < radius + float(half[1])
        and float(offset[2]) < radius + float(half[2])
        and float(offset[0]) < radius
    )


def box_volume_intersects_box(
    volume: BoxVolume, box: BoundingBox, matrix_world: Tensor
) -> bool:
    """Approximate test of a local bounding box against an oriented box.

    ``box`` is expressed in the point cloud's local frame; it is moved to
    world space with ``matrix_world`` and replaced by its bounding sphere
    before calling :func:`box_volume_intersects_sphere`.
    """
    if bounding_box_is_empty(box):
        return False
    world_box = bounding_box_transform(box, matrix_world)
    return box_volume_intersects_sphere(
        volume, bounding_box_to_sphere(world_box)
    )


def _closest_point_on_segment(start: Tensor, end: Tensor, point: Tensor) -> Tensor:
    direction = end - start
    length_squared = float((direction * direction).sum())
    if length_squared == 0.0:
        return start
    t = float(((point - start) * direction).sum()) / length_squared
    t = min(max(t, 0.0), 1.0)
    return start + t * direction
