"""Oriented box volumes used as point queries."""

from __future__ import annotations

from typing import Optional

import torch
from tensordict import tensorclass
from torch import Tensor

from torchpick.geometry.transform import (
    Quaternion,
    compose_matrix,
    decompose_matrix,
    quaternion_apply,
    quaternion_conjugate,
    quaternion_identity,
    quaternion_normalize,
    transform_points,
)


@tensorclass
class BoxVolume:
    """Oriented box with arbitrary position, rotation and non-uniform scale.

    The box is the unit cube ``[-0.5, 0.5]^3`` mapped through
    ``T(position) @ R(rotation) @ S(scale)``, so its half-extents along the
    local axes are ``scale / 2``.

    Attributes
    ----------
    position : Tensor, shape (3,)
        World-space center.
    rotation : Quaternion
        World-space rotation, shape (4,).
    scale : Tensor, shape (3,)
        Full edge lengths along the local x, y and z axes.

    Examples
    --------
    Unit box at the origin:

    >>> volume = box_volume(torch.zeros(3), scale=torch.ones(3))
    >>> box_volume_half_extents(volume)
    tensor([0.5000, 0.5000, 0.5000])
    """

    position: Tensor
    rotation: Quaternion
    scale: Tensor


def box_volume(
    position: Tensor,
    rotation: Optional[Quaternion] = None,
    scale: Optional[Tensor] = None,
) -> BoxVolume:
    """Create a box volume from translation, rotation and scale.

    Parameters
    ----------
    position : Tensor, shape (3,)
        World-space center.
    rotation : Quaternion, optional
        World rotation. Normalized on construction. Defaults to identity.
    scale : Tensor, shape (3,), optional
        Edge lengths. Defaults to ones.

    Raises
    ------
    ValueError
        If position or scale is not shape (3,), or scale has a negative
        component.
    """
    if position.shape != (3,):
        raise ValueError(
            f"box_volume: position must be shape (3,), got {tuple(position.shape)}"
        )
    if rotation is None:
        rotation = quaternion_identity(
            dtype=position.dtype, device=position.device
        )
    if scale is None:
        scale = torch.ones_like(position)
    if scale.shape != (3,):
        raise ValueError(
            f"box_volume: scale must be shape (3,), got {tuple(scale.shape)}"
        )
    if bool((scale < 0).any()):
        raise ValueError(
            f"box_volume: scale must be non-negative, got {scale.tolist()}"
        )
    return BoxVolume(
        position=position,
        rotation=quaternion_normalize(rotation),
        scale=scale,
    )


def box_volume_from_matrix(matrix: Tensor) -> BoxVolume:
    """Create a box volume from its 4x4 world matrix."""
    position, rotation, scale = decompose_matrix(matrix)
    return box_volume(position, rotation, scale.abs())


def box_volume_to_matrix(volume: BoxVolume) -> Tensor:
    """World matrix mapping the unit cube onto ``volume``, shape (4, 4)."""
    return compose_matrix(volume.position, volume.rotation, volume.scale)


def box_volume_half_extents(volume: BoxVolume) -> Tensor:
    return volume.scale * 0.5


def box_volume_to_local(volume: BoxVolume, points: Tensor) -> Tensor:
    """Offsets of world ``points`` from the box center in the box's unrotated frame.

    The result is not divided by the scale: a point is inside the box when
    every component is smaller in magnitude than the half-extent.
    """
    return quaternion_apply(
        quaternion_conjugate(volume.rotation),
        points - volume.position.to(points.dtype),
    )


def box_volume_contains(volume: BoxVolume, points: Tensor) -> Tensor:
    """Boolean mask of the world ``points`` (shape (n, 3)) strictly inside."""
    local = box_volume_to_local(volume, points)
    half = box_volume_half_extents(volume).to(points.dtype)
    return (local.abs() < half).all(dim=-1)


def box_volume_measure(volume: BoxVolume) -> Tensor:
    """Enclosed volume, the product of the edge lengths."""
    return volume.scale.prod()


def box_volume_reset_orientation(volume: BoxVolume) -> BoxVolume:
    """Same box with the rotation set back to identity."""
    return box_volume(
        volume.position,
        quaternion_identity(
            dtype=volume.position.dtype, device=volume.position.device
        ),
        volume.scale,
    )


def box_volume_make_uniform(volume: BoxVolume) -> BoxVolume:
    """Same box with every edge set to the mean edge length."""
    return box_volume(
        volume.position,
        volume.rotation,
        torch.full_like(volume.scale, float(volume.scale.mean())),
    )


def box_volume_clip_planes(volume: BoxVolume) -> Tensor:
    """The six bounding planes of the box as ``[nx, ny, nz, constant]`` rows.

    Each plane passes through the center of one face and its normal points
    into the box, so ``dot(normal, p) + constant >= 0`` for every point
    ``p`` inside. Rows are ordered +x, -x, +y, -y, +z, -z.

    Returns
    -------
    Tensor
        Shape (6, 4).
    """
    matrix = box_volume_to_matrix(volume)
    faces = torch.tensor(
        [
            [0.5, 0.0, 0.0],
            [-0.5, 0.0, 0.0],
            [0.0, 0.5, 0.0],
            [0.0, -0.5, 0.0],
            [0.0, 0.0, 0.5],
            [0.0, 0.0, -0.5],
        ],
        dtype=matrix.dtype,
        device=matrix.device,
    )
    points = transform_points(matrix, faces)
    opposite = transform_points(matrix, -faces)
    normals = opposite - points
    normals = normals / torch.linalg.norm(normals, dim=-1, keepdim=True).clamp(
        min=1e-12
    )
    constants = -(normals * points).sum(dim=-1, keepdim=True)
    return torch.cat([normals, constants], dim=-1)
