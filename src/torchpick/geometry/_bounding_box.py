"""Axis-aligned bounding boxes and bounding spheres."""

from __future__ import annotations

import itertools

import torch
from tensordict import tensorclass
from torch import Tensor

from torchpick.geometry.transform import transform_points


@tensorclass
class BoundingBox:
    """Axis-aligned bounding box.

    Attributes
    ----------
    lower : Tensor, shape (3,)
        Minimum corner. ``+inf`` on every axis for an empty box.
    upper : Tensor, shape (3,)
        Maximum corner. ``-inf`` on every axis for an empty box.
    """

    lower: Tensor
    upper: Tensor


@tensorclass
class BoundingSphere:
    """Bounding sphere.

    Attributes
    ----------
    center : Tensor, shape (3,)
    radius : Tensor, scalar
    """

    center: Tensor
    radius: Tensor


def bounding_box(lower: Tensor, upper: Tensor) -> BoundingBox:
    """Create a box from its minimum and maximum corners.

    Raises
    ------
    ValueError
        If either corner is not shape (3,).
    """
    if lower.shape != (3,) or upper.shape != (3,):
        raise ValueError(
            f"bounding_box: corners must be shape (3,), "
            f"got {tuple(lower.shape)} and {tuple(upper.shape)}"
        )
    return BoundingBox(lower=lower, upper=upper)


def empty_bounding_box(
    *,
    dtype: torch.dtype = torch.float32,
    device: torch.device | str | None = None,
) -> BoundingBox:
    """Box that contains nothing; the identity for :func:`bounding_box_union`."""
    inf = float("inf")
    return BoundingBox(
        lower=torch.full((3,), inf, dtype=dtype, device=device),
        upper=torch.full((3,), -inf, dtype=dtype, device=device),
    )


def bounding_box_is_empty(box: BoundingBox) -> bool:
    return bool((box.lower > box.upper).any())


def bounding_box_from_points(points: Tensor) -> BoundingBox:
    """Tightest box around ``points`` of shape (n, 3); empty when n == 0."""
    if points.shape[0] == 0:
        return empty_bounding_box(dtype=points.dtype, device=points.device)
    return BoundingBox(
        lower=points.amin(dim=0),
        upper=points.amax(dim=0),
    )


def bounding_box_union(a: BoundingBox, b: BoundingBox) -> BoundingBox:
    return BoundingBox(
        lower=torch.minimum(a.lower, b.lower),
        upper=torch.maximum(a.upper, b.upper),
    )


def bounding_box_corners(box: BoundingBox) -> Tensor:
    """The eight corners of ``box``, shape (8, 3)."""
    corners = [
        torch.stack(
            [
                (box.upper if bit_x else box.lower)[0],
                (box.upper if bit_y else box.lower)[1],
                (box.upper if bit_z else box.lower)[2],
            ]
        )
        for bit_x, bit_y, bit_z in itertools.product((0, 1), repeat=3)
    ]
    return torch.stack(corners)


def bounding_box_transform(box: BoundingBox, matrix: Tensor) -> BoundingBox:
    """Axis-aligned box around ``box`` after applying a 4x4 ``matrix``.

    Every corner is transformed and the result is the box around the eight
    transformed corners, so rotations grow the box.
    """
    if bounding_box_is_empty(box):
        return box
    return bounding_box_from_points(
        transform_points(matrix, bounding_box_corners(box))
    )


def bounding_box_to_sphere(box: BoundingBox) -> BoundingSphere:
    """Sphere centered on the box with radius equal to the half diagonal."""
    center = (box.lower + box.upper) * 0.5
    radius = torch.linalg.norm(box.upper - box.lower) * 0.5
    return BoundingSphere(center=center, radius=radius)
