"""4x4 affine matrices built from translation, rotation and scale."""

from __future__ import annotations

from typing import Tuple

import torch
from torch import Tensor

from torchpick.geometry.transform._quaternion import (
    Quaternion,
    matrix_to_quaternion,
    quaternion_to_matrix,
)


def translation_matrix(translation: Tensor) -> Tensor:
    """Return the 4x4 matrix translating by ``translation`` (shape (3,))."""
    matrix = torch.eye(4, dtype=translation.dtype, device=translation.device)
    matrix[:3, 3] = translation
    return matrix


def compose_matrix(
    translation: Tensor,
    rotation: Quaternion,
    scale: Tensor,
) -> Tensor:
    """Compose a 4x4 matrix ``T @ R @ S``.

    Parameters
    ----------
    translation : Tensor
        Translation, shape (3,).
    rotation : Quaternion
        Unit quaternion, shape (4,).
    scale : Tensor
        Per-axis scale, shape (3,).

    Returns
    -------
    Tensor
        Affine matrix, shape (4, 4).
    """
    matrix = torch.eye(4, dtype=translation.dtype, device=translation.device)
    r = quaternion_to_matrix(rotation).to(translation.dtype)
    matrix[:3, :3] = r * scale.to(translation.dtype).unsqueeze(0)
    matrix[:3, 3] = translation
    return matrix


def decompose_matrix(matrix: Tensor) -> Tuple[Tensor, Quaternion, Tensor]:
    """Split a 4x4 affine matrix into translation, rotation and scale.

    The scale of each axis is the length of the corresponding column of the
    upper 3x3 block. A negative determinant is folded into the x scale so
    that the remaining rotation is proper.

    Parameters
    ----------
    matrix : Tensor
        Affine matrix, shape (4, 4). Shear is not supported.

    Returns
    -------
    translation : Tensor
        Shape (3,).
    rotation : Quaternion
        Unit quaternion, shape (4,).
    scale : Tensor
        Shape (3,).

    Raises
    ------
    ValueError
        If matrix is not 4x4 or has a zero-length axis.
    """
    if matrix.shape != (4, 4):
        raise ValueError(
            f"decompose_matrix: matrix must be shape (4, 4), "
            f"got {tuple(matrix.shape)}"
        )
    linear = matrix[:3, :3]
    scale = torch.linalg.norm(linear, dim=0)
    if bool((scale == 0).any()):
        raise ValueError("decompose_matrix: matrix has a zero-length axis")
    if float(torch.linalg.det(linear)) < 0:
        scale = scale * scale.new_tensor([-1.0, 1.0, 1.0])
    rotation = matrix_to_quaternion(linear / scale.unsqueeze(0))
    return matrix[:3, 3].clone(), rotation, scale


def transform_points(matrix: Tensor, points: Tensor) -> Tensor:
    """Apply a 4x4 affine matrix to points of shape (..., 3)."""
    matrix = matrix.to(points.dtype)
    return points @ matrix[:3, :3].transpose(0, 1) + matrix[:3, 3]
