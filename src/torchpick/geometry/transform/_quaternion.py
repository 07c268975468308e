"""Quaternion representation and operations."""

from __future__ import annotations

import torch
from tensordict.tensorclass import tensorclass
from torch import Tensor


@tensorclass
class Quaternion:
    """Unit quaternion representing a 3D rotation.

    Uses scalar-first (wxyz) convention: q = w + xi + yj + zk.

    Attributes
    ----------
    wxyz : Tensor
        Quaternion components in [w, x, y, z] order, shape (..., 4).
        For unit quaternions: w^2 + x^2 + y^2 + z^2 = 1.

    Examples
    --------
    Identity rotation:
        Quaternion(wxyz=torch.tensor([1.0, 0.0, 0.0, 0.0]))

    90-degree rotation around z-axis:
        Quaternion(wxyz=torch.tensor([0.7071, 0.0, 0.0, 0.7071]))
    """

    wxyz: Tensor


def quaternion(wxyz: Tensor) -> Quaternion:
    """Create quaternion from wxyz tensor.

    Parameters
    ----------
    wxyz : Tensor
        Quaternion components [w, x, y, z], shape (..., 4).

    Returns
    -------
    Quaternion
        Quaternion instance.

    Raises
    ------
    ValueError
        If wxyz does not have last dimension 4.

    Examples
    --------
    >>> q = quaternion(torch.tensor([1.0, 0.0, 0.0, 0.0]))
    >>> q.wxyz
    tensor([1., 0., 0., 0.])
    """
    if wxyz.shape[-1] != 4:
        raise ValueError(
            f"quaternion: wxyz must have last dimension 4, got {wxyz.shape[-1]}"
        )
    return Quaternion(wxyz=wxyz)


def quaternion_identity(
    *,
    dtype: torch.dtype = torch.float32,
    device: torch.device | str | None = None,
) -> Quaternion:
    """Return the identity rotation [1, 0, 0, 0]."""
    return Quaternion(
        wxyz=torch.tensor([1.0, 0.0, 0.0, 0.0], dtype=dtype, device=device)
    )


def quaternion_conjugate(q: Quaternion) -> Quaternion:
    """Return the conjugate [w, -x, -y, -z].

    The input is left untouched; a new quaternion is returned.
    """
    sign = q.wxyz.new_tensor([1.0, -1.0, -1.0, -1.0])
    return Quaternion(wxyz=q.wxyz * sign)


def quaternion_normalize(q: Quaternion) -> Quaternion:
    """Normalize a quaternion to unit length.

    Parameters
    ----------
    q : Quaternion
        Input quaternion, shape (..., 4).

    Returns
    -------
    Quaternion
        Unit quaternion with ||q|| = 1, shape (..., 4).
    """
    norm = torch.linalg.norm(q.wxyz, dim=-1, keepdim=True)
    return Quaternion(wxyz=q.wxyz / norm.clamp(min=1e-12))


def quaternion_apply(q: Quaternion, point: Tensor) -> Tensor:
    """Apply quaternion rotation to 3D points.

    Computed with the optimized formula:

    .. math::

        v' = v + 2w(q_{xyz} \\times v) + 2(q_{xyz} \\times (q_{xyz} \\times v))

    where :math:`q = [w, x, y, z]` and :math:`q_{xyz} = [x, y, z]`.

    Parameters
    ----------
    q : Quaternion
        Unit quaternion(s), shape (..., 4).
    point : Tensor
        3D point(s), shape (..., 3). Batch dimensions broadcast with q.

    Returns
    -------
    Tensor
        Rotated point(s).

    Examples
    --------
    90-degree rotation around x-axis (maps y to z):

    >>> import math
    >>> q = quaternion(torch.tensor([math.cos(math.pi/4), math.sin(math.pi/4), 0.0, 0.0]))
    >>> quaternion_apply(q, torch.tensor([0.0, 1.0, 0.0]))
    tensor([0., 0., 1.])
    """
    wxyz = q.wxyz.to(point.dtype)
    w = wxyz[..., :1]
    xyz = wxyz[..., 1:]
    xyz, point = torch.broadcast_tensors(xyz, point)
    uv = torch.linalg.cross(xyz, point, dim=-1)
    uuv = torch.linalg.cross(xyz, uv, dim=-1)
    return point + 2.0 * (w * uv + uuv)


def quaternion_to_matrix(q: Quaternion) -> Tensor:
    """Convert quaternion to 3x3 rotation matrix.

    .. math::

        R = \\begin{bmatrix}
        1 - 2(y^2 + z^2) & 2(xy - wz) & 2(xz + wy) \\\\
        2(xy + wz) & 1 - 2(x^2 + z^2) & 2(yz - wx) \\\\
        2(xz - wy) & 2(yz + wx) & 1 - 2(x^2 + y^2)
        \\end{bmatrix}

    Parameters
    ----------
    q : Quaternion
        Unit quaternion(s), shape (..., 4).

    Returns
    -------
    Tensor
        Rotation matrix, shape (..., 3, 3).
    """
    w, x, y, z = q.wxyz.unbind(-1)
    rows = [
        1 - 2 * (y * y + z * z),
        2 * (x * y - w * z),
        2 * (x * z + w * y),
        2 * (x * y + w * z),
        1 - 2 * (x * x + z * z),
        2 * (y * z - w * x),
        2 * (x * z - w * y),
        2 * (y * z + w * x),
        1 - 2 * (x * x + y * y),
    ]
    return torch.stack(rows, dim=-1).reshape(*q.wxyz.shape[:-1], 3, 3)


def matrix_to_quaternion(matrix: Tensor) -> Quaternion:
    """Convert a single 3x3 rotation matrix to a unit quaternion.

    Uses Shepperd's method: the branch is chosen from the largest of the
    trace and the diagonal elements to avoid division by small numbers.

    Parameters
    ----------
    matrix : Tensor
        Rotation matrix, shape (3, 3).

    Returns
    -------
    Quaternion
        Unit quaternion, shape (4,) in wxyz convention.

    Raises
    ------
    ValueError
        If matrix is not 3x3.
    """
    if matrix.shape != (3, 3):
        raise ValueError(
            f"matrix_to_quaternion: matrix must be shape (3, 3), "
            f"got {tuple(matrix.shape)}"
        )
    m = matrix.tolist()
    trace = m[0][0] + m[1][1] + m[2][2]
    if trace > 0.0:
        s = 2.0 * (trace + 1.0) ** 0.5
        wxyz = [
            0.25 * s,
            (m[2][1] - m[1][2]) / s,
            (m[0][2] - m[2][0]) / s,
            (m[1][0] - m[0][1]) / s,
        ]
    elif m[0][0] > m[1][1] and m[0][0] > m[2][2]:
        s = 2.0 * (1.0 + m[0][0] - m[1][1] - m[2][2]) ** 0.5
        wxyz = [
            (m[2][1] - m[1][2]) / s,
            0.25 * s,
            (m[0][1] + m[1][0]) / s,
            (m[0][2] + m[2][0]) / s,
        ]
    elif m[1][1] > m[2][2]:
        s = 2.0 * (1.0 + m[1][1] - m[0][0] - m[2][2]) ** 0.5
        wxyz = [
            (m[0][2] - m[2][0]) / s,
            (m[0][1] + m[1][0]) / s,
            0.25 * s,
            (m[1][2] + m[2][1]) / s,
        ]
    else:
        s = 2.0 * (1.0 + m[2][2] - m[0][0] - m[1][1]) ** 0.5
        wxyz = [
            (m[1][0] - m[0][1]) / s,
            (m[0][2] + m[2][0]) / s,
            (m[1][2] + m[2][1]) / s,
            0.25 * s,
        ]
    result = torch.tensor(wxyz, dtype=matrix.dtype, device=matrix.device)
    return quaternion_normalize(Quaternion(wxyz=result))
