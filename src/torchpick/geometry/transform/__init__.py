"""
Geometric transformation
========================
"""

from torchpick.geometry.transform._affine import (
    compose_matrix,
    decompose_matrix,
    transform_points,
    translation_matrix,
)
from torchpick.geometry.transform._quaternion import (
    Quaternion,
    matrix_to_quaternion,
    quaternion,
    quaternion_apply,
    quaternion_conjugate,
    quaternion_identity,
    quaternion_normalize,
    quaternion_to_matrix,
)

__all__ = [
    "Quaternion",
    "compose_matrix",
    "decompose_matrix",
    "matrix_to_quaternion",
    "quaternion",
    "quaternion_apply",
    "quaternion_conjugate",
    "quaternion_identity",
    "quaternion_normalize",
    "quaternion_to_matrix",
    "transform_points",
    "translation_matrix",
]
