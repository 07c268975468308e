"""In-place classification edits driven by accepted points."""

from __future__ import annotations

from typing import Any, Dict, Optional

import torch
from torch import Tensor

from torchpick.picking._exceptions import (
    MalformedAttributeLayoutError,
    UnsupportedEncodingError,
)
from torchpick.space_partitioning import ENCODING_DEFAULT, OctreeNode

CLASSIFICATION = "classification"


def reassign_classification(
    node: OctreeNode,
    accepted_indices: Tensor,
    to_class: int,
    *,
    from_class: Optional[int] = None,
) -> Tensor:
    """Overwrite the classification of accepted points of a loaded node.

    Intended as an ``on_accepted_points`` consumer: ``accepted_indices`` are
    indices into the node's own arrays. The node's ``classification`` array
    is modified in place, so any other request still reading the node sees
    the new values.

    Parameters
    ----------
    node : OctreeNode
        Loaded node with a one-element-per-point ``classification`` attribute.
    accepted_indices : Tensor, shape (k,)
        Indices of points to reclassify.
    to_class : int
        New classification code.
    from_class : int, optional
        When given, only points currently classified as ``from_class`` are
        changed.

    Returns
    -------
    Tensor
        Indices that were rewritten, dtype int64.

    Raises
    ------
    UnsupportedEncodingError
        If the node is stored compressed; its in-memory arrays cannot be
        patched back to storage.
    KeyError
        If the node has no classification attribute.
    MalformedAttributeLayoutError
        If the classification array does not hold one element per point.
    """
    if node.encoding != ENCODING_DEFAULT:
        raise UnsupportedEncodingError(node.handle, node.encoding)
    if CLASSIFICATION not in node.attributes:
        raise KeyError(
            f"reassign_classification: node '{node.name}' has no "
            f"'{CLASSIFICATION}' attribute"
        )
    array = node.attributes[CLASSIFICATION]
    if array.numel() != node.num_points:
        raise MalformedAttributeLayoutError(
            node.handle, CLASSIFICATION, array.numel(), node.num_points
        )

    indices = accepted_indices.to(torch.int64)
    if from_class is not None:
        indices = indices[array[indices] == from_class]
    array[indices] = to_class
    return indices


def classification_patch(
    node: OctreeNode, indices: Tensor, to_class: int
) -> Dict[str, Any]:
    """JSON-serializable body describing a classification edit of ``node``.

    The byte offset locates the node in the point cloud's data file and is
    sent as a string so 64-bit offsets survive JSON number handling.
    """
    return {
        "indices": [int(i) for i in indices.tolist()],
        "classification": int(to_class),
        "byteOffset": str(node.byte_offset),
    }
