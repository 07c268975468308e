"""Compacted point batches and their accumulation across nodes."""

from __future__ import annotations

import functools
from typing import Dict, List, Optional, Sequence, Tuple

import torch
from tensordict import TensorDict, tensorclass
from torch import Tensor

from torchpick.geometry import (
    BoundingBox,
    bounding_box_union,
    empty_bounding_box,
)
from torchpick.picking._exceptions import IncompatibleAttributeLayoutError


@tensorclass
class PointBatch:
    """Points accepted by a volume query.

    Attributes
    ----------
    positions : Tensor, shape (n, 3), dtype=float32
        Accepted positions relative to the point cloud's world position,
        i.e. world coordinates minus ``PointCloudOctree.position``.
    attributes : TensorDict
        Compacted per-point attributes. Each entry has shape
        ``(n, elements)`` and the dtype of the source array, with rows in
        the same order as ``positions``.
    bounding_box : BoundingBox
        World-space box around the accepted positions. Empty when n == 0.
    """

    positions: Tensor
    attributes: TensorDict
    bounding_box: BoundingBox


def empty_point_batch() -> PointBatch:
    return PointBatch(
        positions=torch.zeros(0, 3),
        attributes=TensorDict({}, batch_size=[]),
        bounding_box=empty_bounding_box(),
    )


def point_batch_size(batch: PointBatch) -> int:
    """Number of points in ``batch``."""
    return batch.positions.shape[0]


Layout = Tuple[Tuple[int, ...], torch.dtype]


def _describe(layout: Layout) -> str:
    shape, dtype = layout
    return f"{dtype}{list(shape)}"


def _merge_layouts(
    batches: Sequence[PointBatch], layouts: Optional[Dict[str, Layout]] = None
) -> Dict[str, Layout]:
    merged = dict(layouts or {})
    for batch in batches:
        for name, values in batch.attributes.items():
            layout = (tuple(values.shape[1:]), values.dtype)
            expected = merged.setdefault(name, layout)
            if layout != expected:
                raise IncompatibleAttributeLayoutError(
                    name, _describe(expected), _describe(layout)
                )
    return merged


def _attribute_or_zeros(batch: PointBatch, name: str, layout: Layout) -> Tensor:
    if name in batch.attributes.keys():
        return batch.attributes[name]
    shape, dtype = layout
    return torch.zeros(
        (point_batch_size(batch), *shape),
        dtype=dtype,
        device=batch.positions.device,
    )


def point_batch_cat(batches: Sequence[PointBatch]) -> PointBatch:
    """Concatenate batches point-wise.

    The result carries the union of the batches' attribute names. Rows of a
    batch that lacks an attribute are zero-filled.

    Raises
    ------
    IncompatibleAttributeLayoutError
        If two batches give the same attribute a different per-point shape
        or dtype.
    """
    if not batches:
        return empty_point_batch()
    layouts = _merge_layouts(batches)
    attributes = TensorDict(
        {
            name: torch.cat(
                [
                    _attribute_or_zeros(batch, name, layouts[name])
                    for batch in batches
                ]
            )
            for name in sorted(layouts)
        },
        batch_size=[],
    )
    return PointBatch(
        positions=torch.cat([batch.positions for batch in batches]),
        attributes=attributes,
        bounding_box=functools.reduce(
            bounding_box_union, [batch.bounding_box for batch in batches]
        ),
    )


class PointAccumulator:
    """Running collection of batches waiting to be delivered.

    Examples
    --------
    >>> accumulator = PointAccumulator()
    >>> accumulator.add(batch)
    >>> if accumulator.num_points > 100:
    ...     deliver(accumulator.flush())
    """

    def __init__(self) -> None:
        self._batches: List[PointBatch] = []
        self._layouts: Dict[str, Layout] = {}
        self.num_points = 0

    def add(self, batch: PointBatch) -> None:
        """Queue ``batch`` for the next flush.

        Raises
        ------
        IncompatibleAttributeLayoutError
            If ``batch`` conflicts with an attribute already accumulated. The
            accumulator is left unchanged.
        """
        size = point_batch_size(batch)
        if size == 0:
            return
        self._layouts = _merge_layouts([batch], self._layouts)
        self._batches.append(batch)
        self.num_points += size

    def flush(self) -> PointBatch:
        """Return everything accumulated as one batch and reset to empty."""
        batch = point_batch_cat(self._batches)
        self.clear()
        return batch

    def clear(self) -> None:
        self._batches = []
        self._layouts = {}
        self.num_points = 0

    def __len__(self) -> int:
        return self.num_points
