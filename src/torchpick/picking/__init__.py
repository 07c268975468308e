"""Progressive extraction of the points of an octree inside a volume.

:class:`VolumeQueryRequest` is driven cooperatively: the host calls
:meth:`~VolumeQueryRequest.step` once per tick and receives accepted points
through callbacks as they are found.
"""

from ._exceptions import (
    IncompatibleAttributeLayoutError,
    MalformedAttributeLayoutError,
    MalformedAttributeLayoutWarning,
    PickingError,
    UnsupportedEncodingError,
)
from ._point_batch import (
    PointAccumulator,
    PointBatch,
    empty_point_batch,
    point_batch_cat,
    point_batch_size,
)
from ._point_filter import PointFilter, validate_attribute_layout
from ._reclassify import classification_patch, reassign_classification
from ._volume_query_request import (
    FILTER_CHECK_INTERVAL,
    FILTER_TIME_BUDGET,
    FLUSH_THRESHOLD,
    MAXIMUM_NODES_PER_STEP,
    FinishEvent,
    ProgressEvent,
    RequestState,
    VolumeQueryRequest,
)

__all__ = [
    "FILTER_CHECK_INTERVAL",
    "FILTER_TIME_BUDGET",
    "FLUSH_THRESHOLD",
    "MAXIMUM_NODES_PER_STEP",
    "FinishEvent",
    "IncompatibleAttributeLayoutError",
    "MalformedAttributeLayoutError",
    "MalformedAttributeLayoutWarning",
    "PickingError",
    "PointAccumulator",
    "PointBatch",
    "PointFilter",
    "ProgressEvent",
    "RequestState",
    "UnsupportedEncodingError",
    "VolumeQueryRequest",
    "classification_patch",
    "empty_point_batch",
    "point_batch_cat",
    "point_batch_size",
    "reassign_classification",
    "validate_attribute_layout",
]
