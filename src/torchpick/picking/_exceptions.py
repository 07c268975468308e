"""Picking module exceptions."""


class PickingError(Exception):
    """Base exception for volume point picking."""

    pass


class MalformedAttributeLayoutError(PickingError, ValueError):
    """A node attribute array does not hold a whole number of elements per point."""

    def __init__(self, node: int, attribute: str, length: int, num_points: int):
        super().__init__(
            f"attribute '{attribute}' of node {node} has {length} elements, "
            f"which is not a positive multiple of its {num_points} points"
        )
        self.node = node
        self.attribute = attribute
        self.length = length
        self.num_points = num_points


class IncompatibleAttributeLayoutError(PickingError, ValueError):
    """Point batches disagree on the per-point shape or dtype of an attribute."""

    def __init__(self, attribute: str, expected: str, found: str):
        super().__init__(
            f"attribute '{attribute}' has layout {found}, but earlier points "
            f"use {expected}"
        )
        self.attribute = attribute
        self.expected = expected
        self.found = found


class UnsupportedEncodingError(PickingError):
    """In-place attribute edits were attempted on compressed node storage."""

    def __init__(self, node: int, encoding: str):
        super().__init__(
            f"node {node} uses '{encoding}' encoding; in-place attribute "
            f"edits only work on uncompressed point clouds"
        )
        self.node = node
        self.encoding = encoding


class MalformedAttributeLayoutWarning(UserWarning):
    """A node was skipped because of a malformed or incompatible attribute."""

    pass
