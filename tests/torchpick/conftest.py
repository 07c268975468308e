"""Synthetic point cloud octrees shared by the torchpick tests."""

from typing import Dict, Optional

import pytest
import torch

from torchpick.geometry import BoundingBox, bounding_box, box_volume
from torchpick.space_partitioning import DeferredNodeLoader, PointCloudOctree

ROOT_LOWER = -4.0
ROOT_UPPER = 4.0

# Octants whose points fall inside the unit box at the origin
INSIDE_OCTANTS = (0, 3, 5, 6)
OUTSIDE_OCTANTS = (1, 2, 4, 7)


class FakeClock:
    """Clock advancing by ``tick`` seconds on every read."""

    def __init__(self, tick: float = 0.0):
        self.tick = tick
        self.now = 0.0

    def __call__(self) -> float:
        self.now += self.tick
        return self.now


def octant_box(parent: BoundingBox, octant: int) -> BoundingBox:
    """Child box of ``parent``; octant bits are (x, y, z) from high to low."""
    center = (parent.lower + parent.upper) * 0.5
    bits = torch.tensor(
        [(octant >> 2) & 1, (octant >> 1) & 1, octant & 1], dtype=torch.bool
    )
    return bounding_box(
        torch.where(bits, center, parent.lower),
        torch.where(bits, parent.upper, center),
    )


def octant_sign(octant: int) -> torch.Tensor:
    return torch.tensor(
        [
            1.0 if (octant >> 2) & 1 else -1.0,
            1.0 if (octant >> 1) & 1 else -1.0,
            1.0 if octant & 1 else -1.0,
        ]
    )


def diagonal_points(octant: int, start: float, stop: float, n: int):
    """``n`` points evenly spaced on the diagonal of ``octant``."""
    t = torch.linspace(start, stop, n).unsqueeze(-1)
    return t * octant_sign(octant)


def node_arrays(points: torch.Tensor, box: BoundingBox) -> Dict[str, torch.Tensor]:
    """Flat attribute arrays for ``points`` given in the cloud's local frame."""
    n = points.shape[0]
    return {
        "position": (points - box.lower).reshape(-1).to(torch.float32),
        "rgba": (torch.arange(n * 4) % 256).to(torch.uint8),
        "classification": torch.full((n,), 2, dtype=torch.uint8),
        "intensity": torch.arange(n, dtype=torch.int16),
        "indices": torch.arange(n, dtype=torch.int32),
    }


class SyntheticCloud:
    """A :class:`PointCloudOctree` plus the arrays its loader serves."""

    def __init__(
        self,
        matrix_world: Optional[torch.Tensor] = None,
        *,
        hierarchy_step_size: int = 1,
        cache=None,
    ):
        self.arrays: Dict[int, Dict[str, torch.Tensor]] = {}
        self.points: Dict[int, torch.Tensor] = {}
        self.loader = DeferredNodeLoader(
            lambda octree, handle: self.arrays[handle]
        )
        self.octree = PointCloudOctree(
            matrix_world,
            hierarchy_step_size=hierarchy_step_size,
            loader=self.loader,
            cache=cache,
        )

    def add(
        self,
        points: torch.Tensor,
        *,
        parent: Optional[int] = None,
        octant: Optional[int] = None,
    ) -> int:
        if parent is None:
            box = bounding_box(
                torch.full((3,), ROOT_LOWER), torch.full((3,), ROOT_UPPER)
            )
        else:
            box = octant_box(self.octree.node(parent).bounding_box, octant)
        handle = self.octree.add_node(
            box, parent=parent, octant=octant, num_points=points.shape[0]
        )
        self.arrays[handle] = node_arrays(points, box)
        self.points[handle] = points
        return handle

    def load_all(self) -> None:
        for node in self.octree:
            if not node.loaded:
                self.octree.set_loaded(node.handle, self.arrays[node.handle])


def run_to_completion(request, loader, max_steps: int = 1000) -> int:
    """Step ``request`` until terminal, pumping ``loader`` between steps."""
    for steps in range(1, max_steps + 1):
        if request.step():
            return steps
        loader.process()
    raise AssertionError(f"request did not finish within {max_steps} steps")


def build_two_level_cloud(**kwargs) -> SyntheticCloud:
    """Root without points plus eight children of ten points each.

    Children in ``INSIDE_OCTANTS`` hold points within 0.45 of the origin on
    every axis; the others hold points between 2.0 and 3.5 away.
    """
    cloud = SyntheticCloud(**kwargs)
    root = cloud.add(torch.zeros(0, 3))
    for octant in range(8):
        if octant in INSIDE_OCTANTS:
            points = diagonal_points(octant, 0.05, 0.45, 10)
        else:
            points = diagonal_points(octant, 2.0, 3.5, 10)
        cloud.add(points, parent=root, octant=octant)
    return cloud


def build_chain_cloud(depth: int, points_per_node: int, **kwargs) -> SyntheticCloud:
    """Root plus a single chain of ``depth`` descendants near the origin.

    Every node holds ``points_per_node`` points between 0.1 and 0.2 below
    the origin on each axis, which lies inside every box of the chain.
    """
    cloud = SyntheticCloud(**kwargs)
    parent = cloud.add(diagonal_points(0, 0.1, 0.2, points_per_node))
    for level in range(1, depth + 1):
        parent = cloud.add(
            diagonal_points(0, 0.1, 0.2, points_per_node),
            parent=parent,
            octant=0 if level == 1 else 7,
        )
    return cloud


@pytest.fixture
def two_level_cloud() -> SyntheticCloud:
    return build_two_level_cloud()


@pytest.fixture
def make_two_level_cloud():
    return build_two_level_cloud


@pytest.fixture
def make_chain_cloud():
    return build_chain_cloud


@pytest.fixture
def make_cloud():
    return SyntheticCloud


@pytest.fixture
def diagonal():
    return diagonal_points


@pytest.fixture
def run_request():
    return run_to_completion


@pytest.fixture
def unit_volume():
    """Axis-aligned unit box centered at the origin."""
    return box_volume(torch.zeros(3), scale=torch.ones(3))


@pytest.fixture
def wide_volume():
    """Axis-aligned box containing the whole synthetic root box."""
    return box_volume(torch.zeros(3), scale=torch.full((3,), 20.0))


@pytest.fixture
def frozen_clock() -> FakeClock:
    return FakeClock(tick=0.0)


@pytest.fixture
def ticking_clock() -> FakeClock:
    """Clock that exceeds any filtering budget between two reads."""
    return FakeClock(tick=1.0)
