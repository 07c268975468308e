"""Benchmarks for volume point queries.

Measures per-node filtering throughput and the cost of driving a complete
progressive query over a synthetic, fully loaded octree.
"""

from __future__ import annotations

import time
from typing import Any, Callable

import numpy as np
import torch

from torchpick.geometry import bounding_box, box_volume
from torchpick.geometry.transform import quaternion
from torchpick.picking import PointFilter, VolumeQueryRequest
from torchpick.space_partitioning import PointCloudOctree


def benchmark(
    func: Callable[[], Any], warmup: int = 3, iterations: int = 10
) -> dict[str, float]:
    """Per-call seconds of ``func`` as mean, std, min and max."""
    for _ in range(warmup):
        func()

    times = np.empty(iterations)
    for i in range(iterations):
        start = time.perf_counter()
        func()
        times[i] = time.perf_counter() - start
    return {
        "mean": times.mean(),
        "std": times.std(),
        "min": times.min(),
        "max": times.max(),
    }


def format_time(seconds: float) -> str:
    for scale, unit in ((1.0, "s"), (1e-3, "ms"), (1e-6, "us")):
        if seconds >= scale:
            return f"{seconds / scale:.3f}{unit}"
    return f"{seconds * 1e9:.3f}ns"


def random_octree(
    depth: int, points_per_node: int, seed: int = 0
) -> PointCloudOctree:
    """Complete, fully loaded octree over [0, 1]^3 with random points."""
    generator = torch.Generator().manual_seed(seed)
    octree = PointCloudOctree()

    def add(parent, octant, lower, size):
        box = bounding_box(lower, lower + size)
        handle = octree.add_node(
            box, parent=parent, octant=octant, num_points=points_per_node
        )
        local = torch.rand(points_per_node, 3, generator=generator) * size
        octree.set_loaded(
            handle,
            {
                "position": local.reshape(-1),
                "rgba": torch.randint(
                    0,
                    256,
                    (points_per_node * 4,),
                    dtype=torch.uint8,
                    generator=generator,
                ),
                "classification": torch.zeros(points_per_node, dtype=torch.uint8),
            },
        )
        level = octree.node(handle).level
        if level < depth:
            half = size * 0.5
            for child in range(8):
                offset = torch.tensor(
                    [(child >> 2) & 1, (child >> 1) & 1, child & 1],
                    dtype=torch.float32,
                )
                add(handle, child, lower + offset * half, half)

    add(None, None, torch.zeros(3), 1.0)
    return octree


class BenchVolumeQuery:
    """Benchmarks for point filtering and progressive queries."""

    def __init__(self, warmup: int = 3, iterations: int = 10):
        self.warmup = warmup
        self.iterations = iterations
        self.volume = box_volume(
            torch.full((3,), 0.5),
            quaternion(torch.tensor([0.9239, 0.0, 0.0, 0.3827])),
            torch.tensor([0.6, 0.4, 0.8]),
        )

    def bench_point_filter(self, n: int = 100_000) -> None:
        """Filter one node of ``n`` points without suspending."""
        octree = random_octree(0, n)

        def run():
            PointFilter(octree, octree.root, self.volume).resume(lambda: False)

        result = benchmark(
            run, warmup=self.warmup, iterations=self.iterations
        )
        rate = n / result["mean"]
        print(
            f"  PointFilter n={n}: {format_time(result['mean'])} "
            f"+/- {format_time(result['std'])} ({rate / 1e6:.2f} Mpts/s)"
        )

    def bench_query(self, depth: int = 3, points_per_node: int = 1000) -> None:
        """Drive a full query to completion, counting steps."""
        octree = random_octree(depth, points_per_node)
        steps = []

        def run():
            request = VolumeQueryRequest(octree, self.volume)
            count = 1
            while not request.step():
                count += 1
            steps.append(count)

        result = benchmark(
            run, warmup=self.warmup, iterations=self.iterations
        )
        print(
            f"  VolumeQueryRequest nodes={len(octree)}: "
            f"{format_time(result['mean'])} +/- {format_time(result['std'])} "
            f"({int(np.median(steps))} steps)"
        )

    def run_all(self) -> None:
        print("\n--- Point Filter Size Scaling ---")
        for n in [1_000, 10_000, 100_000, 1_000_000]:
            self.bench_point_filter(n=n)

        print("\n--- Query Depth Scaling ---")
        for depth in [1, 2, 3]:
            self.bench_query(depth=depth)


if __name__ == "__main__":
    print("Running CPU benchmarks...")
    BenchVolumeQuery(warmup=2, iterations=10).run_all()
