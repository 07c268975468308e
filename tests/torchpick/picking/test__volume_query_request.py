"""Tests for progressive volume queries."""

import logging
import math

import pytest
import torch
import torch.testing

from torchpick.geometry import box_volume, box_volume_contains
from torchpick.geometry.transform import quaternion, transform_points
from torchpick.picking import (
    FLUSH_THRESHOLD,
    MAXIMUM_NODES_PER_STEP,
    FinishEvent,
    IncompatibleAttributeLayoutError,
    MalformedAttributeLayoutError,
    MalformedAttributeLayoutWarning,
    ProgressEvent,
    RequestState,
    VolumeQueryRequest,
    point_batch_cat,
    point_batch_size,
)
from torchpick.space_partitioning import LRUNodeCache


class Recorder:
    """Collects every callback a request makes."""

    def __init__(self):
        self.progress = []
        self.finished = []
        self.cancelled = 0
        self.accepted = []
        self.errors = []

    def callbacks(self):
        return dict(
            on_progress=self.progress.append,
            on_finish=self.finished.append,
            on_cancel=self.on_cancel,
            on_accepted_points=self.on_accepted_points,
            on_error=self.on_error,
        )

    def on_cancel(self):
        self.cancelled += 1

    def on_accepted_points(self, node, indices, positions):
        self.accepted.append((node.handle, indices.clone(), positions.clone()))

    def on_error(self, node, error):
        self.errors.append((node.handle, error))

    @property
    def sizes(self):
        return [point_batch_size(event.points) for event in self.progress]

    @property
    def total(self):
        return sum(self.sizes)


def _expected_count(cloud, volume):
    """Number of points of every node that lie strictly inside ``volume``."""
    total = 0
    for node in cloud.octree:
        points = cloud.points[node.handle]
        if points.shape[0] == 0:
            continue
        world = transform_points(cloud.octree.matrix_world, points)
        total += int(box_volume_contains(volume, world).sum())
    return total


class TestVolumeQueryRequestScenario:
    """End to end queries over a root and eight children."""

    def test_forty_points_and_one_finish(
        self, two_level_cloud, unit_volume, run_request, frozen_clock
    ):
        recorder = Recorder()
        request = two_level_cloud.octree.get_points_in_volume(
            unit_volume, clock=frozen_clock, **recorder.callbacks()
        )
        assert two_level_cloud.octree.active_requests == (request,)

        run_request(request, two_level_cloud.loader)

        assert recorder.total == 40
        assert request.points_served == 40
        assert len(recorder.finished) == 1
        assert isinstance(recorder.finished[0], FinishEvent)
        assert recorder.finished[0].request is request
        assert isinstance(recorder.progress[0], ProgressEvent)
        assert request.state is RequestState.FINISHED
        assert two_level_cloud.octree.active_requests == ()
        assert recorder.cancelled == 0

    def test_three_steps_with_deferred_loads(
        self, two_level_cloud, unit_volume, run_request, frozen_clock
    ):
        """Root load, children loads, then filtering of every child."""
        request = VolumeQueryRequest(
            two_level_cloud.octree, unit_volume, clock=frozen_clock
        )
        assert run_request(request, two_level_cloud.loader) == 3
        assert two_level_cloud.loader.requests == 9

    def test_only_inside_points_delivered(
        self, two_level_cloud, unit_volume, run_request, frozen_clock
    ):
        recorder = Recorder()
        request = VolumeQueryRequest(
            two_level_cloud.octree,
            unit_volume,
            clock=frozen_clock,
            **recorder.callbacks(),
        )
        run_request(request, two_level_cloud.loader)

        batch = point_batch_cat([event.points for event in recorder.progress])
        assert bool((batch.positions.abs() < 0.5).all())
        assert sorted({handle for handle, _, _ in recorder.accepted}) == list(
            range(1, 9)
        )
        accepted_per_node = {
            handle: indices.numel() for handle, indices, _ in recorder.accepted
        }
        assert sum(accepted_per_node.values()) == 40
        assert all(
            count in (0, 10) for count in accepted_per_node.values()
        )

    def test_rotated_translated_volume_matches_brute_force(
        self, make_two_level_cloud, run_request, frozen_clock
    ):
        matrix = torch.eye(4)
        matrix[:3, 3] = torch.tensor([5.0, -2.0, 1.0])
        cloud = make_two_level_cloud(matrix_world=matrix)
        volume = box_volume(
            torch.tensor([5.0, -2.0, 1.0]),
            quaternion(
                torch.tensor(
                    [math.cos(math.pi / 4), 0.0, 0.0, math.sin(math.pi / 4)]
                )
            ),
            torch.tensor([0.8, 1.2, 6.0]),
        )
        recorder = Recorder()
        request = cloud.octree.get_points_in_volume(
            volume, clock=frozen_clock, **recorder.callbacks()
        )
        run_request(request, cloud.loader)
        assert recorder.total == _expected_count(cloud, volume)
        assert recorder.total > 0

    def test_volume_outside_cloud(
        self, two_level_cloud, run_request, frozen_clock
    ):
        recorder = Recorder()
        request = VolumeQueryRequest(
            two_level_cloud.octree,
            box_volume(torch.tensor([100.0, 100.0, 100.0])),
            clock=frozen_clock,
            **recorder.callbacks(),
        )
        run_request(request, two_level_cloud.loader)
        assert recorder.progress == []
        assert len(recorder.finished) == 1


class TestVolumeQueryRequestBudgets:
    """Tests for per-step node limits, flushing and suspension."""

    def test_at_most_maximum_nodes_per_step(
        self, make_cloud, diagonal, wide_volume, frozen_clock
    ):
        cloud = make_cloud()
        root = cloud.add(torch.zeros(0, 3))
        for octant in range(8):
            child = cloud.add(diagonal(octant, 0.1, 0.2, 2), parent=root, octant=octant)
            for grandchild in range(8):
                cloud.add(
                    diagonal(octant, 0.1, 0.2, 2),
                    parent=child,
                    octant=grandchild,
                )
        cloud.load_all()

        request = VolumeQueryRequest(
            cloud.octree,
            wide_volume,
            clock=frozen_clock,
        )
        pops = []
        pop = request.queue.pop

        def counting_pop():
            pops[-1] += 1
            return pop()

        request.queue.pop = counting_pop
        done = False
        while not done:
            pops.append(0)
            done = request.step()

        assert max(pops) == MAXIMUM_NODES_PER_STEP
        assert sum(pops) == len(cloud.octree)

    def test_flush_only_above_threshold(
        self, make_cloud, diagonal, unit_volume, frozen_clock
    ):
        cloud = make_cloud()
        root = cloud.add(torch.zeros(0, 3))
        for octant in range(8):
            cloud.add(diagonal(octant, 0.01, 0.45, 60), parent=root, octant=octant)
        cloud.load_all()

        pending_at_delivery = []
        sizes = []

        def on_progress(event):
            sizes.append(point_batch_size(event.points))
            pending_at_delivery.append(event.request.pending_points)

        request = VolumeQueryRequest(
            cloud.octree,
            unit_volume,
            on_progress=on_progress,
            maximum_nodes_per_step=2,
            clock=frozen_clock,
        )
        while not request.step():
            assert request.pending_points <= FLUSH_THRESHOLD + 60

        assert sum(sizes) == 480
        assert all(size > FLUSH_THRESHOLD for size in sizes[:-1])
        assert pending_at_delivery == [0] * len(sizes)
        assert request.pending_points == 0

    def test_small_result_delivered_at_finish(
        self, make_chain_cloud, wide_volume, run_request, frozen_clock
    ):
        cloud = make_chain_cloud(1, 5)
        recorder = Recorder()
        request = VolumeQueryRequest(
            cloud.octree, wide_volume, clock=frozen_clock, **recorder.callbacks()
        )
        run_request(request, cloud.loader)
        assert recorder.sizes == [10]

    def test_suspends_inside_large_node(
        self, make_cloud, diagonal, unit_volume, ticking_clock
    ):
        cloud = make_cloud()
        cloud.add(diagonal(0, 0.01, 0.45, 2500))
        cloud.load_all()
        recorder = Recorder()
        request = VolumeQueryRequest(
            cloud.octree,
            unit_volume,
            clock=ticking_clock,
            check_interval=1000,
            **recorder.callbacks(),
        )

        assert not request.step()
        assert request.suspended
        assert recorder.accepted == []
        assert not request.step()
        assert request.suspended
        assert request.step()
        assert not request.suspended

        assert recorder.sizes == [2500]
        _, indices, _ = recorder.accepted[0]
        torch.testing.assert_close(indices, torch.arange(2500))
        assert len(recorder.finished) == 1

    def test_suspends_between_nodes(
        self, two_level_cloud, unit_volume, ticking_clock
    ):
        two_level_cloud.load_all()
        recorder = Recorder()
        request = VolumeQueryRequest(
            two_level_cloud.octree,
            unit_volume,
            clock=ticking_clock,
            **recorder.callbacks(),
        )
        steps = 1
        while not request.step():
            steps += 1
        assert steps > 2
        assert recorder.total == 40
        handles = [handle for handle, _, _ in recorder.accepted]
        assert sorted(handles) == list(range(1, 9))

    def test_no_budget_check_with_generous_budget(
        self, two_level_cloud, unit_volume
    ):
        """With the real clock and an unlimited budget nothing suspends."""
        two_level_cloud.load_all()
        request = VolumeQueryRequest(
            two_level_cloud.octree, unit_volume, time_budget=float("inf")
        )
        assert request.step()
        assert not request.suspended
        assert request.points_served == 40


class TestVolumeQueryRequestDepth:
    """Tests for depth limits."""

    def test_max_depth_zero_visits_only_root(
        self, make_chain_cloud, wide_volume, run_request, frozen_clock
    ):
        cloud = make_chain_cloud(3, 4)
        recorder = Recorder()
        request = VolumeQueryRequest(
            cloud.octree, wide_volume, 0, clock=frozen_clock, **recorder.callbacks()
        )
        run_request(request, cloud.loader)
        assert [handle for handle, _, _ in recorder.accepted] == [0]
        assert recorder.total == 4
        assert request.highest_level_served == 0

    def test_max_depth_limits_levels(
        self, make_chain_cloud, wide_volume, run_request, frozen_clock
    ):
        cloud = make_chain_cloud(4, 3)
        recorder = Recorder()
        request = cloud.octree.get_points_in_volume(
            wide_volume, 2, clock=frozen_clock, **recorder.callbacks()
        )
        run_request(request, cloud.loader)
        levels = [cloud.octree.node(h).level for h, _, _ in recorder.accepted]
        assert sorted(levels) == [0, 1, 2]
        assert not cloud.octree.node(3).loaded
        assert recorder.total == 9

    def test_invalid_arguments(self, two_level_cloud, unit_volume):
        octree = two_level_cloud.octree
        with pytest.raises(ValueError, match="max_depth"):
            VolumeQueryRequest(octree, unit_volume, -1)
        with pytest.raises(ValueError, match="maximum_nodes_per_step"):
            VolumeQueryRequest(octree, unit_volume, maximum_nodes_per_step=0)
        with pytest.raises(ValueError, match="check_interval"):
            VolumeQueryRequest(octree, unit_volume, check_interval=0)
        with pytest.raises(ValueError, match="time_budget"):
            VolumeQueryRequest(octree, unit_volume, time_budget=-1.0)
        with pytest.raises(ValueError, match="flush_threshold"):
            VolumeQueryRequest(octree, unit_volume, flush_threshold=-1)
        assert octree.active_requests == ()


class TestVolumeQueryRequestCancellation:
    """Tests for cancel and finish_level_then_cancel."""

    def test_cancel(self, two_level_cloud, unit_volume, frozen_clock):
        recorder = Recorder()
        request = VolumeQueryRequest(
            two_level_cloud.octree,
            unit_volume,
            clock=frozen_clock,
            **recorder.callbacks(),
        )
        request.step()
        two_level_cloud.loader.process()
        request.step()
        assert len(request.queue) > 0

        request.cancel()

        assert request.state is RequestState.CANCELLED
        assert recorder.cancelled == 1
        assert len(request.queue) == 0
        assert request.pending_points == 0
        assert two_level_cloud.octree.active_requests == ()

        two_level_cloud.loader.process()
        assert request.step()
        request.cancel()
        request.finish_level_then_cancel()
        assert recorder.cancelled == 1
        assert recorder.finished == []
        assert recorder.progress == []

    def test_cancel_before_first_step(self, two_level_cloud, unit_volume):
        recorder = Recorder()
        request = VolumeQueryRequest(
            two_level_cloud.octree, unit_volume, **recorder.callbacks()
        )
        request.cancel()
        assert request.step()
        assert recorder.cancelled == 1
        assert two_level_cloud.loader.requests == 0

    def test_cancel_from_progress_callback(
        self, make_cloud, diagonal, unit_volume, frozen_clock
    ):
        """Cancelling during a delivery stops the request without finishing."""
        cloud = make_cloud()
        root = cloud.add(torch.zeros(0, 3))
        for octant in range(8):
            cloud.add(diagonal(octant, 0.01, 0.45, 60), parent=root, octant=octant)
        cloud.load_all()

        finished = []
        cancelled = []

        def on_progress(event):
            event.request.cancel()

        request = VolumeQueryRequest(
            cloud.octree,
            unit_volume,
            on_progress=on_progress,
            on_finish=finished.append,
            on_cancel=lambda: cancelled.append(True),
            maximum_nodes_per_step=2,
            clock=frozen_clock,
        )
        while not request.step():
            pass
        assert request.state is RequestState.CANCELLED
        assert cancelled == [True]
        assert finished == []
        assert request.points_served < 480

    def test_finish_level_then_cancel(
        self, make_chain_cloud, wide_volume, frozen_clock
    ):
        cloud = make_chain_cloud(4, 3)
        cloud.load_all()
        recorder = Recorder()
        request = VolumeQueryRequest(
            cloud.octree,
            wide_volume,
            maximum_nodes_per_step=2,
            clock=frozen_clock,
            **recorder.callbacks(),
        )
        assert not request.step()
        assert request.highest_level_served == 1

        request.finish_level_then_cancel()
        assert request.max_depth == 1
        assert request.cancel_requested

        request.step()
        request.finish_level_then_cancel()
        assert request.max_depth == 1

        while not request.step():
            pass
        levels = {cloud.octree.node(h).level for h, _, _ in recorder.accepted}
        assert levels == {0, 1}
        assert request.state is RequestState.FINISHED
        assert len(recorder.finished) == 1
        assert recorder.cancelled == 0
        assert recorder.total == 6

    def test_finish_level_then_cancel_after_finish(
        self, make_chain_cloud, wide_volume, run_request, frozen_clock
    ):
        cloud = make_chain_cloud(2, 3)
        request = VolumeQueryRequest(cloud.octree, wide_volume, clock=frozen_clock)
        run_request(request, cloud.loader)
        request.finish_level_then_cancel()
        assert request.max_depth is None
        assert not request.cancel_requested


class TestVolumeQueryRequestNodes:
    """Tests for node bookkeeping during traversal."""

    def test_deduplicated_across_hierarchy_chunks(
        self, make_chain_cloud, wide_volume, run_request, frozen_clock
    ):
        """Nodes reachable from two expansions are visited once."""
        cloud = make_chain_cloud(3, 5)
        recorder = Recorder()
        request = VolumeQueryRequest(
            cloud.octree, wide_volume, clock=frozen_clock, **recorder.callbacks()
        )
        run_request(request, cloud.loader)
        handles = [handle for handle, _, _ in recorder.accepted]
        assert sorted(handles) == [0, 1, 2, 3]
        assert recorder.total == 20

    def test_without_deduplication_revisits(
        self, make_chain_cloud, wide_volume, run_request, frozen_clock
    ):
        """Each visit of an expandable node expands it again."""
        cloud = make_chain_cloud(3, 5)
        recorder = Recorder()
        request = VolumeQueryRequest(
            cloud.octree,
            wide_volume,
            deduplicate=False,
            clock=frozen_clock,
            **recorder.callbacks(),
        )
        run_request(request, cloud.loader)
        handles = [handle for handle, _, _ in recorder.accepted]
        assert sorted(handles) == [0, 1, 2, 2, 3, 3, 3, 3]
        assert recorder.total == 40

    def test_each_visited_node_touched_once(
        self, make_two_level_cloud, unit_volume, run_request, frozen_clock
    ):
        cache = LRUNodeCache()
        cloud = make_two_level_cloud(cache=cache)
        request = VolumeQueryRequest(cloud.octree, unit_volume, clock=frozen_clock)
        run_request(request, cloud.loader)
        assert sorted(cache) == list(range(9))
        assert all(cache.touches(handle) == 1 for handle in range(9))

    def test_unloaded_nodes_requested_and_retried(
        self, two_level_cloud, unit_volume, frozen_clock
    ):
        request = VolumeQueryRequest(
            two_level_cloud.octree, unit_volume, clock=frozen_clock
        )
        assert not request.step()
        assert two_level_cloud.loader.pending == 1
        assert len(request.queue) == 1

        # Without loads completing the root is requested again every step
        assert not request.step()
        assert two_level_cloud.loader.requests == 2
        assert two_level_cloud.loader.pending == 1

        two_level_cloud.loader.process()
        assert not request.step()
        assert two_level_cloud.loader.pending == 8
        assert len(request.queue) == 8

    def test_nodes_loaded_by_other_means(
        self, two_level_cloud, unit_volume, frozen_clock
    ):
        """A node loaded outside the request is filtered on the next visit."""
        recorder = Recorder()
        request = VolumeQueryRequest(
            two_level_cloud.octree,
            unit_volume,
            clock=frozen_clock,
            **recorder.callbacks(),
        )
        request.step()
        two_level_cloud.load_all()
        while not request.step():
            pass
        assert recorder.total == 40

    def test_concurrent_requests(
        self, two_level_cloud, unit_volume, frozen_clock
    ):
        first = Recorder()
        second = Recorder()
        octree = two_level_cloud.octree
        a = octree.get_points_in_volume(
            unit_volume, clock=frozen_clock, **first.callbacks()
        )
        b = octree.get_points_in_volume(
            box_volume(torch.zeros(3), scale=torch.full((3,), 20.0)),
            clock=frozen_clock,
            **second.callbacks(),
        )
        assert octree.active_requests == (a, b)
        done = [False, False]
        while not all(done):
            done = [a.step(), b.step()]
            two_level_cloud.loader.process()
        assert first.total == 40
        assert second.total == 80
        assert octree.active_requests == ()


class TestVolumeQueryRequestErrors:
    """Tests for malformed nodes."""

    @pytest.fixture
    def broken_cloud(self, two_level_cloud):
        two_level_cloud.arrays[1]["intensity"] = torch.arange(11, dtype=torch.int16)
        return two_level_cloud

    def test_malformed_node_skipped(
        self, broken_cloud, unit_volume, run_request, frozen_clock
    ):
        recorder = Recorder()
        request = VolumeQueryRequest(
            broken_cloud.octree,
            unit_volume,
            clock=frozen_clock,
            **recorder.callbacks(),
        )
        with pytest.warns(MalformedAttributeLayoutWarning, match="r0"):
            run_request(request, broken_cloud.loader)

        assert recorder.total == 30
        assert len(recorder.finished) == 1
        assert [handle for handle, _ in recorder.errors] == [1]
        assert isinstance(recorder.errors[0][1], MalformedAttributeLayoutError)
        assert request.errors == [recorder.errors[0][1]]
        assert 1 not in {handle for handle, _, _ in recorder.accepted}

    def test_warning_attributed_to_request(
        self, broken_cloud, unit_volume, run_request, frozen_clock
    ):
        request = VolumeQueryRequest(
            broken_cloud.octree, unit_volume, clock=frozen_clock
        )
        with pytest.warns(MalformedAttributeLayoutWarning) as record:
            run_request(request, broken_cloud.loader)
        skipped = [
            warning
            for warning in record
            if issubclass(warning.category, MalformedAttributeLayoutWarning)
        ]
        assert len(skipped) == 1
        assert skipped[0].filename.endswith("_volume_query_request.py")

    def test_missing_attribute_zero_filled(
        self, two_level_cloud, unit_volume, run_request, frozen_clock
    ):
        """Nodes with fewer attributes are merged, not rejected."""
        del two_level_cloud.arrays[1]["intensity"]
        recorder = Recorder()
        request = VolumeQueryRequest(
            two_level_cloud.octree,
            unit_volume,
            clock=frozen_clock,
            **recorder.callbacks(),
        )
        run_request(request, two_level_cloud.loader)

        assert request.state is RequestState.FINISHED
        assert two_level_cloud.octree.active_requests == ()
        assert request.errors == []
        assert recorder.total == 40
        points = point_batch_cat([event.points for event in recorder.progress])
        intensity = points.attributes["intensity"]
        assert intensity.shape == (40, 1)
        assert intensity.dtype == torch.int16
        # ten zero-filled rows plus index 0 of the three other nodes
        assert int((intensity == 0).sum()) == 13

    def test_incompatible_attribute_skips_node(
        self, two_level_cloud, unit_volume, run_request, frozen_clock
    ):
        """The first layout seen for an attribute wins within a delivery."""
        two_level_cloud.arrays[1]["rgba"] = torch.zeros(30, dtype=torch.uint8)
        recorder = Recorder()
        request = VolumeQueryRequest(
            two_level_cloud.octree,
            unit_volume,
            clock=frozen_clock,
            **recorder.callbacks(),
        )
        with pytest.warns(MalformedAttributeLayoutWarning, match="rgba"):
            run_request(request, two_level_cloud.loader)

        assert request.state is RequestState.FINISHED
        assert two_level_cloud.octree.active_requests == ()
        errors = [error for _, error in recorder.errors]
        assert errors
        assert all(
            isinstance(error, IncompatibleAttributeLayoutError) for error in errors
        )
        assert all(isinstance(error, ValueError) for error in errors)
        accepted = {handle for handle, _, _ in recorder.accepted}
        skipped = {handle for handle, _ in recorder.errors}
        assert accepted.isdisjoint(skipped)
        assert accepted | skipped == {1, 4, 6, 7}
        assert recorder.total == 10 * len(accepted)
        widths = {
            event.points.attributes["rgba"].shape[1] for event in recorder.progress
        }
        assert len(widths) == 1


class TestVolumeQueryRequestLogging:
    def test_lifecycle_logged(
        self, two_level_cloud, unit_volume, run_request, frozen_clock, caplog
    ):
        with caplog.at_level(logging.DEBUG, logger="torchpick.picking"):
            request = VolumeQueryRequest(
                two_level_cloud.octree, unit_volume, clock=frozen_clock
            )
            run_request(request, two_level_cloud.loader)
        messages = [record.getMessage() for record in caplog.records]
        assert any("started" in message for message in messages)
        assert any("finished after 40 points" in message for message in messages)
