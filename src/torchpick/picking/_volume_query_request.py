"""Progressive, budgeted extraction of the points inside a volume."""

from __future__ import annotations

import enum
import logging
import time
import warnings
from typing import Callable, List, NamedTuple, Optional, Set

from torch import Tensor

from torchpick.geometry import BoxVolume
from torchpick.picking._exceptions import (
    IncompatibleAttributeLayoutError,
    MalformedAttributeLayoutError,
    MalformedAttributeLayoutWarning,
    PickingError,
)
from torchpick.picking._point_batch import PointAccumulator, PointBatch
from torchpick.picking._point_filter import PointFilter
from torchpick.space_partitioning import (
    NodeQueue,
    OctreeNode,
    PointCloudOctree,
    QueueEntry,
    octree_expand,
    octree_expandable,
    octree_node_intersects,
)

logger = logging.getLogger(__name__)

# Queue entries popped by one step
MAXIMUM_NODES_PER_STEP = 25

# Accumulated points needed before a progress delivery (strictly greater)
FLUSH_THRESHOLD = 100

# Seconds of filtering allowed between two suspension checkpoints
FILTER_TIME_BUDGET = 0.004

# Points tested between two clock reads
FILTER_CHECK_INTERVAL = 1000


class RequestState(enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    FINISHED = "finished"
    CANCELLED = "cancelled"


class ProgressEvent(NamedTuple):
    request: "VolumeQueryRequest"
    points: PointBatch


class FinishEvent(NamedTuple):
    request: "VolumeQueryRequest"


class _FilterCycle:
    """Candidates of one step and how far filtering has got through them."""

    def __init__(self, candidates: List[int]) -> None:
        self.candidates = candidates
        self.position = 0
        self.current: Optional[PointFilter] = None


class VolumeQueryRequest:
    """Streams the points of a point cloud that lie inside an oriented box.

    The request walks the octree from the root, largest nodes first, and only
    descends into nodes whose bounds may intersect the volume. Work is done in
    :meth:`step`, which the host calls once per tick (typically once per
    rendered frame). Each step pops at most ``maximum_nodes_per_step`` queue
    entries, asks the octree to load the unloaded ones, and filters the points
    of the loaded ones. Filtering checks the clock every ``check_interval``
    points and suspends when more than ``time_budget`` seconds have passed;
    the next call to :meth:`step` resumes the same node where it stopped.

    Accepted points are accumulated and delivered through ``on_progress``
    whenever more than ``flush_threshold`` points are pending, and once more
    when the queue runs dry, just before ``on_finish``.

    Parameters
    ----------
    octree : PointCloudOctree
        Point cloud to query. The request registers itself in
        ``octree.active_requests`` and removes itself when it finishes or is
        cancelled.
    volume : BoxVolume
        Query volume in world space.
    max_depth : int, optional
        Deepest octree level visited. Unbounded when ``None``.
    on_progress : callable, optional
        Called with a :class:`ProgressEvent` for every delivered batch.
    on_finish : callable, optional
        Called once with a :class:`FinishEvent` when the query completes.
    on_cancel : callable, optional
        Called once, without arguments, when :meth:`cancel` takes effect.
    on_accepted_points : callable, optional
        Called as ``on_accepted_points(node, indices, positions)`` after each
        node is filtered, with the accepted indices into the node's own arrays
        and the accepted positions of the batch.
    on_error : callable, optional
        Called as ``on_error(node, error)`` when a node is skipped because of
        a :class:`MalformedAttributeLayoutError`, or an
        :class:`IncompatibleAttributeLayoutError` against points already
        accumulated.
    maximum_nodes_per_step : int, default=25
    flush_threshold : int, default=100
    time_budget : float, default=0.004
        Seconds.
    check_interval : int, default=1000
    deduplicate : bool, default=True
        Never enqueue the same node twice. With ``False``, nodes reachable
        from several hierarchy chunk expansions are visited (and their points
        delivered) once per expansion.
    clock : callable, default=time.perf_counter
        Monotonic clock in seconds.

    Examples
    --------
    >>> request = cloud.get_points_in_volume(volume, on_progress=print)
    >>> while not request.step():
    ...     loader.process()
    """

    def __init__(
        self,
        octree: PointCloudOctree,
        volume: BoxVolume,
        max_depth: Optional[int] = None,
        *,
        on_progress: Optional[Callable[[ProgressEvent], None]] = None,
        on_finish: Optional[Callable[[FinishEvent], None]] = None,
        on_cancel: Optional[Callable[[], None]] = None,
        on_accepted_points: Optional[
            Callable[[OctreeNode, Tensor, Tensor], None]
        ] = None,
        on_error: Optional[
            Callable[[OctreeNode, PickingError], None]
        ] = None,
        maximum_nodes_per_step: int = MAXIMUM_NODES_PER_STEP,
        flush_threshold: int = FLUSH_THRESHOLD,
        time_budget: float = FILTER_TIME_BUDGET,
        check_interval: int = FILTER_CHECK_INTERVAL,
        deduplicate: bool = True,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        if max_depth is not None and max_depth < 0:
            raise ValueError(
                f"VolumeQueryRequest: max_depth must be >= 0, got {max_depth}"
            )
        if maximum_nodes_per_step < 1:
            raise ValueError(
                f"VolumeQueryRequest: maximum_nodes_per_step must be >= 1, "
                f"got {maximum_nodes_per_step}"
            )
        if flush_threshold < 0:
            raise ValueError(
                f"VolumeQueryRequest: flush_threshold must be >= 0, "
                f"got {flush_threshold}"
            )
        if time_budget < 0:
            raise ValueError(
                f"VolumeQueryRequest: time_budget must be >= 0, got {time_budget}"
            )
        if check_interval < 1:
            raise ValueError(
                f"VolumeQueryRequest: check_interval must be >= 1, "
                f"got {check_interval}"
            )

        self.octree = octree
        self.volume = volume
        self.max_depth = max_depth
        self.on_progress = on_progress
        self.on_finish = on_finish
        self.on_cancel = on_cancel
        self.on_accepted_points = on_accepted_points
        self.on_error = on_error
        self.maximum_nodes_per_step = maximum_nodes_per_step
        self.flush_threshold = flush_threshold
        self.time_budget = time_budget
        self.check_interval = check_interval
        self.clock = clock

        self.state = RequestState.PENDING
        self.points_served = 0
        self.highest_level_served = 0
        self.cancel_requested = False
        self.errors: List[PickingError] = []

        root = octree.root
        self.queue = NodeQueue()
        self.queue.push(QueueEntry(node=root, weight=float("inf")))
        self._seen: Optional[Set[int]] = {root} if deduplicate else None
        self._accumulator = PointAccumulator()
        self._cycle: Optional[_FilterCycle] = None
        self._handle = octree.register_request(self)

    @property
    def terminal(self) -> bool:
        return self.state in (RequestState.FINISHED, RequestState.CANCELLED)

    @property
    def suspended(self) -> bool:
        """Whether filtering stopped mid-cycle and resumes on the next step."""
        return self._cycle is not None

    @property
    def pending_points(self) -> int:
        """Accepted points not yet delivered."""
        return self._accumulator.num_points

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def step(self) -> bool:
        """Advance the query by one bounded unit of work.

        Returns
        -------
        bool
            ``True`` once the request has finished or been cancelled,
            ``False`` while more steps are needed, including when filtering
            suspended mid-node.
        """
        if self.terminal:
            return True
        if self.state is RequestState.PENDING:
            self.state = RequestState.RUNNING
            logger.debug("request %d started", self._handle)

        checkpoint = self.clock()
        if self._cycle is None:
            self._cycle = _FilterCycle(self._pop_candidates())

        complete = self._filter_candidates(
            lambda: self.clock() - checkpoint > self.time_budget
        )
        if self.terminal:
            return True
        if not complete:
            return False
        self._cycle = None

        if self._accumulator.num_points > self.flush_threshold:
            self._flush()
            if self.terminal:
                return True

        if not self.queue:
            self._finish()
            return True
        return False

    def cancel(self) -> None:
        """Stop immediately, dropping queued nodes and undelivered points."""
        if self.terminal:
            return
        self.state = RequestState.CANCELLED
        self.queue.clear()
        self._cycle = None
        self._accumulator.clear()
        self.octree.deregister_request(self._handle)
        logger.debug("request %d cancelled", self._handle)
        if self.on_cancel is not None:
            self.on_cancel()

    def finish_level_then_cancel(self) -> None:
        """Stop descending below the deepest level served so far.

        Everything already queued at or above that level is still delivered
        and the request then finishes normally.
        """
        if self.cancel_requested or self.terminal:
            return
        self.max_depth = self.highest_level_served
        self.cancel_requested = True
        logger.debug(
            "request %d limited to depth %d", self._handle, self.max_depth
        )

    # ------------------------------------------------------------------
    # Work
    # ------------------------------------------------------------------

    def _too_deep(self, level: int) -> bool:
        return self.max_depth is not None and level > self.max_depth

    def _pop_candidates(self) -> List[int]:
        octree = self.octree
        candidates: List[int] = []
        deferred: List[QueueEntry] = []

        popped = 0
        while self.queue and popped < self.maximum_nodes_per_step:
            entry = self.queue.pop()
            popped += 1
            node = octree.node(entry.node)
            if self._too_deep(node.level):
                continue

            if node.loaded:
                candidates.append(entry.node)
                octree.touch(entry.node)
                self.highest_level_served = max(
                    self.highest_level_served, node.level
                )
                if octree_expandable(octree, entry.node):
                    for child in octree_expand(
                        octree,
                        entry.node,
                        self.volume,
                        max_depth=self.max_depth,
                        seen=self._seen,
                    ):
                        self.queue.push(child)
            else:
                octree.load_node(entry.node)
                deferred.append(entry)

        for entry in deferred:
            self.queue.push(entry)
        return candidates

    def _filter_candidates(self, should_yield: Callable[[], bool]) -> bool:
        cycle = self._cycle
        while cycle.position < len(cycle.candidates):
            if cycle.current is None:
                handle = cycle.candidates[cycle.position]
                node = self.octree.node(handle)
                if (
                    node.num_points == 0
                    or self._too_deep(node.level)
                    or not octree_node_intersects(self.octree, handle, self.volume)
                ):
                    cycle.position += 1
                    continue
                try:
                    cycle.current = PointFilter(
                        self.octree,
                        handle,
                        self.volume,
                        check_interval=self.check_interval,
                    )
                except MalformedAttributeLayoutError as error:
                    cycle.position += 1
                    self._report_error(node, error)
                    if self.terminal:
                        return True
                    continue

            batch = cycle.current.resume(should_yield)
            if batch is None:
                return False

            point_filter = cycle.current
            cycle.current = None
            cycle.position += 1
            try:
                self._accumulator.add(batch)
            except IncompatibleAttributeLayoutError as error:
                self._report_error(point_filter.node, error)
                if self.terminal:
                    return True
            else:
                if self.on_accepted_points is not None:
                    self.on_accepted_points(
                        point_filter.node,
                        point_filter.accepted_indices,
                        batch.positions,
                    )
                    if self.terminal:
                        return True

            if cycle.position < len(cycle.candidates) and should_yield():
                return False
        return True

    def _report_error(
        self, node: OctreeNode, error: PickingError
    ) -> None:
        self.errors.append(error)
        warnings.warn(
            f"Skipping node '{node.name}': {error}",
            MalformedAttributeLayoutWarning,
            stacklevel=2,
        )
        if self.on_error is not None:
            self.on_error(node, error)

    def _flush(self) -> None:
        batch = self._accumulator.flush()
        size = batch.positions.shape[0]
        self.points_served += size
        logger.debug(
            "request %d delivered %d points (%d total)",
            self._handle,
            size,
            self.points_served,
        )
        if self.on_progress is not None:
            self.on_progress(ProgressEvent(request=self, points=batch))

    def _finish(self) -> None:
        if self._accumulator.num_points > 0:
            self._flush()
            if self.terminal:
                return
        self.state = RequestState.FINISHED
        self.octree.deregister_request(self._handle)
        logger.debug(
            "request %d finished after %d points",
            self._handle,
            self.points_served,
        )
        if self.on_finish is not None:
            self.on_finish(FinishEvent(request=self))
