"""Bounded, self-expiring records of recent pod bindings."""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Binding:
    """One pod-to-node binding with the second at which it happened."""

    node: str
    namespace: str
    pod_name: str
    timestamp: int


class BindingRecords:
    """A min-heap of bindings by timestamp, limited in size and trimmed by age."""

    def __init__(
        self,
        size: int,
        gc_time_range: timedelta,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.size = size
        self.gc_time_range = gc_time_range
        self._clock = clock
        self._heap: list[tuple[int, int, Binding]] = []
        self._counter = itertools.count()
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._heap)

    def _now(self) -> int:
        return int(self._clock())

    def add_binding(self, binding: Binding) -> None:
        """Add a binding, dropping the oldest one when the heap is full."""
        with self._lock:
            if self._heap and len(self._heap) >= self.size:
                heapq.heappop(self._heap)
            heapq.heappush(self._heap, (binding.timestamp, next(self._counter), binding))

    def last_node_binding_count(self, node: str, time_range: timedelta) -> int:
        """How many pods were bound to the node within the last time range."""
        with self._lock:
            timeline = self._now() - int(time_range.total_seconds())
            count = sum(
                1
                for _, _, binding in self._heap
                if binding.timestamp > timeline and binding.node == node
            )
            logger.debug(
                "The total Binding count is %d, while node[%s] count is %d",
                len(self._heap),
                node,
                count,
            )
            return count

    def gc(self) -> None:
        """Drop bindings older than the configured time range."""
        with self._lock:
            logger.debug("GC period is %f", self.gc_time_range.total_seconds())
            if self.gc_time_range == timedelta(0):
                return
            timeline = self._now() - int(self.gc_time_range.total_seconds())
            while self._heap and self._heap[0][0] <= timeline:
                _, _, binding = heapq.heappop(self._heap)
                logger.debug("Recycled Binding(%s) with timeline %d", binding, timeline)