"""A time-limited cache of pod topology results that are assumed but not yet bound."""

from __future__ import annotations

import logging
import threading
import time
from datetime import timedelta
from typing import Callable, Iterable

from cranesched.kube import Pod
from cranesched.topology import Zone

logger = logging.getLogger(__name__)

CLEAN_ASSUMED_PERIOD = timedelta(seconds=1)


class PodTopologyCache:
    """Holds each assumed pod's zones until it is forgotten or its TTL passes."""

    def __init__(
        self,
        ttl: timedelta,
        clock: Callable[[], float] = time.time,
        period: timedelta = CLEAN_ASSUMED_PERIOD,
    ) -> None:
        self.ttl = ttl
        self.period = period
        self._clock = clock
        self._lock = threading.RLock()
        self._topology: dict[str, list[Zone]] = {}
        self._deadlines: dict[str, float] = {}

    def assume_pod(self, pod: Pod, zones: Iterable[Zone]) -> None:
        """Record the pod's zones; a pod already in the cache is an error."""
        key = pod.key()
        with self._lock:
            if key in self._topology:
                raise ValueError(f"pod {key} is in the podTopologyCache, so can't be assumed")
            self._topology[key] = list(zones)
            self._deadlines[key] = self._clock() + self.ttl.total_seconds()

    def forget_pod(self, pod: Pod) -> None:
        key = pod.key()
        with self._lock:
            self._remove(key)

    def pod_count(self) -> int:
        with self._lock:
            return len(self._topology)

    def get_pod_topology(self, pod: Pod) -> list[Zone]:
        key = pod.key()
        with self._lock:
            try:
                return self._topology[key]
            except KeyError:
                raise KeyError(f"pod topology {key} does not exist in cache") from None

    def cleanup_assumed_pods(self, now: float | None = None) -> None:
        """Drop every entry whose deadline lies before ``now``."""
        with self._lock:
            moment = self._clock() if now is None else now
            for key in [k for k, deadline in self._deadlines.items() if moment > deadline]:
                self._remove(key)

    def start(self, stop_event: threading.Event) -> threading.Thread:
        """Clean up expired entries every period until stop_event is set."""

        def loop() -> None:
            while True:
                self.cleanup_assumed_pods()
                if stop_event.wait(self.period.total_seconds()):
                    return

        thread = threading.Thread(target=loop, daemon=True)
        thread.start()
        return thread

    def _remove(self, key: str) -> None:
        self._topology.pop(key, None)
        self._deadlines.pop(key, None)
        logger.debug("Finished binding for pod %s. Can be expired.", key)