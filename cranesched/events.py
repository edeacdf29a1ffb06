"""Turning "Scheduled" events into binding records."""

from __future__ import annotations

import logging
import re
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Hashable

from cranesched.binding import Binding, BindingRecords

logger = logging.getLogger(__name__)

EVENT_TYPE_NORMAL = "Normal"
SCHEDULED_REASON = "Scheduled"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_MESSAGE_RE = re.compile(r"^[ \t]*Successfully[ \t]+assigned[ \t]+(\S+)[ \t]+to[ \t]+(\S+)")


@dataclass
class Event:
    """The fields of a cluster event that the annotator uses."""

    name: str
    namespace: str = ""
    type: str = EVENT_TYPE_NORMAL
    reason: str = ""
    message: str = ""
    count: int = 0
    event_time: datetime | None = None
    last_timestamp: datetime | None = None
    resource_version: str = ""

    def key(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name


def _unix(moment: datetime | None) -> int:
    if moment is None:
        moment = _ZERO_TIME
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - _EPOCH) // timedelta(seconds=1)


def split_meta_namespace_key(key: str) -> tuple[str, str]:
    """Split ``namespace/name`` (or a bare ``name``) into its two parts."""
    parts = key.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ValueError(f"unexpected key format: {key!r}")


def translate_event_to_binding(event: Event) -> Binding:
    """Read the pod and node out of a "Successfully assigned" event message."""
    match = _MESSAGE_RE.match(event.message)
    if match is None:
        raise ValueError(
            f"failed to extract information from event message[{event.message}]"
        )
    meta_key, node_name = match.groups()
    namespace, name = split_meta_namespace_key(meta_key)
    moment = event.event_time if event.count == 0 else event.last_timestamp
    return Binding(node=node_name, namespace=namespace, pod_name=name, timestamp=_unix(moment))


class _WorkQueue:
    """A de-duplicating work queue that drains its items after shutdown."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._shutting_down = False

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._cond.notify()

    def get(self) -> tuple[Hashable | None, bool]:
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if not self._queue:
                return None, True
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()


class EventController:
    """Queues scheduled events and records the bindings they describe."""

    def __init__(
        self,
        binding_records: BindingRecords,
        event_lookup: Callable[[str, str], Event],
    ) -> None:
        self.binding_records = binding_records
        self._event_lookup = event_lookup
        self._queue = _WorkQueue()

    def _enqueue(self, event: Event, action: str) -> None:
        key = event.key()
        logger.debug("enqueue EVENT %s %s event", key, action)
        self._queue.add(key)

    @staticmethod
    def _is_scheduled(event: Event) -> bool:
        return event.type == EVENT_TYPE_NORMAL and event.reason == SCHEDULED_REASON

    def handle_add(self, event: Event) -> None:
        if self._is_scheduled(event):
            self._enqueue(event, "Added")

    def handle_update(self, old: Event, new: Event) -> None:
        if old.resource_version == new.resource_version:
            return
        if self._is_scheduled(new):
            self._enqueue(new, "Updated")

    def _reconcile(self, key: str) -> None:
        start = time.monotonic()
        try:
            namespace, name = split_meta_namespace_key(key)
            event = self._event_lookup(namespace, name)
            self.binding_records.add_binding(translate_event_to_binding(event))
        finally:
            logger.debug(
                "Finished syncing EVENT event %r (%.3fs)", key, time.monotonic() - start
            )

    def process_next(self) -> bool:
        """Handle one queued event; False once the queue is shut down and empty."""
        key, quit = self._queue.get()
        if quit:
            return False
        try:
            self._reconcile(str(key))
        except (LookupError, ValueError) as exc:
            logger.warning("failed to sync this EVENT [%r]: %s", key, exc)
        finally:
            self._queue.done(key)
        return True

    def run(self) -> None:
        """Process events until the queue is shut down."""
        logger.info("Start to reconcile EVENT events")
        try:
            while self.process_next():
                pass
        finally:
            self._queue.shutdown()

    def shutdown(self) -> None:
        self._queue.shutdown()