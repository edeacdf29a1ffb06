import threading
import time
from datetime import timedelta

import pytest

from cranesched.kube import Pod, parse_quantity
from cranesched.topology import ResourceInfo, Zone, ZONE_TYPE_NODE
from cranesched.topologycache import PodTopologyCache


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


def zones():
    return [Zone("node1", ZONE_TYPE_NODE, ResourceInfo(capacity={"cpu": parse_quantity("1")}))]


def test_assume_and_get():
    cache = PodTopologyCache(timedelta(seconds=30))
    pod = Pod(uid="uid-1")
    cache.assume_pod(pod, zones())
    assert cache.get_pod_topology(pod) == zones()
    assert cache.pod_count() == 1


def test_assume_twice_raises():
    cache = PodTopologyCache(timedelta(seconds=30))
    pod = Pod(uid="uid-1")
    cache.assume_pod(pod, zones())
    with pytest.raises(ValueError):
        cache.assume_pod(pod, zones())
    assert cache.pod_count() == 1


def test_forget_and_missing():
    cache = PodTopologyCache(timedelta(seconds=30))
    pod = Pod(uid="uid-1")
    cache.assume_pod(pod, zones())
    cache.forget_pod(pod)
    assert cache.pod_count() == 0
    with pytest.raises(KeyError):
        cache.get_pod_topology(pod)
    cache.forget_pod(pod)
    assert cache.pod_count() == 0


def test_empty_uid_rejected():
    cache = PodTopologyCache(timedelta(seconds=30))
    with pytest.raises(ValueError):
        cache.assume_pod(Pod(), zones())


def test_cleanup_respects_deadline():
    clock = FakeClock(100.0)
    cache = PodTopologyCache(timedelta(seconds=30), clock=clock)
    cache.assume_pod(Pod(uid="uid-1"), zones())
    cache.cleanup_assumed_pods(100.0 + 30)
    assert cache.pod_count() == 1
    cache.cleanup_assumed_pods(100.0 + 30 + 1)
    assert cache.pod_count() == 0


def test_background_cleanup():
    clock = FakeClock(0.0)
    cache = PodTopologyCache(timedelta(seconds=30), clock=clock, period=timedelta(milliseconds=10))
    cache.assume_pod(Pod(uid="uid-1"), zones())
    stop = threading.Event()
    thread = cache.start(stop)
    try:
        clock.now = 1000.0
        deadline = time.monotonic() + 5
        while cache.pod_count() and time.monotonic() < deadline:
            time.sleep(0.01)
        assert cache.pod_count() == 0
    finally:
        stop.set()
        thread.join(timeout=5)
    assert not thread.is_alive()