from datetime import datetime, timedelta, timezone

import pytest

from cranesched.kube import OwnerReference, Pod
from cranesched.utils import (
    TIME_FORMAT,
    get_local_time,
    get_location,
    get_system_namespace,
    is_daemonset_pod,
    normalize_score,
)


def test_daemonset_pod_detected():
    pod = Pod(owner_references=[OwnerReference(kind="ReplicaSet"), OwnerReference(kind="DaemonSet")])
    assert is_daemonset_pod(pod) is True


def test_non_daemonset_pod():
    assert is_daemonset_pod(Pod(owner_references=[OwnerReference(kind="ReplicaSet")])) is False
    assert is_daemonset_pod(Pod()) is False


@pytest.mark.parametrize(
    "value,expected", [(150, 100), (-5, 0), (42, 42), (100, 100), (0, 0)]
)
def test_normalize_score(value, expected):
    assert normalize_score(value, 100, 0) == expected


def test_system_namespace_default(monkeypatch):
    monkeypatch.delenv("CRANE_SYSTEM_NAMESPACE", raising=False)
    assert get_system_namespace() == "crane-system"


def test_system_namespace_from_env(monkeypatch):
    monkeypatch.setenv("CRANE_SYSTEM_NAMESPACE", "ops")
    assert get_system_namespace() == "ops"


def test_location_utc(monkeypatch):
    monkeypatch.setenv("TZ", "UTC")
    location = get_location()
    assert location.utcoffset(datetime(2024, 1, 1)) == timedelta(0)


def test_unknown_location(monkeypatch):
    monkeypatch.setenv("TZ", "Nowhere/Unknown_Zone")
    assert get_location() is None


def test_local_time_in_utc(monkeypatch):
    monkeypatch.setenv("TZ", "UTC")
    stamp = datetime.strptime(get_local_time(), TIME_FORMAT).replace(tzinfo=timezone.utc)
    assert abs(datetime.now(timezone.utc) - stamp) < timedelta(seconds=5)


def test_local_time_with_unknown_zone_still_formats(monkeypatch):
    monkeypatch.setenv("TZ", "Nowhere/Unknown_Zone")
    text = get_local_time()
    assert datetime.strptime(text, TIME_FORMAT).strftime(TIME_FORMAT) == text