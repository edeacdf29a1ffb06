"""Shared helpers: daemonset detection, local time, namespace and score clamping."""

from __future__ import annotations

import os
from datetime import datetime, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from cranesched.kube import Pod

TIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
DEFAULT_TIME_ZONE = "Asia/Shanghai"
DEFAULT_NAMESPACE = "crane-system"


def is_daemonset_pod(pod: Pod) -> bool:
    """Whether the pod is owned by a DaemonSet."""
    return any(ref.kind == "DaemonSet" for ref in pod.owner_references)


def get_location() -> tzinfo | None:
    """The time zone named by TZ, or the default zone; None if it cannot be loaded."""
    zone = os.environ.get("TZ") or DEFAULT_TIME_ZONE
    if zone == "UTC":
        return timezone.utc
    if zone == "Local":
        return datetime.now().astimezone().tzinfo
    try:
        return ZoneInfo(zone)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return None


def get_local_time() -> str:
    """The current time in the configured zone, formatted as TIME_FORMAT."""
    location = get_location()
    now = datetime.now(location) if location is not None else datetime.now()
    return now.strftime(TIME_FORMAT)


def get_system_namespace() -> str:
    return os.environ.get("CRANE_SYSTEM_NAMESPACE") or DEFAULT_NAMESPACE


def normalize_score(value: int, max_value: int, min_value: int) -> int:
    """Clamp the score into [min_value, max_value]."""
    if value < min_value:
        value = min_value
    if value > max_value:
        value = max_value
    return value