"""Dynamic scheduler policy types and their strict YAML/JSON decoding."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import timedelta
from fractions import Fraction
from pathlib import Path
from typing import Any

import yaml

GROUP_NAME = "scheduler.policy.crane.io"
VERSION = "v1alpha1"
API_VERSION = f"{GROUP_NAME}/{VERSION}"
KIND = "DynamicSchedulerPolicy"


class PolicyDecodeError(ValueError):
    """Raised when a policy document cannot be decoded."""


@dataclass
class SyncPolicy:
    name: str = ""
    period: timedelta = timedelta(0)


@dataclass
class PredicatePolicy:
    name: str = ""
    max_limit_percent: float = 0.0


@dataclass
class PriorityPolicy:
    name: str = ""
    weight: float = 0.0


@dataclass
class HotValuePolicy:
    time_range: timedelta = timedelta(0)
    count: int = 0


@dataclass
class PolicySpec:
    sync_period: list[SyncPolicy] = field(default_factory=list)
    predicate: list[PredicatePolicy] = field(default_factory=list)
    priority: list[PriorityPolicy] = field(default_factory=list)
    hot_value: list[HotValuePolicy] = field(default_factory=list)


@dataclass
class DynamicSchedulerPolicy:
    spec: PolicySpec = field(default_factory=PolicySpec)
    api_version: str = API_VERSION
    kind: str = KIND


# Unit sizes in microseconds.
_UNITS = {
    "ns": Fraction(1, 1000),
    "us": Fraction(1),
    "µs": Fraction(1),
    "μs": Fraction(1),
    "ms": Fraction(1000),
    "s": Fraction(10**6),
    "m": Fraction(60 * 10**6),
    "h": Fraction(3600 * 10**6),
}
_COMPONENT = re.compile(r"(\d*(?:\.\d*)?)([a-zµμ]+)")


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``"5m"``, ``"1h30m"`` or ``"300ms"``."""
    if not isinstance(text, str):
        raise ValueError(f"invalid duration {text!r}")
    rest = text
    sign = 1
    if rest[:1] in ("+", "-"):
        sign = -1 if rest[0] == "-" else 1
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise ValueError(f"invalid duration {text!r}")
    total = Fraction(0)
    pos = 0
    while pos < len(rest):
        match = _COMPONENT.match(rest, pos)
        if match is None or match.group(1) in ("", "."):
            raise ValueError(f"invalid duration {text!r}")
        unit = match.group(2)
        if unit not in _UNITS:
            raise ValueError(f"unknown unit {unit!r} in duration {text!r}")
        number = match.group(1)
        if number.endswith("."):
            number = number[:-1]
        total += Fraction(number) * _UNITS[unit]
        pos = match.end()
    return timedelta(microseconds=sign * int(total))


def _mapping(value: Any, path: str, allowed: set[str]) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise PolicyDecodeError(f"{path}: expected an object")
    unknown = sorted(str(key) for key in value if key not in allowed)
    if unknown:
        raise PolicyDecodeError(f"{path}: unknown field(s) {', '.join(unknown)}")
    return value


def _items(value: Any, path: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise PolicyDecodeError(f"{path}: expected a list")
    return value


def _string(value: Any, path: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise PolicyDecodeError(f"{path}: expected a string")
    return value


def _float(value: Any, path: str) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PolicyDecodeError(f"{path}: expected a number")
    return float(value)


def _int(value: Any, path: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise PolicyDecodeError(f"{path}: expected an integer")
    return value


def _duration(value: Any, path: str) -> timedelta:
    if value is None:
        return timedelta(0)
    if not isinstance(value, str):
        raise PolicyDecodeError(f"{path}: expected a duration string")
    try:
        return parse_duration(value)
    except ValueError as exc:
        raise PolicyDecodeError(f"{path}: {exc}") from exc


def _decode_spec(raw: Any) -> PolicySpec:
    spec = _mapping(raw, "spec", {"syncPolicy", "predicate", "priority", "hotValue"})
    result = PolicySpec()
    for i, item in enumerate(_items(spec.get("syncPolicy"), "spec.syncPolicy")):
        path = f"spec.syncPolicy[{i}]"
        entry = _mapping(item, path, {"name", "period"})
        result.sync_period.append(
            SyncPolicy(
                name=_string(entry.get("name"), f"{path}.name"),
                period=_duration(entry.get("period"), f"{path}.period"),
            )
        )
    for i, item in enumerate(_items(spec.get("predicate"), "spec.predicate")):
        path = f"spec.predicate[{i}]"
        entry = _mapping(item, path, {"name", "maxLimitPecent"})
        result.predicate.append(
            PredicatePolicy(
                name=_string(entry.get("name"), f"{path}.name"),
                max_limit_percent=_float(entry.get("maxLimitPecent"), f"{path}.maxLimitPecent"),
            )
        )
    for i, item in enumerate(_items(spec.get("priority"), "spec.priority")):
        path = f"spec.priority[{i}]"
        entry = _mapping(item, path, {"name", "weight"})
        result.priority.append(
            PriorityPolicy(
                name=_string(entry.get("name"), f"{path}.name"),
                weight=_float(entry.get("weight"), f"{path}.weight"),
            )
        )
    for i, item in enumerate(_items(spec.get("hotValue"), "spec.hotValue")):
        path = f"spec.hotValue[{i}]"
        entry = _mapping(item, path, {"timeRange", "count"})
        result.hot_value.append(
            HotValuePolicy(
                time_range=_duration(entry.get("timeRange"), f"{path}.timeRange"),
                count=_int(entry.get("count"), f"{path}.count"),
            )
        )
    return result


def load_policy(data: bytes | str) -> DynamicSchedulerPolicy:
    """Decode a policy document given as YAML or JSON."""
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise PolicyDecodeError(str(exc)) from exc
    try:
        document = yaml.safe_load(data)
    except yaml.YAMLError as exc:
        raise PolicyDecodeError(f"invalid policy document: {exc}") from exc
    if not isinstance(document, dict):
        raise PolicyDecodeError("policy document must be an object")

    kind = document.get("kind")
    api_version = document.get("apiVersion")
    if not kind:
        raise PolicyDecodeError("Object 'Kind' is missing in policy document")
    if not api_version:
        raise PolicyDecodeError("Object 'apiVersion' is missing in policy document")
    if api_version != API_VERSION or kind != KIND:
        raise PolicyDecodeError(
            f"couldn't decode as {KIND}, got {api_version}, Kind={kind}"
        )

    document = _mapping(document, "policy", {"apiVersion", "kind", "spec"})
    return DynamicSchedulerPolicy(
        spec=_decode_spec(document.get("spec")),
        api_version=api_version,
        kind=kind,
    )


def load_policy_from_file(path: str | Path) -> DynamicSchedulerPolicy:
    """Read and decode a policy file."""
    return load_policy(Path(path).read_bytes())