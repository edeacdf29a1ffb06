"""The load-aware Dynamic scheduler plugin: filtering and scoring by node annotations."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Sequence

from cranesched.kube import Node, NodeInfo, Pod
from cranesched.pluginargs import DynamicArgs
from cranesched.policy import (
    DynamicSchedulerPolicy,
    PolicySpec,
    PredicatePolicy,
    PriorityPolicy,
    SyncPolicy,
    load_policy_from_file,
)
from cranesched.utils import TIME_FORMAT, get_location, is_daemonset_pod, normalize_score

logger = logging.getLogger(__name__)

NAME = "Dynamic"
MAX_NODE_SCORE = 100
MIN_NODE_SCORE = 0
MIN_TIMESTAMP_STR_LENGTH = 5
NODE_HOT_VALUE = "node_hot_value"
DEFAULT_HOT_VALUE_ACTIVE_PERIOD = timedelta(minutes=5)
EXTRA_ACTIVE_PERIOD = timedelta(minutes=5)

_MASTER_NODES = frozenset({"172.21.1.6", "172.21.1.14", "172.21.1.9"})
_MASTER_NODE_PENALTY = 0.3


class StatusCode(enum.IntEnum):
    SUCCESS = 0
    ERROR = 1
    UNSCHEDULABLE = 2
    UNSCHEDULABLE_AND_UNRESOLVABLE = 3
    WAIT = 4
    SKIP = 5


@dataclass(frozen=True)
class Status:
    """The outcome of a scheduling extension point."""

    code: StatusCode = StatusCode.SUCCESS
    reasons: tuple[str, ...] = ()

    def is_success(self) -> bool:
        return self.code == StatusCode.SUCCESS

    @property
    def message(self) -> str:
        return ", ".join(self.reasons)


def _now(now: datetime | None) -> datetime:
    return now if now is not None else datetime.now(timezone.utc)


def in_active_period(
    update_time: str, active_duration: timedelta, now: datetime | None = None
) -> bool:
    """Whether an annotation stamped at update_time is still fresh."""
    if len(update_time) < MIN_TIMESTAMP_STR_LENGTH:
        logger.error("[crane] illegal timestamp: %s", update_time)
        return False
    try:
        parsed = datetime.strptime(update_time, TIME_FORMAT)
    except ValueError as exc:
        logger.error("[crane] failed to parse timestamp: %s", exc)
        return False
    location = get_location() or timezone.utc
    updated = parsed.replace(tzinfo=location)
    return _now(now) < updated + active_duration


def get_resource_usage(
    annotations: Mapping[str, str],
    key: str,
    active_duration: timedelta,
    now: datetime | None = None,
) -> float:
    """Read a fresh, non-negative ``value,timestamp`` annotation."""
    if key not in annotations:
        raise ValueError(f"key[{key}] not found")
    used = annotations[key]
    parts = used.split(",")
    if len(parts) != 2:
        raise ValueError(f"illegal value: {used}")
    if not in_active_period(parts[1], active_duration, now):
        raise ValueError(f"timestamp[{used}] is expired")
    try:
        value = float(parts[0])
    except ValueError:
        raise ValueError(f"failed to parse float[{parts[0]}]") from None
    if value < 0:
        raise ValueError(f"illegal value: {used}")
    return value


def get_active_duration(sync_policies: Sequence[SyncPolicy], name: str) -> timedelta:
    """The sync period of the named metric plus the extra grace period."""
    for period in sync_policies:
        if period.name == name and period.period != timedelta(0):
            return period.period + EXTRA_ACTIVE_PERIOD
    raise ValueError("failed to get the active duration")


def get_score(
    annotations: Mapping[str, str],
    priority_policy: PriorityPolicy,
    sync_policies: Sequence[SyncPolicy],
    now: datetime | None = None,
) -> float:
    """The weighted free-capacity score of one metric."""
    try:
        active_duration = get_active_duration(sync_policies, priority_policy.name)
    except ValueError as exc:
        raise ValueError(
            f"failed to get the active duration of resource[{priority_policy.name}]: {exc}"
        ) from exc
    usage = get_resource_usage(annotations, priority_policy.name, active_duration, now)
    return (1.0 - usage / 100) * priority_policy.weight * MAX_NODE_SCORE


def is_overload(
    name: str,
    annotations: Mapping[str, str],
    predicate_policy: PredicatePolicy,
    active_duration: timedelta,
    now: datetime | None = None,
) -> bool:
    """Whether the metric's usage exceeds the policy's limit."""
    try:
        usage = get_resource_usage(annotations, predicate_policy.name, active_duration, now)
    except ValueError as exc:
        logger.error(
            "[crane] can not get the usage of resource[%s] from node[%s]'s annotation: %s",
            predicate_policy.name,
            name,
            exc,
        )
        return False
    # A zero limit switches this filter off.
    if predicate_policy.max_limit_percent == 0:
        return False
    return usage > predicate_policy.max_limit_percent


def get_node_score(
    name: str,
    annotations: Mapping[str, str],
    spec: PolicySpec,
    now: datetime | None = None,
) -> int:
    """The weighted average of the node's priority scores."""
    if not spec.priority:
        logger.warning("[crane] no priority policy exists, all nodes scores 0.")
        return 0
    score = 0.0
    weight = 0.0
    for priority_policy in spec.priority:
        try:
            priority_score = get_score(annotations, priority_policy, spec.sync_period, now)
        except ValueError as exc:
            logger.error(
                "[crane] failed to get node[%s]'s score of %s: %s", name, priority_policy.name, exc
            )
            priority_score = 0.0
        weight += priority_policy.weight
        score += priority_score
    if name in _MASTER_NODES:
        score -= score * _MASTER_NODE_PENALTY
    if weight == 0:
        return 0
    return int(score / weight)


def get_node_hot_value(node: Node, now: datetime | None = None) -> float:
    """The node's hot value annotation, or 0 when absent or stale."""
    if not node.annotations:
        return 0.0
    try:
        value = get_resource_usage(
            node.annotations, NODE_HOT_VALUE, DEFAULT_HOT_VALUE_ACTIVE_PERIOD, now
        )
    except ValueError:
        return 0.0
    logger.debug("[crane] Node[%s]'s hotvalue is %f", node.name, value)
    return value


class DynamicScheduler:
    """A scheduler plugin that filters and scores nodes by their real load."""

    def __init__(
        self,
        policy: DynamicSchedulerPolicy,
        node_lookup: Callable[[str], NodeInfo],
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.policy = policy
        self._node_lookup = node_lookup
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def name(self) -> str:
        return NAME

    def filter(self, pod: Pod, node_info: NodeInfo) -> Status:
        """Reject nodes whose load exceeds a predicate limit."""
        if is_daemonset_pod(pod):
            return Status(StatusCode.SUCCESS)
        node = node_info.node
        if node is None:
            return Status(StatusCode.ERROR, ("node not found",))
        now = self._clock()
        annotations = node.annotations or {}
        spec = self.policy.spec
        for predicate in spec.predicate:
            try:
                active_duration = get_active_duration(spec.sync_period, predicate.name)
            except ValueError as exc:
                logger.warning("[crane] failed to get active duration: %s", exc)
                continue
            if is_overload(node.name, annotations, predicate, active_duration, now):
                return Status(
                    StatusCode.UNSCHEDULABLE,
                    (f"Load[{predicate.name}] of node[{node.name}] is too high",),
                )
        return Status(StatusCode.SUCCESS)

    def score(self, pod: Pod, node_name: str) -> int:
        """Favour nodes with the least real usage and the fewest recent bindings."""
        try:
            node_info = self._node_lookup(node_name)
        except LookupError as exc:
            raise LookupError(f"getting node {node_name!r} from Snapshot: {exc}") from exc
        node = node_info.node
        if node is None:
            raise LookupError("node not found")
        now = self._clock()
        annotations = node.annotations or {}
        score = get_node_score(node.name, annotations, self.policy.spec, now)
        hot_value = get_node_hot_value(node, now)
        score -= int(hot_value * 10)
        final = normalize_score(score, MAX_NODE_SCORE, MIN_NODE_SCORE)
        logger.debug(
            "[crane] Node[%s]'s final score is %d, while score is %d and hot value is %f",
            node.name,
            final,
            score,
            hot_value,
        )
        return final


def new_dynamic_scheduler(
    args: DynamicArgs, node_lookup: Callable[[str], NodeInfo]
) -> DynamicScheduler:
    """Build the plugin from its arguments, loading the policy file they name."""
    if not isinstance(args, DynamicArgs):
        raise TypeError(f"want args to be of type DynamicArgs, got {type(args).__name__}.")
    try:
        policy = load_policy_from_file(args.policy_config_path or "")
    except (OSError, ValueError) as exc:
        raise ValueError(f"failed to get scheduler policy from config file: {exc}") from exc
    return DynamicScheduler(policy, node_lookup)