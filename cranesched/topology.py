"""NUMA topology helpers: pod topology annotations, per-NUMA accounting and assignment."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Collection, Iterable, Mapping, Sequence

from cranesched.kube import (
    BINARY_SI,
    DECIMAL_SI,
    HUGE_PAGES_PREFIX,
    RESOURCE_CPU,
    RESOURCE_EPHEMERAL_STORAGE,
    RESOURCE_MEMORY,
    RESOURCE_PODS,
    Container,
    Pod,
    Quantity,
    Resource,
    ResourceList,
    new_resource,
    parse_quantity,
)

logger = logging.getLogger(__name__)

ANNOTATION_POD_TOPOLOGY_AWARENESS_KEY = "topology.crane.io/topology-awareness"
ANNOTATION_POD_TOPOLOGY_RESULT_KEY = "topology.crane.io/topology-result"
ANNOTATION_POD_CPU_POLICY_KEY = "topology.crane.io/cpu-policy"

CPU_POLICY_NONE = "none"
CPU_POLICY_EXCLUSIVE = "exclusive"
CPU_POLICY_NUMA = "numa"
CPU_POLICY_IMMOVABLE = "immovable"
SUPPORTED_POLICY = frozenset(
    {CPU_POLICY_NONE, CPU_POLICY_EXCLUSIVE, CPU_POLICY_NUMA, CPU_POLICY_IMMOVABLE}
)

ZONE_TYPE_NODE = "Node"

CPU_MANAGER_POLICY_STATIC = "Static"
CPU_MANAGER_POLICY_NONE = "None"
TOPOLOGY_MANAGER_POLICY_SINGLE_NUMA_NODE_POD_LEVEL = "SingleNUMANodePodLevel"
TOPOLOGY_MANAGER_POLICY_NONE = "None"

_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_WORDS = frozenset({"0", "f", "F", "FALSE", "false", "False"})


@dataclass
class ResourceInfo:
    allocatable: ResourceList = field(default_factory=dict)
    capacity: ResourceList = field(default_factory=dict)


@dataclass
class Zone:
    name: str
    type: str = ZONE_TYPE_NODE
    resources: ResourceInfo | None = None


@dataclass
class ManagerPolicy:
    cpu_manager_policy: str = CPU_MANAGER_POLICY_NONE
    topology_manager_policy: str = TOPOLOGY_MANAGER_POLICY_NONE


@dataclass
class NodeResourceTopology:
    """The NUMA layout and manager policies reported for one node."""

    name: str
    crane_manager_policy: ManagerPolicy = field(default_factory=ManagerPolicy)
    reserved: ResourceList = field(default_factory=dict)
    zones: list[Zone] = field(default_factory=list)


@dataclass(frozen=True)
class InsufficientResource:
    resource_name: str
    reason: str
    requested: int
    used: int
    capacity: int


@dataclass
class NumaNode:
    name: str
    allocatable: Resource = field(default_factory=Resource)
    requested: Resource = field(default_factory=Resource)


AssumedTopologyGetter = Callable[[Pod], Sequence[Zone]]


def is_pod_aware_of_topology(annotations: Mapping[str, str] | None) -> bool | None:
    """The pod's explicit topology awareness, or None when unset or unparsable."""
    value = (annotations or {}).get(ANNOTATION_POD_TOPOLOGY_AWARENESS_KEY)
    if value in _TRUE_WORDS:
        return True
    if value in _FALSE_WORDS:
        return False
    return None


def get_pod_cpu_policy(annotations: Mapping[str, str] | None) -> str:
    """The pod's CPU policy if it is a supported one, else an empty string."""
    policy = (annotations or {}).get(ANNOTATION_POD_CPU_POLICY_KEY)
    return policy if policy in SUPPORTED_POLICY else ""


def guaranteed_cpus(container: Container) -> int:
    """Whole CPUs guaranteed to the container; 0 unless requests equal limits and are integral."""
    zero = Quantity(0)
    request = container.requests.get(RESOURCE_CPU, zero)
    limit = container.limits.get(RESOURCE_CPU, zero)
    if request != limit or request.value() * 1000 != request.milli_value():
        return 0
    return request.value()


def get_pod_target_container_indices(pod: Pod) -> list[int]:
    """Indices of the containers whose CPUs may be bound."""
    if get_pod_cpu_policy(pod.annotations) == CPU_POLICY_NONE:
        return []
    return [i for i, container in enumerate(pod.containers) if guaranteed_cpus(container) > 0]


def _resource_list_to_json(resources: ResourceList) -> dict[str, str]:
    return {name: str(resources[name]) for name in sorted(resources)}


def _resource_list_from_json(raw: Any) -> ResourceList:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError("resource list must be an object")
    return {str(name): parse_quantity(value) for name, value in raw.items()}


def _zone_to_json(zone: Zone) -> dict[str, Any]:
    item: dict[str, Any] = {"name": zone.name, "type": zone.type}
    if zone.resources is not None:
        resources: dict[str, Any] = {}
        if zone.resources.capacity:
            resources["capacity"] = _resource_list_to_json(zone.resources.capacity)
        if zone.resources.allocatable:
            resources["allocatable"] = _resource_list_to_json(zone.resources.allocatable)
        item["resources"] = resources
    return item


def _zone_from_json(raw: Any) -> Zone:
    if not isinstance(raw, dict):
        raise ValueError("zone must be an object")
    resources = raw.get("resources")
    info = None
    if resources is not None:
        if not isinstance(resources, dict):
            raise ValueError("zone resources must be an object")
        info = ResourceInfo(
            allocatable=_resource_list_from_json(resources.get("allocatable")),
            capacity=_resource_list_from_json(resources.get("capacity")),
        )
    return Zone(name=str(raw.get("name", "")), type=str(raw.get("type", "")), resources=info)


def zones_to_json(zones: Iterable[Zone]) -> str:
    """Serialize a zone list the way it is stored in the topology result annotation."""
    return json.dumps([_zone_to_json(zone) for zone in zones], separators=(",", ":"))


def get_pod_topology_result(pod: Pod) -> list[Zone]:
    """The zones recorded in the pod's topology result annotation; empty if absent or bad."""
    raw = pod.annotations.get(ANNOTATION_POD_TOPOLOGY_RESULT_KEY)
    if raw is None:
        return []
    try:
        data = json.loads(raw)
        if data is None:
            return []
        if not isinstance(data, list):
            return []
        return [_zone_from_json(item) for item in data]
    except (ValueError, TypeError):
        return []


def get_pod_numa_node_result(pod: Pod) -> list[Zone]:
    """The NUMA node zones of the pod's topology result."""
    return [zone for zone in get_pod_topology_result(pod) if zone.type == ZONE_TYPE_NODE]


def _numa_node_from_zone(zone: Zone) -> NumaNode:
    allocatable = zone.resources.allocatable if zone.resources is not None else None
    return NumaNode(name=zone.name, allocatable=new_resource(allocatable))


class NodeWrapper:
    """Per-node NUMA accounting used while filtering and scoring one pod."""

    def __init__(
        self,
        node: str,
        topology_aware_resources: Collection[str],
        zones: Iterable[Zone],
        get_assumed_pod_topology: AssumedTopologyGetter,
    ) -> None:
        self.node = node
        self.aware = False
        self.topology_aware_resources = frozenset(topology_aware_resources)
        self.get_assumed_pod_topology = get_assumed_pod_topology
        self.numa_nodes: list[NumaNode] = [_numa_node_from_zone(zone) for zone in zones]
        self.result: list[Zone] = []

    def add_pod(self, pod: Pod) -> None:
        """Account the pod's NUMA usage, falling back to the assumed cache."""
        zones: Sequence[Zone] = get_pod_numa_node_result(pod)
        if not zones:
            try:
                zones = self.get_assumed_pod_topology(pod)
            except (LookupError, ValueError):
                return
        self.add_numa_resources(zones)

    def add_numa_resources(self, zones: Iterable[Zone]) -> None:
        for zone in zones:
            for numa_node in self.numa_nodes:
                if numa_node.name == zone.name and zone.resources is not None:
                    numa_node.requested.add(zone.resources.capacity)


def _truncate_to_whole_cpus(milli_cpu: int) -> int:
    whole = abs(milli_cpu) // 1000 * 1000
    return whole if milli_cpu >= 0 else -whole


def _is_empty_request(request: Resource) -> bool:
    return (
        request.milli_cpu == 0
        and request.memory == 0
        and request.ephemeral_storage == 0
        and not request.scalar_resources
    )


def assign_topology_result(wrapper: NodeWrapper, request: Resource) -> None:
    """Choose the NUMA zones for the request and store them in ``wrapper.result``."""
    wrapper.numa_nodes.sort(
        key=lambda n: n.allocatable.milli_cpu - n.requested.milli_cpu, reverse=True
    )

    if wrapper.aware:
        if not wrapper.numa_nodes:
            raise ValueError(f"node {wrapper.node} has no NUMA node to assign")
        wrapper.result = [
            Zone(
                name=wrapper.numa_nodes[0].name,
                type=ZONE_TYPE_NODE,
                resources=ResourceInfo(capacity=resource_list_ignore_zero_resources(request) or {}),
            )
        ]
        return

    for numa_node in wrapper.numa_nodes:
        numa_node.allocatable.milli_cpu = _truncate_to_whole_cpus(numa_node.allocatable.milli_cpu)
        assigned, finished = assign_request_for_numa_node(request, numa_node)
        capacity = resource_list_ignore_zero_resources(assigned)
        if capacity:
            wrapper.result.append(
                Zone(name=numa_node.name, type=ZONE_TYPE_NODE, resources=ResourceInfo(capacity=capacity))
            )
        if finished:
            break
    wrapper.result.sort(key=lambda zone: zone.name)


def compute_container_specified_resource_request(
    pod: Pod, indices: Iterable[int], names: Collection[str]
) -> Resource:
    """Sum of the named resource requests of the selected containers."""
    result = Resource()
    for index in indices:
        requests = pod.containers[index].requests
        result.add({name: quantity for name, quantity in requests.items() if name in names})
    return result


def fits_request_for_numa_node(request: Resource, numa_node: NumaNode) -> list[InsufficientResource]:
    """The resources the NUMA node lacks for the request; empty when it fits."""
    insufficient: list[InsufficientResource] = []
    if _is_empty_request(request):
        return insufficient
    allocatable = numa_node.allocatable
    requested = numa_node.requested

    for name, want, used, capacity in (
        (RESOURCE_CPU, request.milli_cpu, requested.milli_cpu, allocatable.milli_cpu),
        (RESOURCE_MEMORY, request.memory, requested.memory, allocatable.memory),
        (
            RESOURCE_EPHEMERAL_STORAGE,
            request.ephemeral_storage,
            requested.ephemeral_storage,
            allocatable.ephemeral_storage,
        ),
    ):
        if want > capacity - used:
            insufficient.append(
                InsufficientResource(name, f"Insufficient {name} of NUMA node", want, used, capacity)
            )

    for name, want in request.scalar_resources.items():
        used = requested.scalar_resources.get(name, 0)
        capacity = allocatable.scalar_resources.get(name, 0)
        if want > capacity - used:
            insufficient.append(
                InsufficientResource(name, f"Insufficient {name} of NUMA node", want, used, capacity)
            )
    return insufficient


def assign_request_for_numa_node(
    request: Resource, numa_node: NumaNode
) -> tuple[Resource | None, bool]:
    """Take as much of the request as the NUMA node can give.

    The request is reduced in place; returns what was assigned and whether the
    request is now fully met.
    """
    if _is_empty_request(request):
        return None, False
    allocatable = numa_node.allocatable
    requested = numa_node.requested
    assigned = Resource()
    finished = True

    taken = min(request.milli_cpu, allocatable.milli_cpu - requested.milli_cpu)
    request.milli_cpu -= taken
    assigned.milli_cpu = taken
    if request.milli_cpu > 0:
        finished = False

    taken = min(request.memory, allocatable.memory - requested.memory)
    request.memory -= taken
    assigned.memory = taken
    if request.memory > 0:
        finished = False

    taken = min(
        request.ephemeral_storage, allocatable.ephemeral_storage - requested.ephemeral_storage
    )
    request.ephemeral_storage -= taken
    assigned.ephemeral_storage = taken
    if request.ephemeral_storage > 0:
        finished = False

    for name, want in list(request.scalar_resources.items()):
        taken = min(
            want,
            allocatable.scalar_resources.get(name, 0) - requested.scalar_resources.get(name, 0),
        )
        request.scalar_resources[name] = want - taken
        assigned.scalar_resources[name] = taken
        if request.scalar_resources[name] > 0:
            finished = False

    return assigned, finished


def resource_list_ignore_zero_resources(resource: Resource | None) -> ResourceList | None:
    """The positive amounts of a Resource as a resource list."""
    if resource is None:
        return None
    result: ResourceList = {}
    if resource.milli_cpu > 0:
        result[RESOURCE_CPU] = Quantity(resource.milli_cpu / _thousand(), DECIMAL_SI)
    if resource.memory > 0:
        # The memory entry carries the millicore amount, as recorded results always have.
        result[RESOURCE_MEMORY] = Quantity(resource.milli_cpu, BINARY_SI)
    if resource.allowed_pod_number > 0:
        result[RESOURCE_PODS] = Quantity(resource.allowed_pod_number, BINARY_SI)
    if resource.ephemeral_storage > 0:
        result[RESOURCE_EPHEMERAL_STORAGE] = Quantity(resource.ephemeral_storage, BINARY_SI)
    for name, amount in resource.scalar_resources.items():
        if amount > 0:
            fmt = BINARY_SI if name.startswith(HUGE_PAGES_PREFIX) else DECIMAL_SI
            result[name] = Quantity(amount, fmt)
    return result


def _thousand():
    from fractions import Fraction

    return Fraction(1000)