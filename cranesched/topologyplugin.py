"""The NodeResourceTopologyMatch scheduler plugin: NUMA-aware filter, score, reserve and bind."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from cranesched.dynamic import MAX_NODE_SCORE, Status, StatusCode
from cranesched.kube import RESOURCE_CPU, NodeInfo, Pod, Resource
from cranesched.topology import (
    ANNOTATION_POD_TOPOLOGY_RESULT_KEY,
    CPU_MANAGER_POLICY_STATIC,
    TOPOLOGY_MANAGER_POLICY_SINGLE_NUMA_NODE_POD_LEVEL,
    NodeResourceTopology,
    NodeWrapper,
    Zone,
    assign_topology_result,
    compute_container_specified_resource_request,
    fits_request_for_numa_node,
    get_pod_target_container_indices,
    is_pod_aware_of_topology,
    zones_to_json,
)
from cranesched.topologycache import PodTopologyCache
from cranesched.utils import is_daemonset_pod

logger = logging.getLogger(__name__)

NAME = "NodeResourceTopologyMatch"
STATE_KEY = NAME

ERR_REASON_NUMA_RESOURCE_NOT_ENOUGH = "node(s) had insufficient resource of NUMA node"
ERR_REASON_FAILED_TO_GET_NRT = "node(s) failed to get NRT"

TopologyLookup = Callable[[str], NodeResourceTopology]
PodPatcher = Callable[[str, str, dict[str, Any]], None]


class CycleState:
    """Data shared between the extension points of one scheduling cycle."""

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}
        self._lock = threading.RLock()

    def write(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def read(self, key: str) -> Any:
        with self._lock:
            try:
                return self._data[key]
            except KeyError:
                raise KeyError(f"{key!r} not found") from None


@dataclass
class _StateData:
    aware: bool | None
    target_container_indices: list[int]
    target_container_resource: Resource
    pod_topology_by_node: dict[str, NodeWrapper] = field(default_factory=dict)
    topology_result: list[Zone] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


def _state_data(state: CycleState) -> _StateData:
    try:
        data = state.read(STATE_KEY)
    except KeyError as exc:
        raise KeyError(f"failed to read {STATE_KEY!r} from cycleState: {exc}") from exc
    if not isinstance(data, _StateData):
        raise TypeError(f"{data!r} convert to NodeResourcesTopology.stateData error")
    return data


class TopologyMatch:
    """Schedules pods onto nodes whose NUMA nodes can hold their bound CPUs."""

    def __init__(
        self,
        topology_lookup: TopologyLookup,
        cache: PodTopologyCache,
        topology_aware_resources: Iterable[str],
        patch_pod: PodPatcher | None = None,
    ) -> None:
        self.topology_lookup = topology_lookup
        self.cache = cache
        self.topology_aware_resources = frozenset(topology_aware_resources)
        self._patch_pod = patch_pod

    def name(self) -> str:
        return NAME

    def pre_filter(self, state: CycleState, pod: Pod) -> Status:
        """Compute the pod's target containers and request, and store them in the state."""
        indices: list[int] = []
        if RESOURCE_CPU in self.topology_aware_resources:
            indices = get_pod_target_container_indices(pod)
        resources = compute_container_specified_resource_request(
            pod, indices, self.topology_aware_resources
        )
        state.write(
            STATE_KEY,
            _StateData(
                aware=is_pod_aware_of_topology(pod.annotations),
                target_container_indices=indices,
                target_container_resource=resources,
            ),
        )
        return Status(StatusCode.SUCCESS)

    def _initialize_node_wrapper(
        self, data: _StateData, node_info: NodeInfo, nrt: NodeResourceTopology
    ) -> NodeWrapper:
        wrapper = NodeWrapper(
            node_info.node.name,
            self.topology_aware_resources,
            nrt.zones,
            self.cache.get_pod_topology,
        )
        for pod in node_info.pods:
            wrapper.add_pod(pod)
        if data.aware is not None:
            wrapper.aware = data.aware
        else:
            wrapper.aware = (
                nrt.crane_manager_policy.topology_manager_policy
                == TOPOLOGY_MANAGER_POLICY_SINGLE_NUMA_NODE_POD_LEVEL
            )
        return wrapper

    @staticmethod
    def _filter_numa_node_resource(data: _StateData, wrapper: NodeWrapper) -> Status | None:
        fitting = [
            numa_node
            for numa_node in wrapper.numa_nodes
            if not fits_request_for_numa_node(data.target_container_resource, numa_node)
        ]
        if not fitting:
            return Status(StatusCode.UNSCHEDULABLE, (ERR_REASON_NUMA_RESOURCE_NOT_ENOUGH,))
        wrapper.numa_nodes = fitting
        return None

    def filter(self, state: CycleState, pod: Pod, node_info: NodeInfo) -> Status:
        """Check that some NUMA node of the node has room for the pod."""
        data = _state_data(state)
        node = node_info.node
        if node is None:
            return Status(StatusCode.ERROR, ("node(s) not found",))
        if is_daemonset_pod(pod) or not data.target_container_indices:
            return Status(StatusCode.SUCCESS)
        try:
            nrt = self.topology_lookup(node.name)
        except LookupError:
            return Status(StatusCode.UNSCHEDULABLE, (ERR_REASON_FAILED_TO_GET_NRT,))
        # Without the static CPU manager the kubelet handles the cpuset itself.
        if nrt.crane_manager_policy.cpu_manager_policy != CPU_MANAGER_POLICY_STATIC:
            return Status(StatusCode.SUCCESS)

        wrapper = self._initialize_node_wrapper(data, node_info, nrt)
        if wrapper.aware:
            status = self._filter_numa_node_resource(data, wrapper)
            if status is not None:
                return status
        assign_topology_result(wrapper, data.target_container_resource.clone())

        with data.lock:
            data.pod_topology_by_node[wrapper.node] = wrapper
        return Status(StatusCode.SUCCESS)

    def score(self, state: CycleState, pod: Pod, node_name: str) -> int:
        """Favour nodes where the pod spans fewer NUMA nodes."""
        data = _state_data(state)
        wrapper = data.pod_topology_by_node.get(node_name)
        if wrapper is None:
            return 0
        return MAX_NODE_SCORE // len(wrapper.result)

    def reserve(self, state: CycleState, pod: Pod, node_name: str) -> Status:
        """Keep the pod's topology result and assume it in the cache."""
        data = _state_data(state)
        wrapper = data.pod_topology_by_node.get(node_name)
        if wrapper is None:
            return Status(StatusCode.SUCCESS)
        if not wrapper.result:
            return Status(StatusCode.ERROR, ("node(s) topology result is empty",))
        data.topology_result = wrapper.result
        self.cache.assume_pod(pod, data.topology_result)
        return Status(StatusCode.SUCCESS)

    def unreserve(self, state: CycleState, pod: Pod, node_name: str) -> None:
        """Forget the assumed topology of the pod; does nothing if there is none."""
        try:
            data = _state_data(state)
        except (KeyError, TypeError):
            return
        if node_name not in data.pod_topology_by_node:
            return
        self.cache.forget_pod(pod)

    def pre_bind(self, state: CycleState, pod: Pod, node_name: str) -> Status:
        """Write the topology result onto the pod's annotations."""
        logger.debug("Attempting to prebind pod %s to node %s", pod.key(), node_name)
        data = _state_data(state)
        if not data.topology_result:
            return Status(StatusCode.SUCCESS)
        result = zones_to_json(data.topology_result)
        if (pod.annotations or {}).get(ANNOTATION_POD_TOPOLOGY_RESULT_KEY) == result:
            patch: dict[str, Any] = {}
        else:
            patch = {"metadata": {"annotations": {ANNOTATION_POD_TOPOLOGY_RESULT_KEY: result}}}
        if self._patch_pod is None:
            raise RuntimeError("no pod patcher configured")
        self._patch_pod(pod.namespace, pod.name, patch)
        return Status(StatusCode.SUCCESS)