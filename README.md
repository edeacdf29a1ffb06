# cranesched

`cranesched` holds the decision logic of a Kubernetes scheduler that accounts
for real node load and for NUMA topology. It also provides the building blocks
for keeping load figures up to date: recent-binding records, a reader for
scheduling events and a Prometheus query client.

It is a library and has no command-line entry point. The cluster is reached
only through callables that you pass in, such as node lookups, topology
lookups and pod patchers.

## Installation

The package needs Python 3.10 or later. Its only runtime dependency is PyYAML.
The optional `test` extra installs pytest.

## Modules

| Module | Contents |
| --- | --- |
| `cranesched.kube` | A small object model: `Quantity` and `parse_quantity`, `Pod`, `Container`, `OwnerReference`, `Node`, `NodeAddress`, `NodeInfo`, and `Resource` with `new_resource`. |
| `cranesched.utils` | `is_daemonset_pod`, `get_location`, `get_local_time`, `get_system_namespace`, `normalize_score`. |
| `cranesched.policy` | The scheduling policy types, `parse_duration`, `load_policy`, `load_policy_from_file` and `PolicyDecodeError`. |
| `cranesched.pluginargs` | `DynamicArgs`, `NodeResourceTopologyMatchArgs`, their defaulting functions, and `decode_plugin_args(kind, data, version)` for `v1beta2` and `v1beta3`. |
| `cranesched.dynamic` | The load-aware `DynamicScheduler` plugin, the `Status` and `StatusCode` types, and the annotation and scoring helpers. |
| `cranesched.binding` | `Binding` and `BindingRecords`, a bounded heap of recent pod bindings. |
| `cranesched.events` | `Event`, `translate_event_to_binding`, `split_meta_namespace_key`, and `EventController`, which turns "Scheduled" events into binding records. |
| `cranesched.prometheus` | `PromClient` for instant queries, `format_vector_value` and `PrometheusError`. |
| `cranesched.topology` | NUMA helpers: topology annotations on pods, `NodeWrapper`, and fitting and assigning requests to NUMA nodes. |
| `cranesched.topologycache` | `PodTopologyCache`, which keeps the zones of assumed pods for a limited time. |
| `cranesched.topologyplugin` | The `TopologyMatch` plugin and `CycleState`. |

## Scheduling policy

```yaml
apiVersion: scheduler.policy.crane.io/v1alpha1
kind: DynamicSchedulerPolicy
spec:
  syncPolicy:
    - name: cpu_usage_avg_5m
      period: 3m
    - name: mem_usage_avg_5m
      period: 3m
  predicate:
    - name: cpu_usage_avg_5m
      maxLimitPecent: 0.65
    - name: mem_usage_avg_5m
      maxLimitPecent: 0.75
  priority:
    - name: cpu_usage_avg_5m
      weight: 0.5
    - name: mem_usage_avg_5m
      weight: 0.5
  hotValue:
    - timeRange: 5m
      count: 5
    - timeRange: 1m
      count: 2
```

```python
from cranesched.policy import PolicyDecodeError, load_policy_from_file

try:
    policy = load_policy_from_file("/etc/kubernetes/policy.yaml")
except PolicyDecodeError as exc:
    print(f"bad policy: {exc}")
```

`load_policy(data)` accepts the same document as a string or as bytes, in YAML
or JSON. Decoding is strict. An unknown field, a wrong `apiVersion` or `kind`,
or a malformed duration raises `PolicyDecodeError`. `parse_duration` reads
strings such as `"3m"`, `"1h30m"` or `"300ms"` and returns a `timedelta`.

## Dynamic scheduling

Nodes carry load annotations of the form `"<value>,<timestamp>"`. The timestamp
uses the format `%Y-%m-%dT%H:%M:%SZ` in the zone that `TZ` names, and
`get_local_time()` produces such a string. An annotation counts only while it
is fresh. Its lifetime is the metric's sync period plus five minutes, as
returned by `get_active_duration(sync_policies, name)`.

- `DynamicScheduler.filter(pod, node_info)` returns an `UNSCHEDULABLE` status
  when a fresh metric is above its predicate's `maxLimitPecent`. A limit of 0
  turns that check off. DaemonSet pods always pass.
- `DynamicScheduler.score(pod, node_name)` computes a weighted average of
  `(1 - usage/100) * weight * 100` over the priority metrics. It then subtracts
  ten times the node's `node_hot_value` annotation and clamps the result to
  0–100. The nodes named `172.21.1.6`, `172.21.1.14` and `172.21.1.9` have
  their summed score reduced by 30%.

```python
from cranesched.dynamic import DynamicScheduler
from cranesched.kube import Node, NodeInfo, Pod
from cranesched.utils import get_local_time

stamp = get_local_time()
node = Node(
    name="node-1",
    annotations={
        "cpu_usage_avg_5m": f"0.30000,{stamp}",
        "mem_usage_avg_5m": f"0.50000,{stamp}",
    },
)
nodes = {"node-1": NodeInfo(node=node)}

scheduler = DynamicScheduler(policy, nodes.__getitem__)
pod = Pod(name="web", uid="uid-1")
if scheduler.filter(pod, nodes["node-1"]).is_success():
    print(scheduler.score(pod, "node-1"))
```

`new_dynamic_scheduler(args, node_lookup)` builds the plugin from a
`DynamicArgs` and loads the policy file that the args name.

## Binding records and events

`BindingRecords(size, gc_time_range)` holds at most `size` bindings. When it is
full, adding a binding drops the oldest one. `last_node_binding_count(node,
time_range)` counts the recent bindings to a node, and `gc()` removes bindings
older than `gc_time_range`.

`EventController(binding_records, event_lookup)` queues events whose type is
`Normal` and whose reason is `Scheduled`. For each one it reads
`"Successfully assigned <namespace>/<pod> to <node>"` from the message and
records the binding. `run()` processes events until `shutdown()` is called.

## Prometheus queries

`PromClient(address)` runs instant queries against `/api/v1/query`. It returns
the last sample formatted with five decimals, with negative and NaN values
reported as 0, or `""` when the result is empty. `query_by_node_ip` first tries
`instance=~"<ip>"` and then `instance=~"<ip>:.+"`. `query_by_node_name` and
`query_by_node_ip_with_offset` work in the same way. A failed query raises
`PrometheusError`. You can pass a custom `transport` callable in place of
`urllib`.

## NUMA topology matching

`TopologyMatch(topology_lookup, cache, topology_aware_resources, patch_pod)`
runs these scheduling steps:

- `pre_filter` picks the containers whose requested CPUs equal their limits
  and are whole numbers.
- `filter` rejects a node when no NUMA node has room, if the pod or node is
  topology aware. It accepts the node without checks when the node's CPU
  manager policy is not `Static`.
- `score` returns `100 // <number of NUMA zones used>`.
- `reserve` and `unreserve` assume the chosen zones in a `PodTopologyCache`
  and forget them again.
- `pre_bind` calls `patch_pod(namespace, name, patch)` with a merge patch that
  sets the `topology.crane.io/topology-result` annotation.

```python
from datetime import timedelta
from cranesched.topologycache import PodTopologyCache
from cranesched.topologyplugin import CycleState, TopologyMatch

cache = PodTopologyCache(ttl=timedelta(minutes=30))
plugin = TopologyMatch(topologies.__getitem__, cache, ["cpu"], patch_pod=my_patcher)
state = CycleState()
plugin.pre_filter(state, pod)
status = plugin.filter(state, pod, node_info)
```

`PodTopologyCache.start(stop_event)` starts a thread that drops expired entries
every second until `stop_event` is set.

## Small helpers

```python
from cranesched.events import split_meta_namespace_key
from cranesched.kube import parse_quantity
from cranesched.utils import normalize_score

normalize_score(150, 100, 0)               # 100
split_meta_namespace_key("default/nginx")  # ("default", "nginx")
parse_quantity("2.5").milli_value()        # 2500
```

## Environment

- `TZ` sets the time zone for annotation timestamps. The default is
  `Asia/Shanghai`.
- `CRANE_SYSTEM_NAMESPACE` sets the value of `get_system_namespace()`. The
  default is `crane-system`.

## What the package does not do

- It has no command or long-running process. Nothing starts a controller,
  runs leader election or serves health checks.
- It does not write load annotations onto nodes. It can query Prometheus, but
  it does not fetch per-node statistics endpoints and has no loop that patches
  node annotations.
- It does not compute or write a node's hot value. `BindingRecords` provides
  the counts, and `DynamicScheduler` only reads an existing `node_hot_value`
  annotation.
- It contains no Kubernetes API client. You supply node, event and topology
  lookups and pod patching as callables.