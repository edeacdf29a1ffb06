from datetime import datetime, timedelta, timezone

import pytest

from cranesched.dynamic import (
    EXTRA_ACTIVE_PERIOD,
    MAX_NODE_SCORE,
    MIN_NODE_SCORE,
    DynamicScheduler,
    StatusCode,
    get_active_duration,
    get_node_hot_value,
    get_node_score,
    get_resource_usage,
    get_score,
    in_active_period,
    is_overload,
    new_dynamic_scheduler,
)
from cranesched.kube import Node, NodeInfo, OwnerReference, Pod
from cranesched.pluginargs import DynamicArgs
from cranesched.policy import (
    DynamicSchedulerPolicy,
    PolicySpec,
    PredicatePolicy,
    PriorityPolicy,
    SyncPolicy,
)
from cranesched.utils import TIME_FORMAT

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
STAMP = NOW.strftime(TIME_FORMAT)
METRIC = "cpu_usage_avg_5m"
SYNC = [SyncPolicy(METRIC, timedelta(minutes=3))]


@pytest.fixture(autouse=True)
def utc(monkeypatch):
    monkeypatch.setenv("TZ", "UTC")


def spec(limit=0.65, weight=1.0):
    return PolicySpec(
        sync_period=list(SYNC),
        predicate=[PredicatePolicy(METRIC, limit)],
        priority=[PriorityPolicy(METRIC, weight)],
    )


def test_in_active_period():
    assert in_active_period(STAMP, timedelta(minutes=5), NOW + timedelta(minutes=1))
    assert not in_active_period(STAMP, timedelta(minutes=5), NOW + timedelta(minutes=6))
    assert not in_active_period("2024", timedelta(minutes=5), NOW)
    assert not in_active_period("not-a-timestamp", timedelta(minutes=5), NOW)


def test_get_resource_usage_reads_value():
    usage = get_resource_usage({METRIC: f"0.5,{STAMP}"}, METRIC, timedelta(minutes=5), NOW)
    assert usage == 0.5


@pytest.mark.parametrize(
    "annotations",
    [
        {},
        {METRIC: "0.5"},
        {METRIC: "0.5,2000-01-01T00:00:00Z"},
        {METRIC: f"abc,{STAMP}"},
        {METRIC: f"-1,{STAMP}"},
    ],
)
def test_get_resource_usage_errors(annotations):
    with pytest.raises(ValueError):
        get_resource_usage(annotations, METRIC, timedelta(minutes=5), NOW)


def test_get_active_duration():
    assert get_active_duration(SYNC, METRIC) == timedelta(minutes=3) + EXTRA_ACTIVE_PERIOD
    with pytest.raises(ValueError):
        get_active_duration(SYNC, "mem_usage_avg_5m")
    with pytest.raises(ValueError):
        get_active_duration([SyncPolicy(METRIC, timedelta(0))], METRIC)


def test_get_score_bounds():
    idle = get_score({METRIC: f"0,{STAMP}"}, PriorityPolicy(METRIC, 1.0), SYNC, NOW)
    full = get_score({METRIC: f"100,{STAMP}"}, PriorityPolicy(METRIC, 1.0), SYNC, NOW)
    assert idle == MAX_NODE_SCORE
    assert full == 0
    with pytest.raises(ValueError):
        get_score({}, PriorityPolicy(METRIC, 1.0), SYNC, NOW)


def test_is_overload():
    duration = timedelta(minutes=8)
    annotations = {METRIC: f"0.9,{STAMP}"}
    assert is_overload("n", annotations, PredicatePolicy(METRIC, 0.65), duration, NOW)
    assert not is_overload("n", annotations, PredicatePolicy(METRIC, 0.95), duration, NOW)
    assert not is_overload("n", annotations, PredicatePolicy(METRIC, 0), duration, NOW)
    assert not is_overload("n", {}, PredicatePolicy(METRIC, 0.65), duration, NOW)


def test_get_node_score():
    annotations = {METRIC: f"0,{STAMP}"}
    assert get_node_score("n", annotations, PolicySpec(), NOW) == 0
    assert get_node_score("n", annotations, spec(weight=2.0), NOW) == MAX_NODE_SCORE
    master = get_node_score("172.21.1.6", annotations, spec(), NOW)
    assert 0 < master < MAX_NODE_SCORE


def test_get_node_hot_value():
    assert get_node_hot_value(Node("n", {"node_hot_value": f"2,{STAMP}"}), NOW) == 2.0
    assert get_node_hot_value(Node("n"), NOW) == 0
    assert get_node_hot_value(Node("n", {"node_hot_value": "bad"}), NOW) == 0


def scheduler(nodes):
    infos = {node.name: NodeInfo(node=node) for node in nodes}
    return DynamicScheduler(DynamicSchedulerPolicy(spec=spec()), lambda name: infos[name])


def test_filter_rejects_overloaded_node():
    node = Node("node-1", {METRIC: f"0.9,{STAMP}"})
    status = scheduler([node]).filter(Pod(name="p"), NodeInfo(node=node), NOW)
    assert status.code == StatusCode.UNSCHEDULABLE
    assert status.message == f"Load[{METRIC}] of node[node-1] is too high"


def test_filter_allows_daemonset_and_light_nodes():
    busy = Node("node-1", {METRIC: f"0.9,{STAMP}"})
    light = Node("node-2", {METRIC: f"0.1,{STAMP}"})
    plugin = scheduler([busy, light])
    daemon = Pod(name="d", owner_references=[OwnerReference(kind="DaemonSet")])
    assert plugin.filter(daemon, NodeInfo(node=busy), NOW).is_success()
    assert plugin.filter(Pod(name="p"), NodeInfo(node=light), NOW).is_success()


def test_filter_without_node_is_error():
    status = scheduler([]).filter(Pod(name="p"), NodeInfo(), NOW)
    assert status.code == StatusCode.ERROR


def test_score_and_hot_value_clamp():
    idle = Node("idle", {METRIC: f"0,{STAMP}"})
    hot = Node("hot", {METRIC: f"0,{STAMP}", "node_hot_value": f"20,{STAMP}"})
    plugin = scheduler([idle, hot])
    assert plugin.score(Pod(name="p"), "idle", NOW) == MAX_NODE_SCORE
    assert plugin.score(Pod(name="p"), "hot", NOW) == MIN_NODE_SCORE
    with pytest.raises(LookupError):
        plugin.score(Pod(name="p"), "missing", NOW)


def test_new_dynamic_scheduler(tmp_path):
    path = tmp_path / "policy.yaml"
    path.write_text(
        "apiVersion: scheduler.policy.crane.io/v1alpha1\n"
        "kind: DynamicSchedulerPolicy\n"
        "spec:\n"
        "  syncPolicy:\n"
        f"    - name: {METRIC}\n"
        "      period: 3m\n"
    )
    plugin = new_dynamic_scheduler(DynamicArgs(policy_config_path=str(path)), lambda n: NodeInfo())
    assert plugin.name() == "Dynamic"
    assert plugin.policy.spec.sync_period[0].period == timedelta(minutes=3)
    with pytest.raises(TypeError):
        new_dynamic_scheduler(object(), lambda n: NodeInfo())
    with pytest.raises(ValueError):
        new_dynamic_scheduler(DynamicArgs(str(tmp_path / "missing.yaml")), lambda n: NodeInfo())