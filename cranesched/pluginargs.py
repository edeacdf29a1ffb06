"""Arguments of the scheduler plugins, with per-version decoding and defaults."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

GROUP_NAME = "kubescheduler.config.k8s.io"
SUPPORTED_VERSIONS = ("v1beta2", "v1beta3")
DEFAULT_POLICY_CONFIG_PATH = "/etc/kubernetes/dynamic-scheduler-policy.yaml"
DEFAULT_NODE_RESOURCES = ("cpu",)

_TYPE_META_FIELDS = {"apiVersion", "kind"}


@dataclass
class DynamicArgs:
    """Arguments of the Dynamic plugin."""

    policy_config_path: str | None = None


@dataclass
class NodeResourceTopologyMatchArgs:
    """Arguments of the NodeResourceTopologyMatch plugin."""

    topology_aware_resources: list[str] = field(default_factory=list)


def set_defaults_dynamic_args(args: DynamicArgs) -> None:
    if args.policy_config_path is None:
        args.policy_config_path = DEFAULT_POLICY_CONFIG_PATH


def set_defaults_node_resource_topology_match_args(args: NodeResourceTopologyMatchArgs) -> None:
    if not args.topology_aware_resources:
        args.topology_aware_resources = list(DEFAULT_NODE_RESOURCES)


def _normalize_version(version: str) -> str:
    prefix = GROUP_NAME + "/"
    if version.startswith(prefix):
        version = version[len(prefix):]
    if version not in SUPPORTED_VERSIONS:
        raise ValueError(f"unsupported plugin args version {version!r}")
    return version


def _fields(data: Mapping[str, Any] | None, allowed: set[str]) -> dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError("plugin args must be an object")
    unknown = sorted(str(key) for key in data if key not in allowed | _TYPE_META_FIELDS)
    if unknown:
        raise ValueError(f"unknown field(s) in plugin args: {', '.join(unknown)}")
    return {key: value for key, value in data.items() if key not in _TYPE_META_FIELDS}


def decode_plugin_args(
    kind: str, data: Mapping[str, Any] | None, version: str
) -> DynamicArgs | NodeResourceTopologyMatchArgs:
    """Decode plugin arguments of the given kind and version, then apply defaults."""
    version = _normalize_version(version)

    if kind == "DynamicArgs":
        fields = _fields(data, {"policyConfigPath"})
        path = fields.get("policyConfigPath")
        if path is not None and not isinstance(path, str):
            raise ValueError("policyConfigPath must be a string")
        # v1beta2 holds a plain string, so an empty one counts as unset.
        if version == "v1beta2" and path == "":
            path = None
        dynamic_args = DynamicArgs(policy_config_path=path)
        set_defaults_dynamic_args(dynamic_args)
        return dynamic_args

    if kind == "NodeResourceTopologyMatchArgs":
        fields = _fields(data, {"topologyAwareResources"})
        resources = fields.get("topologyAwareResources") or []
        if not isinstance(resources, list) or not all(isinstance(r, str) for r in resources):
            raise ValueError("topologyAwareResources must be a list of strings")
        topology_args = NodeResourceTopologyMatchArgs(topology_aware_resources=list(resources))
        set_defaults_node_resource_topology_match_args(topology_args)
        return topology_args

    raise ValueError(f"unknown plugin args kind {kind!r}")