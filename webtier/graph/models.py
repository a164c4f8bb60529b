"""
Resource node and reference types.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, Tuple


class ResourceKind(Enum):
    """Kinds of resource a web tier is made of."""
    SECURITY_GROUP = "SecurityGroup"
    LAUNCH_TEMPLATE = "LaunchTemplate"
    AUTOSCALING_GROUP = "AutoscalingGroup"
    LOAD_BALANCER = "LoadBalancer"
    LISTENER = "Listener"
    LISTENER_RULE = "ListenerRule"
    TARGET_GROUP = "TargetGroup"


# Outputs each kind publishes once applied; references may only name these.
KIND_OUTPUTS: Dict[ResourceKind, Tuple[str, ...]] = {
    ResourceKind.SECURITY_GROUP: ("id", "arn", "name"),
    ResourceKind.LAUNCH_TEMPLATE: ("id", "arn", "name", "latest_version"),
    ResourceKind.AUTOSCALING_GROUP: ("id", "arn", "name"),
    ResourceKind.LOAD_BALANCER: ("id", "arn", "name", "dns_name"),
    ResourceKind.LISTENER: ("id", "arn", "name"),
    ResourceKind.LISTENER_RULE: ("id", "arn", "name"),
    ResourceKind.TARGET_GROUP: ("id", "arn", "name"),
}


class Lifecycle(Enum):
    """Replacement policy of a node."""
    DESTROY_BEFORE_CREATE = "destroy_before_create"
    CREATE_BEFORE_DESTROY = "create_before_destroy"


@dataclass(frozen=True)
class Reference:
    """Points at an output of another node in the same graph."""
    node_id: str
    output: str = "id"

    def symbol(self) -> str:
        return "${" + f"{self.node_id}.{self.output}" + "}"


@dataclass(frozen=True)
class DataRef:
    """Points at a resolved data-source value."""
    key: str


@dataclass
class ResourceNode:
    kind: ResourceKind
    node_id: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    lifecycle: Lifecycle = Lifecycle.DESTROY_BEFORE_CREATE

    @property
    def create_before_destroy(self) -> bool:
        return self.lifecycle is Lifecycle.CREATE_BEFORE_DESTROY


def walk_leaves(value: Any, path: str = "") -> Iterator[Tuple[str, Any]]:
    """Yield ``(path, leaf)`` for every leaf of nested dicts/lists/tuples."""
    if isinstance(value, dict):
        for key, item in value.items():
            yield from walk_leaves(item, f"{path}.{key}" if path else str(key))
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            yield from walk_leaves(item, f"{path}[{index}]")
    else:
        yield path, value


def map_leaves(value: Any, fn) -> Any:
    """Return a copy of nested dicts/lists with ``fn`` applied to every leaf."""
    if isinstance(value, dict):
        return {key: map_leaves(item, fn) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [map_leaves(item, fn) for item in value]
    return fn(value)


def symbolic(value: Any) -> Any:
    """Render references as ``${node.output}`` strings, giving a JSON-comparable form."""
    return map_leaves(value, lambda leaf: leaf.symbol() if isinstance(leaf, Reference) else leaf)
