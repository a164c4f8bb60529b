"""
Attribute diffing and replacement rules per resource kind.
"""

import re
from typing import Any, Dict, Set

from ..graph.models import ResourceKind

# Attributes whose change cannot be applied in place.
REPLACE_ATTRIBUTES: Dict[ResourceKind, Set[str]] = {
    ResourceKind.SECURITY_GROUP: {"name", "description", "vpc_id"},
    ResourceKind.LAUNCH_TEMPLATE: {"name", "image_id", "instance_type", "user_data", "security_groups"},
    ResourceKind.AUTOSCALING_GROUP: {"name"},
    ResourceKind.LOAD_BALANCER: {"name", "internal", "load_balancer_type"},
    ResourceKind.LISTENER: {"load_balancer_arn"},
    ResourceKind.LISTENER_RULE: {"listener_arn"},
    ResourceKind.TARGET_GROUP: {"name", "port", "protocol", "vpc_id"},
}

_TOP_LEVEL = re.compile(r"^[^.\[]+")


class _Missing:
    def __repr__(self):
        return "<missing>"


_MISSING = _Missing()


def top_level(path: str) -> str:
    """``launch_template.id`` -> ``launch_template``; ``subnets[0]`` -> ``subnets``."""
    match = _TOP_LEVEL.match(path)
    return match.group(0) if match else path


def diff_attributes(desired: Dict[str, Any], observed: Dict[str, Any]) -> Set[str]:
    """Names of top-level attributes that differ, including added and removed ones."""
    changed = set()
    for name in set(desired) | set(observed):
        if desired.get(name, _MISSING) != observed.get(name, _MISSING):
            changed.add(name)
    return changed


def requires_replacement(kind: ResourceKind, changed: Set[str]) -> bool:
    return bool(changed & REPLACE_ATTRIBUTES.get(kind, set()))

