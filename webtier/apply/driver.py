"""
Resource drivers: the boundary between the engine and a provider API.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Tuple

from ..graph.models import KIND_OUTPUTS, ResourceKind
from ..ids import new_physical_id

logger = logging.getLogger(__name__)


class ResourceDriver(ABC):
    """Abstract provider for creating, updating and destroying resources."""

    @abstractmethod
    def create(self, node_id: str, kind: ResourceKind, attributes: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a resource.

        Args:
            node_id: Declared node id
            kind: Resource kind
            attributes: Fully resolved attributes (no references left)

        Returns:
            Outputs of the new resource (at least ``id``)
        """
        pass

    @abstractmethod
    def update(self, node_id: str, kind: ResourceKind, attributes: Dict[str, Any],
               outputs: Dict[str, Any]) -> Dict[str, Any]:
        """Update a resource in place and return its (possibly new) outputs."""
        pass

    @abstractmethod
    def destroy(self, node_id: str, kind: ResourceKind, outputs: Dict[str, Any]) -> None:
        """Destroy the resource identified by ``outputs``."""
        pass


_ID_PREFIX = {
    ResourceKind.SECURITY_GROUP: "sg",
    ResourceKind.LAUNCH_TEMPLATE: "lt",
    ResourceKind.AUTOSCALING_GROUP: "asg",
    ResourceKind.LOAD_BALANCER: "alb",
    ResourceKind.LISTENER: "lsn",
    ResourceKind.LISTENER_RULE: "rule",
    ResourceKind.TARGET_GROUP: "tg",
}


class InMemoryDriver(ResourceDriver):
    """Simulated provider used for dry-run applies and tests.

    Nodes listed in ``fail_on`` raise on create/update; ``fail_on_destroy``
    raises on destroy.
    """

    def __init__(self, region: str = "us-east-2", account_id: str = "123456789012",
                 fail_on: Iterable[str] = (), fail_on_destroy: Iterable[str] = ()):
        self.region = region
        self.account_id = account_id
        self.fail_on = set(fail_on)
        self.fail_on_destroy = set(fail_on_destroy)
        self.resources: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str]] = []
        self._lock = threading.Lock()

    def _record(self, verb: str, node_id: str) -> None:
        with self._lock:
            self.calls.append((verb, node_id))

    def _outputs(self, node_id: str, kind: ResourceKind, attributes: Dict[str, Any]) -> Dict[str, Any]:
        prefix = _ID_PREFIX[kind]
        physical_id = new_physical_id(prefix)
        name = attributes.get("name") or node_id
        arn = f"arn:aws:{kind.value.lower()}:{self.region}:{self.account_id}:{prefix}/{physical_id}"
        outputs = {"id": physical_id, "arn": arn, "name": name}

        if kind is ResourceKind.LOAD_BALANCER:
            outputs["id"] = arn
            outputs["dns_name"] = f"{name}-{physical_id[-10:]}.{self.region}.elb.amazonaws.com"
        elif kind is ResourceKind.LAUNCH_TEMPLATE:
            outputs["latest_version"] = 1
        return {key: outputs[key] for key in KIND_OUTPUTS[kind]}

    def create(self, node_id, kind, attributes):
        self._record("create", node_id)
        if node_id in self.fail_on:
            raise RuntimeError(f"simulated create failure for {node_id}")

        outputs = self._outputs(node_id, kind, attributes)
        with self._lock:
            self.resources[outputs["id"]] = {"node_id": node_id, "kind": kind.value, "attributes": attributes}
        logger.debug(f"Created {kind.value} {node_id} as {outputs['id']}")
        return outputs

    def update(self, node_id, kind, attributes, outputs):
        self._record("update", node_id)
        if node_id in self.fail_on:
            raise RuntimeError(f"simulated update failure for {node_id}")

        physical_id = outputs.get("id")
        with self._lock:
            # Resources from an earlier process are adopted on first touch.
            record = self.resources.setdefault(physical_id, {"node_id": node_id, "kind": kind.value})
            record["attributes"] = attributes

        new_outputs = dict(outputs)
        if kind is ResourceKind.LAUNCH_TEMPLATE:
            new_outputs["latest_version"] = int(outputs.get("latest_version", 1)) + 1
        return new_outputs

    def destroy(self, node_id, kind, outputs):
        self._record("destroy", node_id)
        if node_id in self.fail_on_destroy:
            raise RuntimeError(f"simulated destroy failure for {node_id}")

        with self._lock:
            self.resources.pop(outputs.get("id"), None)
        logger.debug(f"Destroyed {kind.value} {node_id} ({outputs.get('id')})")
