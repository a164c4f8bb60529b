"""
Plan and observed-state data structures.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ActionType(Enum):
    CREATE = "Create"
    UPDATE = "Update"
    REPLACE = "Replace"
    DESTROY = "Destroy"
    NOOP = "No-op"


@dataclass(frozen=True)
class Action:
    """One ordered step of a plan.

    ``replacing`` marks the Create/Destroy halves of a replacement; ``deposed``
    marks the Destroy of the old instance in a create-before-destroy
    replacement, and ``instance_id`` names the old instance it removes.
    ``requires`` holds indices of earlier actions that must succeed first.
    """
    action: ActionType
    node_id: str
    kind: str
    rendered_attributes: Dict[str, Any]
    replacing: bool = False
    deposed: bool = False
    requires: Tuple[int, ...] = ()
    instance_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "action": self.action.value,
            "node_id": self.node_id,
            "rendered_attributes": self.rendered_attributes,
        }
        if self.replacing:
            data["replacing"] = True
        if self.deposed:
            data["deposed"] = True
            data["instance_id"] = self.instance_id
        return data


@dataclass(frozen=True)
class PlanAnnotation:
    code: str
    node_id: str
    message: str


@dataclass
class Plan:
    actions: List[Action] = field(default_factory=list)
    decisions: Dict[str, ActionType] = field(default_factory=dict)
    order: List[str] = field(default_factory=list)
    annotations: List[PlanAnnotation] = field(default_factory=list)
    changed_attributes: Dict[str, List[str]] = field(default_factory=dict)

    def is_noop(self) -> bool:
        return not self.actions

    def summary(self) -> Dict[str, int]:
        counts = {action_type.value: 0 for action_type in ActionType}
        for decision in self.decisions.values():
            counts[decision.value] += 1
        return counts

    def index_of(self, node_id: str, action: ActionType, deposed: bool = False) -> Optional[int]:
        for i, step in enumerate(self.actions):
            if step.node_id == node_id and step.action is action and step.deposed == deposed:
                return i
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "actions": [step.to_dict() for step in self.actions],
            "decisions": {node_id: decision.value for node_id, decision in self.decisions.items()},
            "summary": self.summary(),
            "annotations": [
                {"code": note.code, "node_id": note.node_id, "message": note.message}
                for note in self.annotations
            ],
        }


@dataclass
class ObservedState:
    """What the last successful apply left behind for one node.

    ``inputs`` holds the value each reference resolved to when the node was
    last created or updated, keyed by ``${node.output}``. ``deposed`` lists
    old instances of a create-before-destroy replacement whose destroy has
    not succeeded yet, each as ``{"kind", "attributes", "outputs"}``.
    """
    kind: str
    attributes: Dict[str, Any]
    outputs: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)
    inputs: Dict[str, Any] = field(default_factory=dict)
    deposed: List[Dict[str, Any]] = field(default_factory=list)

    def as_deposed(self) -> Dict[str, Any]:
        return {"kind": self.kind, "attributes": self.attributes, "outputs": dict(self.outputs)}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "attributes": self.attributes,
            "outputs": self.outputs,
            "depends_on": list(self.depends_on),
            "inputs": dict(self.inputs),
            "deposed": [dict(entry) for entry in self.deposed],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ObservedState":
        return cls(
            kind=data["kind"],
            attributes=data.get("attributes", {}),
            outputs=data.get("outputs", {}),
            depends_on=list(data.get("depends_on", [])),
            inputs=dict(data.get("inputs", {})),
            deposed=[dict(entry) for entry in data.get("deposed", [])],
        )
