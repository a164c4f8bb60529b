"""
Error taxonomy for resolution, graph building, rendering, planning and apply.
"""

from typing import Iterable, List, Optional


class WebtierError(Exception):
    """Base class for all engine errors."""


# Data resolution

class ResolutionError(WebtierError):
    """A data-source lookup could not be resolved."""


class LookupNotFound(ResolutionError):
    """No candidate matched a lookup that expects exactly one."""


class AmbiguousLookup(ResolutionError):
    """More than one candidate matched a lookup that expects exactly one."""


class RemoteStateUnavailable(ResolutionError):
    """The referenced cross-stack state backend could not be read."""


# Graph build

class GraphError(WebtierError):
    """The declared resources do not form a valid graph."""


class DuplicateResource(GraphError):
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Duplicate resource id: {node_id}")


class CyclicDependency(GraphError):
    def __init__(self, chain: List[str]):
        self.chain = list(chain)
        super().__init__(f"Dependency cycle: {' -> '.join(self.chain)}")


class UnresolvedReference(GraphError):
    def __init__(self, node_id: str, attribute: str, target: str):
        self.node_id = node_id
        self.attribute = attribute
        self.target = target
        super().__init__(
            f"Resource '{node_id}' attribute '{attribute}' references unknown '{target}'"
        )


# Template render

class MissingVariable(WebtierError):
    def __init__(self, names: Iterable[str]):
        self.names = sorted(set(names))
        super().__init__(f"Template variables not provided: {', '.join(self.names)}")


# Planning

class PlanError(WebtierError):
    """The planner could not produce a trustworthy plan."""


class DependencyCycle(PlanError):
    def __init__(self, nodes: Iterable[str]):
        self.nodes = sorted(nodes)
        super().__init__(f"Cannot order resources, cycle among: {', '.join(self.nodes)}")


class ReplacementRequiresDowntime(UserWarning):
    """Informational: a destroy-before-create replacement leaves a gap."""


# Apply

class ActionFailed(WebtierError):
    def __init__(self, node_id: str, cause: Optional[BaseException] = None, reason: str = ""):
        self.node_id = node_id
        self.cause = cause
        self.reason = reason or (str(cause) if cause else "unknown failure")
        super().__init__(f"Action on '{node_id}' failed: {self.reason}")


# Membership

class InvalidTransition(WebtierError, ValueError):
    def __init__(self, instance_id: str, current: str, target: str):
        self.instance_id = instance_id
        self.current = current
        self.target = target
        super().__init__(f"Instance {instance_id}: cannot move from {current} to {target}")
