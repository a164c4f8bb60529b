"""
Plan application against a resource driver.
"""

from .driver import ResourceDriver, InMemoryDriver
from .executor import ApplyResult, NodeStatus, PlanExecutor, apply_plan

__all__ = [
    "ResourceDriver",
    "InMemoryDriver",
    "ApplyResult",
    "NodeStatus",
    "PlanExecutor",
    "apply_plan",
]
