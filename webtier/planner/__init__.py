"""
Planner / reconciler: ordering, diffing and lifecycle-aware action lists.
"""

from .plan import Action, ActionType, ObservedState, Plan, PlanAnnotation
from .diff import REPLACE_ATTRIBUTES, diff_attributes
from .planner import plan, topological_order
from .scale import select_scale_in

__all__ = [
    "Action",
    "ActionType",
    "ObservedState",
    "Plan",
    "PlanAnnotation",
    "REPLACE_ATTRIBUTES",
    "diff_attributes",
    "plan",
    "select_scale_in",
    "topological_order",
]
