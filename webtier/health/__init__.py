"""
Health checking, target membership and listener routing.
"""

from .config import HealthCheckConfig, parse_matcher, status_matches
from .checker import HttpHealthChecker
from .membership import (
    MemberState, HealthRecord, HealthSnapshot, DrainOutcome, MembershipStateMachine,
)
from .drain import GroupDrainer
from .monitor import HealthMonitor
from .routing import ListenerRule, ListenerRouter, RouteDecision

__all__ = [
    "HealthCheckConfig",
    "parse_matcher",
    "status_matches",
    "HttpHealthChecker",
    "MemberState",
    "HealthRecord",
    "HealthSnapshot",
    "DrainOutcome",
    "MembershipStateMachine",
    "GroupDrainer",
    "HealthMonitor",
    "ListenerRule",
    "ListenerRouter",
    "RouteDecision",
]
