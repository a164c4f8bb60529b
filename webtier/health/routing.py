"""
Listener routing: path rules forward to InService targets, everything else
gets the listener's fixed default response.
"""

from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import List, Optional, Sequence

from .membership import MembershipStateMachine


@dataclass(frozen=True)
class ListenerRule:
    priority: int
    path_patterns: Sequence[str]

    def matches(self, path: str) -> bool:
        return any(fnmatchcase(path, pattern) for pattern in self.path_patterns)


@dataclass
class RouteDecision:
    action: str  # "forward" or "fixed-response"
    status_code: int
    targets: List[str] = field(default_factory=list)
    body: Optional[str] = None
    rule_priority: Optional[int] = None


class ListenerRouter:
    def __init__(self, machine: MembershipStateMachine, rules: Sequence[ListenerRule],
                 default_status: int = 404, default_body: str = "404: page not found"):
        self.machine = machine
        self.rules = sorted(rules, key=lambda rule: rule.priority)
        self.default_status = default_status
        self.default_body = default_body

    def route(self, path: str) -> RouteDecision:
        """Decide where a request for ``path`` goes."""
        for rule in self.rules:
            if not rule.matches(path):
                continue
            targets = self.machine.routable()
            if not targets:
                return RouteDecision("forward", 503, [], "no healthy targets", rule.priority)
            return RouteDecision("forward", 200, targets, None, rule.priority)

        # The default action does not depend on member health.
        return RouteDecision("fixed-response", self.default_status, [], self.default_body)
