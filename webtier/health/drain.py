"""
Draining members ahead of plan-driven destroys and scale-in.
"""

import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..graph.models import ResourceKind
from .membership import DrainOutcome, MembershipStateMachine, MemberState

logger = logging.getLogger(__name__)

_DRAINABLE = (MemberState.IN_SERVICE, MemberState.UNHEALTHY)


class GroupDrainer:
    """
    Drains instances and blocks until each one terminates.

    Used as the executor's ``before_destroy`` hook: destroying an
    autoscaling group first drains every member registered under the
    group's physical id. Each wait ends when the drain finishes or, at the
    latest, ``force_after`` seconds after draining began.
    """

    def __init__(self, machine: MembershipStateMachine, force_after: float,
                 on_terminated: Optional[Callable[[DrainOutcome], None]] = None):
        if force_after < 0:
            raise ValueError("force_after must be >= 0")
        self.machine = machine
        self.force_after = force_after
        self.on_terminated = on_terminated or (lambda outcome: None)

    def members(self, group: str) -> List[str]:
        return sorted(
            snapshot.instance_id for snapshot in self.machine.snapshot().values()
            if snapshot.group == group
        )

    def drain(self, instance_ids: Iterable[str],
              terminate: Optional[Callable[[str], None]] = None) -> List[DrainOutcome]:
        """Drain the given instances together; returns one outcome per drained instance."""
        deadline = time.monotonic() + self.force_after
        snapshots = self.machine.snapshot()
        draining = []
        for instance_id in instance_ids:
            snapshot = snapshots.get(instance_id)
            if snapshot is None:
                continue
            if snapshot.state in _DRAINABLE:
                self.machine.begin_drain(instance_id)
            elif snapshot.state is not MemberState.DRAINING:
                # Never in rotation, so there is nothing to drain.
                logger.info(f"Instance {instance_id} is {snapshot.state.value}; not draining")
                continue
            draining.append(instance_id)

        outcomes = []
        for instance_id in draining:
            outcome = self.machine.wait_for_drain(instance_id, max(0.0, deadline - time.monotonic()))
            if terminate is not None:
                terminate(instance_id)
            self.on_terminated(outcome)
            outcomes.append(outcome)
        return outcomes

    def __call__(self, node_id: str, kind: ResourceKind, outputs: Dict[str, Any]) -> None:
        if kind is not ResourceKind.AUTOSCALING_GROUP:
            return
        members = self.members(outputs.get("id"))
        if not members:
            return
        logger.info(f"Draining {len(members)} members of {node_id} ({outputs.get('id')}) before destroy")
        outcomes = self.drain(members)
        forced = [outcome.instance_id for outcome in outcomes if outcome.forced]
        if forced:
            logger.warning(f"Force-terminated {', '.join(forced)} while destroying {node_id}")
