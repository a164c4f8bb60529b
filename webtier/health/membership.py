"""
Health-driven target group membership.

Each autoscaling-group instance has a HealthRecord that moves through
Initializing -> InService -> Unhealthy -> Draining -> Terminated as check
results arrive. Records are only ever mutated here; callers get frozen
snapshots.
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from ..errors import InvalidTransition
from .config import HealthCheckConfig

logger = logging.getLogger(__name__)


class MemberState(Enum):
    INITIALIZING = "Initializing"
    IN_SERVICE = "InService"
    UNHEALTHY = "Unhealthy"
    DRAINING = "Draining"
    TERMINATED = "Terminated"


ALLOWED_TRANSITIONS = {
    MemberState.INITIALIZING: [MemberState.IN_SERVICE],
    MemberState.IN_SERVICE: [MemberState.UNHEALTHY, MemberState.DRAINING],
    MemberState.UNHEALTHY: [MemberState.IN_SERVICE, MemberState.DRAINING],
    MemberState.DRAINING: [MemberState.TERMINATED],
    MemberState.TERMINATED: [],
}


@dataclass
class HealthRecord:
    instance_id: str
    group: Optional[str] = None  # physical id of the autoscaling group that launched it
    state: MemberState = MemberState.INITIALIZING
    consecutive_successes: int = 0
    consecutive_failures: int = 0
    in_flight: Optional[int] = None  # None until a connection count is observed
    drain_started_at: Optional[float] = None


@dataclass(frozen=True)
class HealthSnapshot:
    instance_id: str
    state: MemberState
    group: Optional[str]
    consecutive_successes: int
    consecutive_failures: int
    in_flight: Optional[int]
    drain_started_at: Optional[float]

    def to_dict(self) -> dict:
        data = asdict(self)
        data["state"] = self.state.value
        return data


@dataclass(frozen=True)
class DrainOutcome:
    instance_id: str
    reason: str  # "connections_drained", "drain_timeout" or "forced"

    @property
    def forced(self) -> bool:
        return self.reason == "forced"


TransitionCallback = Callable[[str, MemberState, MemberState], None]


class MembershipStateMachine:
    """Thread-safe owner of every HealthRecord in one target group."""

    def __init__(self, config: HealthCheckConfig, drain_timeout: float,
                 clock: Callable[[], float] = time.monotonic,
                 on_transition: Optional[TransitionCallback] = None,
                 poll_interval: float = 0.05, max_outcomes: int = 1024):
        if drain_timeout < 0:
            raise ValueError("drain_timeout must be >= 0")
        if max_outcomes < 1:
            raise ValueError("max_outcomes must be >= 1")
        self.config = config
        self.drain_timeout = drain_timeout
        self.poll_interval = poll_interval
        self._clock = clock
        self._on_transition = on_transition
        self._records: Dict[str, HealthRecord] = {}
        # Recent outcomes, oldest first, for late wait_for_drain callers.
        self._outcomes: "OrderedDict[str, DrainOutcome]" = OrderedDict()
        self._max_outcomes = max_outcomes
        self._terminated_count = 0
        self._cond = threading.Condition()
        self._transition_count = 0
        self._check_failures = 0

    # Internal helpers; callers hold self._cond.

    def _get(self, instance_id: str) -> HealthRecord:
        try:
            return self._records[instance_id]
        except KeyError:
            raise KeyError(f"Unknown instance: {instance_id}") from None

    def _transition(self, record: HealthRecord, target: MemberState, fired: List) -> None:
        if target not in ALLOWED_TRANSITIONS[record.state]:
            raise InvalidTransition(record.instance_id, record.state.value, target.value)
        previous = record.state
        record.state = target
        self._transition_count += 1
        fired.append((record.instance_id, previous, target))
        logger.info(f"Instance {record.instance_id}: {previous.value} -> {target.value}")

    def _terminate(self, record: HealthRecord, reason: str, fired: List) -> None:
        self._transition(record, MemberState.TERMINATED, fired)
        del self._records[record.instance_id]
        self._terminated_count += 1
        self._outcomes[record.instance_id] = DrainOutcome(record.instance_id, reason)
        self._outcomes.move_to_end(record.instance_id)
        while len(self._outcomes) > self._max_outcomes:
            self._outcomes.popitem(last=False)
        self._cond.notify_all()

    def _evaluate_drain(self, record: HealthRecord, fired: List) -> bool:
        if record.state is not MemberState.DRAINING:
            return False
        if record.in_flight == 0:
            self._terminate(record, "connections_drained", fired)
            return True
        if self._clock() - record.drain_started_at >= self.drain_timeout:
            self._terminate(record, "drain_timeout", fired)
            return True
        return False

    def _fire(self, fired: List) -> None:
        if self._on_transition is None:
            return
        for instance_id, previous, target in fired:
            self._on_transition(instance_id, previous, target)

    @staticmethod
    def _snapshot(record: HealthRecord) -> HealthSnapshot:
        return HealthSnapshot(
            instance_id=record.instance_id,
            state=record.state,
            group=record.group,
            consecutive_successes=record.consecutive_successes,
            consecutive_failures=record.consecutive_failures,
            in_flight=record.in_flight,
            drain_started_at=record.drain_started_at,
        )

    # Public API

    def register(self, instance_id: str, group: Optional[str] = None) -> HealthSnapshot:
        """Create a record for a newly launched instance, optionally tagged with its group."""
        with self._cond:
            if instance_id in self._records:
                raise ValueError(f"Instance already registered: {instance_id}")
            record = HealthRecord(instance_id, group)
            self._records[instance_id] = record
            self._outcomes.pop(instance_id, None)
            logger.info(f"Instance {instance_id} registered")
            return self._snapshot(record)

    def has(self, instance_id: str) -> bool:
        with self._cond:
            return instance_id in self._records

    def record_check(self, instance_id: str, passed: bool) -> HealthSnapshot:
        """
        Apply one health-check outcome.

        Checks against Draining instances are ignored; they are leaving
        rotation regardless of health.
        """
        fired: List = []
        with self._cond:
            record = self._get(instance_id)
            if record.state is MemberState.DRAINING:
                return self._snapshot(record)

            if passed:
                record.consecutive_successes += 1
                record.consecutive_failures = 0
            else:
                record.consecutive_failures += 1
                record.consecutive_successes = 0
                self._check_failures += 1

            if (record.state in (MemberState.INITIALIZING, MemberState.UNHEALTHY)
                    and record.consecutive_successes >= self.config.healthy_threshold):
                self._transition(record, MemberState.IN_SERVICE, fired)
            elif (record.state is MemberState.IN_SERVICE
                    and record.consecutive_failures >= self.config.unhealthy_threshold):
                self._transition(record, MemberState.UNHEALTHY, fired)

            snapshot = self._snapshot(record)
        self._fire(fired)
        return snapshot

    def begin_drain(self, instance_id: str) -> HealthSnapshot:
        """Take an InService or Unhealthy instance out of rotation ahead of termination."""
        fired: List = []
        with self._cond:
            record = self._get(instance_id)
            self._transition(record, MemberState.DRAINING, fired)
            record.drain_started_at = self._clock()
            snapshot = self._snapshot(record)
        self._fire(fired)
        return snapshot

    def set_in_flight(self, instance_id: str, count: int) -> None:
        """Report the observed number of in-flight connections to an instance."""
        if count < 0:
            raise ValueError("in-flight count must be >= 0")
        fired: List = []
        with self._cond:
            record = self._get(instance_id)
            record.in_flight = count
            self._evaluate_drain(record, fired)
            self._cond.notify_all()
        self._fire(fired)

    def tick(self) -> List[DrainOutcome]:
        """Finish every drain whose timeout elapsed or whose connections reached zero."""
        fired: List = []
        finished = []
        with self._cond:
            for record in list(self._records.values()):
                if self._evaluate_drain(record, fired):
                    finished.append(self._outcomes[record.instance_id])
        self._fire(fired)
        return finished

    def wait_for_drain(self, instance_id: str, force_after: float) -> DrainOutcome:
        """
        Block until a Draining instance terminates.

        Returns when the drain completes (timeout or zero in-flight
        connections) or, if ``force_after`` seconds pass first, after
        force-terminating the instance.

        Raises:
            InvalidTransition: The instance is not Draining
        """
        fired: List = []
        with self._cond:
            if instance_id not in self._records:
                outcome = self._outcomes.get(instance_id)
                if outcome is None:
                    raise KeyError(f"Unknown instance: {instance_id}")
                return outcome

            record = self._records[instance_id]
            if record.state is not MemberState.DRAINING:
                raise InvalidTransition(instance_id, record.state.value, MemberState.TERMINATED.value)

            deadline = self._clock() + force_after
            while instance_id in self._records:
                if self._evaluate_drain(record, fired):
                    break
                now = self._clock()
                if now >= deadline:
                    logger.warning(f"Instance {instance_id}: drain not finished after {force_after}s, forcing")
                    self._terminate(record, "forced", fired)
                    break
                drain_deadline = record.drain_started_at + self.drain_timeout
                remaining = max(0.0, min(deadline, drain_deadline) - now)
                self._cond.wait(timeout=max(min(remaining, self.poll_interval), 0.001))

            outcome = self._outcomes[instance_id]
        self._fire(fired)
        return outcome

    def snapshot(self) -> Dict[str, HealthSnapshot]:
        """Read-only copy of every live record."""
        with self._cond:
            return {instance_id: self._snapshot(record) for instance_id, record in self._records.items()}

    def routable(self) -> List[str]:
        """Instances eligible for traffic: InService only."""
        with self._cond:
            return sorted(
                instance_id for instance_id, record in self._records.items()
                if record.state is MemberState.IN_SERVICE
            )

    def metrics(self) -> Dict[str, object]:
        with self._cond:
            counts = {state.value: 0 for state in MemberState}
            for record in self._records.values():
                counts[record.state.value] += 1
            counts[MemberState.TERMINATED.value] = self._terminated_count
            return {
                "members": counts,
                "transitions": self._transition_count,
                "check_failures": self._check_failures,
            }
