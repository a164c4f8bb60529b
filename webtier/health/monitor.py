"""
Background health monitoring: one check loop per instance plus a drain ticker.
"""

import logging
import threading
from typing import Any, Callable, Dict, Optional

from .checker import HttpHealthChecker
from .drain import GroupDrainer
from .membership import DrainOutcome, MembershipStateMachine

logger = logging.getLogger(__name__)


class HealthMonitor:
    """Runs periodic health checks and feeds the outcomes to the state machine."""

    def __init__(self, machine: MembershipStateMachine, checker: HttpHealthChecker, traffic_port: int,
                 interval: Optional[float] = None, drain_tick: float = 1.0,
                 event_callback: Optional[Callable[[str, Dict[str, Any]], None]] = None):
        self.machine = machine
        self.checker = checker
        self.traffic_port = traffic_port
        self.interval = interval if interval is not None else machine.config.interval
        self.drain_tick = drain_tick
        self.event_callback = event_callback or (lambda event_type, data: None)
        self.targets: Dict[str, str] = {}
        self.active_threads: Dict[str, threading.Thread] = {}
        self._target_stops: Dict[str, threading.Event] = {}
        self.stop_event = threading.Event()
        self._drain_thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the drain ticker."""
        if self._drain_thread is not None:
            return

        def drain_worker():
            while not self.stop_event.is_set():
                for outcome in self.machine.tick():
                    self._on_terminated(outcome)
                self.stop_event.wait(self.drain_tick)

        self._drain_thread = threading.Thread(target=drain_worker, name="webtier-drain", daemon=True)
        self._drain_thread.start()

    def add_target(self, instance_id: str, host: str, group: Optional[str] = None) -> None:
        """Register a launched instance of ``group`` and start checking it."""
        self.machine.register(instance_id, group)
        self.targets[instance_id] = host
        target_stop = threading.Event()
        self._target_stops[instance_id] = target_stop

        def check_worker():
            while not (self.stop_event.is_set() or target_stop.is_set()):
                if not self.machine.has(instance_id):
                    break
                passed = self.checker.check(host, self.traffic_port)
                try:
                    self.machine.record_check(instance_id, passed)
                except KeyError:
                    break  # terminated between the check and the record
                target_stop.wait(self.interval)

        thread = threading.Thread(target=check_worker, name=f"webtier-check-{instance_id}", daemon=True)
        self.active_threads[instance_id] = thread
        thread.start()

    def _on_terminated(self, outcome: DrainOutcome) -> None:
        stop = self._target_stops.pop(outcome.instance_id, None)
        if stop is not None:
            stop.set()
        self.targets.pop(outcome.instance_id, None)
        self.active_threads.pop(outcome.instance_id, None)
        event_type = "DRAIN_FORCED" if outcome.forced else "MEMBER_TRANSITION"
        self.event_callback(event_type, {"instance_id": outcome.instance_id, "reason": outcome.reason})

    def scale_in(self, instance_id: str, terminate: Callable[[str], None], force_after: float) -> DrainOutcome:
        """
        Drain an instance and then terminate it.

        Termination waits for the drain to finish or, at most,
        ``force_after`` seconds.
        """
        self.machine.begin_drain(instance_id)
        outcome = self.machine.wait_for_drain(instance_id, force_after)
        terminate(instance_id)
        self._on_terminated(outcome)
        return outcome

    def drainer(self, force_after: float) -> GroupDrainer:
        """Destroy hook that drains a group's members, reporting terminations as events."""
        return GroupDrainer(self.machine, force_after, on_terminated=self._on_terminated)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop every worker thread."""
        self.stop_event.set()
        for stop in self._target_stops.values():
            stop.set()
        for thread in list(self.active_threads.values()):
            thread.join(timeout=timeout)
        if self._drain_thread is not None:
            self._drain_thread.join(timeout=timeout)
