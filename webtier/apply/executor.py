"""
Plan execution with topological-level parallelism.

Every action whose predecessors have succeeded is started; independent
branches run concurrently on a thread pool. A failed action aborts only the
actions that (transitively) require it.
"""

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from ..errors import ActionFailed
from ..graph.builder import ResourceGraph
from ..graph.models import Reference, ResourceKind, map_leaves
from ..planner.plan import Action, ActionType, ObservedState, Plan
from .driver import ResourceDriver

logger = logging.getLogger(__name__)


class NodeStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    NOOP = "noop"


@dataclass
class ApplyResult:
    """Outcome of one pass.

    ``statuses`` covers each node's current instance; ``deposed`` separately
    covers the destroys of old instances left by create-before-destroy
    replacements.
    """
    statuses: Dict[str, NodeStatus] = field(default_factory=dict)
    deposed: Dict[str, NodeStatus] = field(default_factory=dict)
    failures: Dict[str, ActionFailed] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    observed: Dict[str, ObservedState] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)

    @property
    def partial(self) -> bool:
        unfinished = any(status is not NodeStatus.SUCCEEDED for status in self.deposed.values())
        return bool(self.failures or self.skipped or unfinished)

    @property
    def ok(self) -> bool:
        return not self.partial

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "partial": self.partial,
            "statuses": {node_id: status.value for node_id, status in self.statuses.items()},
            "deposed": {node_id: status.value for node_id, status in self.deposed.items()},
            "failed": {node_id: error.reason for node_id, error in self.failures.items()},
            "skipped": list(self.skipped),
            "outputs": dict(self.outputs),
        }


EventCallback = Callable[[str, Dict[str, Any]], None]
DestroyHook = Callable[[str, ResourceKind, Dict[str, Any]], None]


def _terminal(indices: List[int], failed: Set[int], skipped: Set[int]) -> NodeStatus:
    if any(i in failed for i in indices):
        return NodeStatus.FAILED
    if any(i in skipped for i in indices):
        return NodeStatus.SKIPPED
    return NodeStatus.SUCCEEDED


class PlanExecutor:
    """Applies one plan. Owns the observed-state record for the duration of the pass.

    ``before_destroy`` is called with the node id, kind and outputs of every
    instance just before the driver destroys it; it may block, for example
    while an autoscaling group's members drain.
    """

    def __init__(self, plan: Plan, graph: ResourceGraph, driver: ResourceDriver,
                 observed: Optional[Mapping[str, ObservedState]] = None,
                 max_workers: int = 4, event_callback: Optional[EventCallback] = None,
                 before_destroy: Optional[DestroyHook] = None):
        self.plan = plan
        self.graph = graph
        self.driver = driver
        self.max_workers = max_workers
        self.event_callback = event_callback or (lambda event_type, data: None)
        self.before_destroy = before_destroy or (lambda node_id, kind, outputs: None)

        prior = dict(observed or {})
        self._old_outputs = {node_id: dict(state.outputs) for node_id, state in prior.items()}
        self._outputs = {node_id: dict(state.outputs) for node_id, state in prior.items()}
        self._observed = {node_id: ObservedState.from_dict(state.to_dict()) for node_id, state in prior.items()}
        # Deposed instances of a node whose current instance was destroyed
        # ahead of its re-create.
        self._carried: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def _resolve(self, node_id: str):
        inputs: Dict[str, Any] = {}

        def resolve(leaf):
            if not isinstance(leaf, Reference):
                return leaf
            with self._lock:
                outputs = self._outputs.get(leaf.node_id, {})
            if leaf.output not in outputs:
                raise ActionFailed(node_id, reason=f"output {leaf.symbol()} is not available")
            inputs[leaf.symbol()] = outputs[leaf.output]
            return outputs[leaf.output]

        return map_leaves(self.graph.node(node_id).attributes, resolve), inputs

    def _destroy_deposed(self, step: Action) -> None:
        node_id = step.node_id
        with self._lock:
            record = self._observed.get(node_id)
            entries = record.deposed if record is not None else self._carried.get(node_id, [])
            entry = next((e for e in entries if e["outputs"].get("id") == step.instance_id), None)
        outputs = dict(entry["outputs"]) if entry is not None else {"id": step.instance_id}

        kind = ResourceKind(step.kind)
        self.before_destroy(node_id, kind, outputs)
        self.driver.destroy(node_id, kind, outputs)
        if entry is not None:
            with self._lock:
                entries.remove(entry)

    def _run(self, step: Action) -> None:
        node_id = step.node_id
        kind = ResourceKind(step.kind)

        if step.action is ActionType.DESTROY:
            if step.deposed:
                self._destroy_deposed(step)
                return
            outputs = self._old_outputs.get(node_id, {})
            self.before_destroy(node_id, kind, outputs)
            self.driver.destroy(node_id, kind, outputs)
            with self._lock:
                record = self._observed.pop(node_id, None)
                self._outputs.pop(node_id, None)
                if record is not None and record.deposed:
                    self._carried[node_id] = record.deposed
            return

        attributes, inputs = self._resolve(node_id)
        if step.action is ActionType.CREATE:
            outputs = self.driver.create(node_id, kind, attributes)
        else:
            with self._lock:
                current = dict(self._outputs.get(node_id, {}))
            outputs = self.driver.update(node_id, kind, attributes, current)

        with self._lock:
            deposed = self._carried.pop(node_id, [])
            previous = self._observed.get(node_id)
            if previous is not None:
                deposed.extend(previous.deposed)
                if step.action is ActionType.CREATE:
                    # The old instance lives on until its deposed destroy succeeds.
                    deposed.append(previous.as_deposed())
            self._outputs[node_id] = dict(outputs)
            self._observed[node_id] = ObservedState(
                kind=step.kind,
                attributes=step.rendered_attributes,
                outputs=dict(outputs),
                depends_on=self.graph.dependencies(node_id),
                inputs=inputs,
                deposed=deposed,
            )

    def _execute(self, index: int) -> None:
        step = self.plan.actions[index]
        self.event_callback("ACTION_START", {"index": index, **step.to_dict()})
        try:
            self._run(step)
        except ActionFailed:
            raise
        except Exception as e:
            raise ActionFailed(step.node_id, cause=e) from e
        self.event_callback("ACTION_DONE", {"index": index, "action": step.action.value, "node_id": step.node_id})

    def run(self, outputs: Optional[Mapping[str, Reference]] = None) -> ApplyResult:
        """
        Execute the plan.

        Args:
            outputs: Module outputs to resolve after a fully successful apply

        Returns:
            ApplyResult with per-node terminal status and the new observed state
        """
        actions = self.plan.actions
        pending = set(range(len(actions)))
        done, failed, skipped = set(), set(), set()
        failures: Dict[str, ActionFailed] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="webtier-apply") as pool:
            running = {}
            while pending or running:
                for index in sorted(pending):
                    requires = actions[index].requires
                    if any(r in failed or r in skipped for r in requires):
                        pending.discard(index)
                        skipped.add(index)
                        self.event_callback("ACTION_SKIPPED", {"index": index, "node_id": actions[index].node_id})
                    elif all(r in done for r in requires):
                        pending.discard(index)
                        running[pool.submit(self._execute, index)] = index

                if not running:
                    break

                finished, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in finished:
                    index = running.pop(future)
                    error = future.exception()
                    if error is None:
                        done.add(index)
                        continue
                    failed.add(index)
                    if not isinstance(error, ActionFailed):
                        error = ActionFailed(actions[index].node_id, cause=error)
                    failures.setdefault(actions[index].node_id, error)
                    logger.error(str(error))
                    self.event_callback("ACTION_FAILED", {
                        "index": index, "node_id": actions[index].node_id, "reason": error.reason,
                    })

        result = ApplyResult(failures=failures, observed=dict(self._observed))
        for node_id in self.plan.decisions:
            indices = [i for i, step in enumerate(actions) if step.node_id == node_id and not step.deposed]
            if not indices:
                status = NodeStatus.NOOP
            else:
                status = _terminal(indices, failed, skipped)
            result.statuses[node_id] = status
            if status is NodeStatus.SKIPPED:
                result.skipped.append(node_id)

        deposed_indices: Dict[str, List[int]] = {}
        for i, step in enumerate(actions):
            if step.deposed:
                deposed_indices.setdefault(step.node_id, []).append(i)
        for node_id, indices in deposed_indices.items():
            result.deposed[node_id] = _terminal(indices, failed, skipped)

        for node_id, entries in self._carried.items():
            if entries and node_id not in self._observed:
                stranded = ", ".join(str(entry["outputs"].get("id")) for entry in entries)
                logger.warning(f"{node_id} was not re-created; old instances {stranded} are no longer tracked")

        if outputs and result.ok:
            result.outputs = {
                name: self._outputs.get(ref.node_id, {}).get(ref.output)
                for name, ref in outputs.items()
            }

        logger.info(
            f"Apply finished: {len(done)} done, {len(failed)} failed, {len(skipped)} skipped"
        )
        return result


def apply_plan(plan: Plan, graph: ResourceGraph, driver: ResourceDriver,
               observed: Optional[Mapping[str, ObservedState]] = None,
               outputs: Optional[Mapping[str, Reference]] = None,
               max_workers: int = 4, event_callback: Optional[EventCallback] = None,
               before_destroy: Optional[DestroyHook] = None) -> ApplyResult:
    """Apply a plan and return per-node status, new observed state and module outputs."""
    executor = PlanExecutor(plan, graph, driver, observed, max_workers=max_workers,
                            event_callback=event_callback, before_destroy=before_destroy)
    return executor.run(outputs=outputs)
