"""
Planner: orders resources and turns desired-vs-observed diffs into actions.

The planner is pure over its inputs. It never talks to a provider, so a plan
can always be computed as a dry run.
"""

import heapq
import logging
from typing import Dict, Iterable, List, Mapping, Optional, Set

from ..errors import DependencyCycle, ReplacementRequiresDowntime
from ..graph.builder import ResourceGraph
from ..graph.models import Reference, symbolic
from .diff import diff_attributes, requires_replacement, top_level
from .plan import Action, ActionType, ObservedState, Plan, PlanAnnotation

logger = logging.getLogger(__name__)


def topological_order(graph: ResourceGraph) -> List[str]:
    """
    Order nodes so every node comes after everything it depends on.

    Kahn's algorithm with the ready set keyed on declaration order, so
    unconstrained nodes keep the order they were declared in.

    Raises:
        DependencyCycle: Not every node could be ordered
    """
    indegree = {node_id: len(graph.dependencies(node_id)) for node_id in graph.node_ids}
    ready = [(graph.declaration_index(node_id), node_id) for node_id, count in indegree.items() if count == 0]
    heapq.heapify(ready)

    order = []
    while ready:
        _, node_id = heapq.heappop(ready)
        order.append(node_id)
        for dependent in graph.dependents(node_id):
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(ready, (graph.declaration_index(dependent), dependent))

    if len(order) != len(graph):
        raise DependencyCycle(node_id for node_id, count in indegree.items() if count > 0)

    return order


def _input_moved(ref: Reference, prior: ObservedState, producer: Optional[ObservedState]) -> bool:
    """True when the value last applied for ``ref`` is not the producer's current output."""
    symbol = ref.symbol()
    if symbol not in prior.inputs:
        return False
    if producer is None:
        return True
    return producer.outputs.get(ref.output) != prior.inputs[symbol]


def _decide(graph: ResourceGraph, node_id: str, desired: Dict, prior: Optional[ObservedState],
            decisions: Dict[str, ActionType], force_replace: Set[str],
            observed: Mapping[str, ObservedState]):
    node = graph.node(node_id)
    if prior is None:
        return ActionType.CREATE, sorted(desired)

    changed = diff_attributes(desired, prior.attributes)

    # Dependents of a replaced node must be re-pointed at the new instance,
    # including one replaced by an earlier pass that stopped short.
    for path, ref in graph.references(node_id):
        if decisions.get(ref.node_id) is ActionType.REPLACE:
            changed.add(top_level(path))
        elif _input_moved(ref, prior, observed.get(ref.node_id)):
            changed.add(top_level(path))

    if prior.kind != node.kind.value or node_id in force_replace:
        return ActionType.REPLACE, sorted(changed)
    if not changed:
        return ActionType.NOOP, []
    if requires_replacement(node.kind, changed):
        return ActionType.REPLACE, sorted(changed)
    return ActionType.UPDATE, sorted(changed)


def _orphan_order(orphans: Mapping[str, ObservedState]) -> List[str]:
    """Destroy order for removed nodes: dependents before what they depended on."""
    remaining_dependents = {node_id: 0 for node_id in orphans}
    for state in orphans.values():
        for dep in state.depends_on:
            if dep in remaining_dependents:
                remaining_dependents[dep] += 1

    ready = sorted(node_id for node_id, count in remaining_dependents.items() if count == 0)
    order = []
    while ready:
        node_id = ready.pop(0)
        order.append(node_id)
        for dep in orphans[node_id].depends_on:
            if dep in remaining_dependents:
                remaining_dependents[dep] -= 1
                if remaining_dependents[dep] == 0:
                    ready.append(dep)
                    ready.sort()

    # A corrupt state file can record a cycle; destroy what is left by name.
    order.extend(sorted(node_id for node_id in orphans if node_id not in order))
    return order


def plan(graph: ResourceGraph, observed: Optional[Mapping[str, ObservedState]] = None,
         force_replace: Iterable[str] = ()) -> Plan:
    """
    Compute an ordered plan that moves observed state to the declared state.

    Args:
        graph: Declared resource graph
        observed: Observed state per node id, empty or None on the first run
        force_replace: Node ids to replace even when unchanged

    Returns:
        Plan with ordered actions, per-node decisions and annotations

    Raises:
        DependencyCycle: Defensive re-check; the graph builder rejects cycles first
    """
    observed = dict(observed or {})
    force_replace = set(force_replace)
    order = topological_order(graph)

    result = Plan(order=order)
    desired = {node_id: symbolic(graph.node(node_id).attributes) for node_id in order}
    by_node: Dict[str, List[int]] = {}
    ready_index: Dict[str, int] = {}
    deposed: List[str] = []

    def append(step: Action) -> int:
        result.actions.append(step)
        index = len(result.actions) - 1
        by_node.setdefault(step.node_id, []).append(index)
        return index

    for node_id in order:
        node = graph.node(node_id)
        prior = observed.get(node_id)
        decision, changed = _decide(graph, node_id, desired[node_id], prior, result.decisions,
                                    force_replace, observed)
        result.decisions[node_id] = decision
        if changed:
            result.changed_attributes[node_id] = changed

        if decision is ActionType.NOOP:
            continue

        requires = tuple(sorted(ready_index[dep] for dep in graph.dependencies(node_id) if dep in ready_index))
        kind = node.kind.value

        if decision in (ActionType.CREATE, ActionType.UPDATE):
            ready_index[node_id] = append(Action(decision, node_id, kind, desired[node_id], requires=requires))

        elif node.create_before_destroy:
            ready_index[node_id] = append(Action(
                ActionType.CREATE, node_id, kind, desired[node_id], replacing=True, requires=requires,
            ))
            deposed.append(node_id)

        else:
            destroy_index = append(Action(
                ActionType.DESTROY, node_id, prior.kind, prior.attributes, replacing=True, requires=requires,
            ))
            ready_index[node_id] = append(Action(
                ActionType.CREATE, node_id, kind, desired[node_id], replacing=True,
                requires=tuple(sorted(requires + (destroy_index,))),
            ))
            message = f"{node_id} is replaced destroy-before-create; dependents are briefly unavailable"
            result.annotations.append(PlanAnnotation(ReplacementRequiresDowntime.__name__, node_id, message))
            logger.warning(message)

    def append_deposed(node_id: str, entries: List[Dict], requires: Set[int]) -> List[int]:
        return [
            append(Action(
                ActionType.DESTROY, node_id, entry["kind"], entry["attributes"], replacing=True,
                deposed=True, requires=tuple(sorted(requires)), instance_id=entry["outputs"].get("id"),
            ))
            for entry in entries
        ]

    # Old instances go only after every dependent points at the replacement.
    for node_id in reversed(order):
        prior = observed.get(node_id)
        if prior is None:
            continue
        entries = list(prior.deposed)
        if node_id in deposed:
            entries.append(prior.as_deposed())
        if not entries:
            continue
        requires = set(by_node.get(node_id, ()))
        for dependent in graph.dependents(node_id):
            requires.update(by_node.get(dependent, ()))
        append_deposed(node_id, entries, requires)

    orphans = {node_id: state for node_id, state in observed.items() if node_id not in graph}
    for node_id in _orphan_order(orphans):
        requires = set()
        for other_id, state in observed.items():
            if node_id in state.depends_on:
                requires.update(by_node.get(other_id, ()))
        state = orphans[node_id]
        requires.update(append_deposed(node_id, state.deposed, requires))
        result.decisions[node_id] = ActionType.DESTROY
        append(Action(ActionType.DESTROY, node_id, state.kind, state.attributes, requires=tuple(sorted(requires))))

    logger.info(f"Planned {len(result.actions)} actions: {result.summary()}")
    return result
