"""
Reconciliation passes for a stack: resolve, build, plan and apply, with
observed state, module outputs and events persisted under WEBTIER_HOME.
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from .apply import ApplyResult, ResourceDriver, apply_plan
from .datasources import DataSourceProvider
from .errors import WebtierError
from .health import DrainOutcome, HealthMonitor
from .events import emit_event, EventTypes
from .ids import new_run_id
from .planner import Plan, plan, select_scale_in
from .stack import PreparedStack, StackConfig, prepare_stack
from .state import read_observed_state, write_observed_state, write_outputs_json

logger = logging.getLogger(__name__)


def _prepare(config: StackConfig, provider: DataSourceProvider, run_id: str) -> PreparedStack:
    emit_event(config.name, EventTypes.RESOLVE_START, {"run_id": run_id, "region": config.region})
    try:
        prepared = prepare_stack(config, provider)
    except WebtierError as e:
        emit_event(config.name, EventTypes.ERROR, {
            "run_id": run_id,
            "reason": str(e),
            "error": type(e).__name__,
        })
        raise
    emit_event(config.name, EventTypes.RESOLVE_DONE, {
        "run_id": run_id,
        "keys": sorted(prepared.data),
        "resources": len(prepared.graph),
    })
    return prepared


def plan_stack(config: StackConfig, provider: DataSourceProvider,
               force_replace: Iterable[str] = (), run_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Compute a plan for a stack without changing anything.

    Returns:
        Dict with run_id, the prepared stack and the Plan
    """
    run_id = run_id or new_run_id()
    prepared = _prepare(config, provider, run_id)
    observed = read_observed_state(config.name)
    result = plan(prepared.graph, observed, force_replace=force_replace)

    for note in result.annotations:
        emit_event(config.name, EventTypes.PLAN_NOTICE, {
            "run_id": run_id, "code": note.code, "node_id": note.node_id, "message": note.message,
        })
    emit_event(config.name, EventTypes.PLAN_READY, {"run_id": run_id, "summary": result.summary()})

    return {"run_id": run_id, "prepared": prepared, "plan": result, "observed": observed}


def apply_stack(config: StackConfig, provider: DataSourceProvider, driver: ResourceDriver,
                force_replace: Iterable[str] = (), max_workers: int = 4,
                planned: Optional[Dict[str, Any]] = None, monitor: Optional[HealthMonitor] = None,
                force_after: Optional[float] = None) -> Dict[str, Any]:
    """
    Plan and apply a stack.

    Observed state is written after every pass, including partial ones, so
    a re-run only retries what did not converge. Module outputs are written
    only after a fully successful apply.

    With a ``monitor``, destroying an autoscaling group first drains its
    members, waiting at most ``force_after`` seconds (the stack's
    drain_timeout by default) before force-terminating them.
    """
    planned = planned or plan_stack(config, provider, force_replace)
    run_id = planned["run_id"]
    prepared: PreparedStack = planned["prepared"]
    current_plan: Plan = planned["plan"]

    def on_event(event_type: str, data: Dict[str, Any]) -> None:
        emit_event(config.name, event_type, {"run_id": run_id, **data})

    before_destroy = None
    if monitor is not None:
        before_destroy = monitor.drainer(config.drain_timeout if force_after is None else force_after)

    emit_event(config.name, EventTypes.APPLY_START, {"run_id": run_id, "actions": len(current_plan.actions)})
    result: ApplyResult = apply_plan(
        current_plan, prepared.graph, driver, planned["observed"],
        outputs=prepared.outputs, max_workers=max_workers, event_callback=on_event,
        before_destroy=before_destroy,
    )
    write_observed_state(config.name, result.observed, run_id)

    if result.ok:
        write_outputs_json(config.name, result.outputs)
        emit_event(config.name, EventTypes.OUTPUTS_WRITTEN, {"run_id": run_id, "outputs": result.outputs})
        emit_event(config.name, EventTypes.APPLY_DONE, {"run_id": run_id})
    else:
        emit_event(config.name, EventTypes.APPLY_PARTIAL, {
            "run_id": run_id,
            "failed": sorted(result.failures),
            "skipped": result.skipped,
            "deposed": {node_id: status.value for node_id, status in result.deposed.items()},
        })

    return {"run_id": run_id, "plan": current_plan, "result": result}


def scale_in_stack(config: StackConfig, monitor: HealthMonitor, desired: int,
                   terminate: Callable[[str], None], group: Optional[str] = None,
                   force_after: Optional[float] = None) -> List[DrainOutcome]:
    """
    Shrink a group to ``desired`` members using the monitor's health snapshots.

    Unhealthy members are chosen first. Each chosen member drains before
    ``terminate`` is called for it.
    """
    snapshots = [
        snapshot for snapshot in monitor.machine.snapshot().values()
        if group is None or snapshot.group == group
    ]
    chosen = select_scale_in(snapshots, desired)
    emit_event(config.name, EventTypes.SCALE_IN, {"desired": desired, "instances": chosen})
    if not chosen:
        return []

    drainer = monitor.drainer(config.drain_timeout if force_after is None else force_after)
    return drainer.drain(chosen, terminate)
