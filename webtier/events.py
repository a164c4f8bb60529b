"""
Event logging utilities for NDJSON format.
"""

import json
from datetime import datetime
from typing import Any, Dict, Optional

from .state import create_stack_dir, get_stack_dir


def emit_event(stack_name: str, event_type: str, data: Dict[str, Any]) -> None:
    """
    Emit an event to the stack's events.ndjson file.

    Args:
        stack_name: Stack name
        event_type: Event type (e.g., "PLAN_READY", "ACTION_FAILED")
        data: Event data
    """
    events_file = create_stack_dir(stack_name) / "events.ndjson"

    event = {
        "ts": datetime.now().isoformat(),
        "type": event_type,
        "data": data
    }

    with open(events_file, "a") as f:
        f.write(json.dumps(event, default=str) + "\n")
        f.flush()


def read_events(stack_name: str) -> list[Dict[str, Any]]:
    """
    Read all events from a stack's events.ndjson file.

    Args:
        stack_name: Stack name

    Returns:
        List of events
    """
    events_file = get_stack_dir(stack_name) / "events.ndjson"

    if not events_file.exists():
        return []

    events = []
    with open(events_file, "r") as f:
        for line in f:
            line = line.strip()
            if line:
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    continue  # Skip malformed lines

    return events


def get_last_event(stack_name: str) -> Optional[Dict[str, Any]]:
    """Get the last event from a stack's log, or None."""
    events = read_events(stack_name)
    return events[-1] if events else None


def get_status_from_events(stack_name: str) -> str:
    """
    Determine stack status from the last event.

    Args:
        stack_name: Stack name

    Returns:
        Status string
    """
    last_event = get_last_event(stack_name)
    if not last_event:
        return "unknown"

    status_map = {
        EventTypes.RESOLVE_START: "resolving",
        EventTypes.RESOLVE_DONE: "resolved",
        EventTypes.PLAN_READY: "planned",
        EventTypes.APPLY_START: "applying",
        EventTypes.ACTION_START: "applying",
        EventTypes.ACTION_DONE: "applying",
        EventTypes.ACTION_FAILED: "applying",
        EventTypes.ACTION_SKIPPED: "applying",
        EventTypes.APPLY_DONE: "converged",
        EventTypes.APPLY_PARTIAL: "partially_applied",
        EventTypes.ERROR: "failed",
        EventTypes.SCALE_IN: "scaling",
    }

    return status_map.get(last_event.get("type", ""), "unknown")


class EventTypes:
    RESOLVE_START = "RESOLVE_START"
    RESOLVE_DONE = "RESOLVE_DONE"
    PLAN_READY = "PLAN_READY"
    PLAN_NOTICE = "PLAN_NOTICE"
    APPLY_START = "APPLY_START"
    ACTION_START = "ACTION_START"
    ACTION_DONE = "ACTION_DONE"
    ACTION_FAILED = "ACTION_FAILED"
    ACTION_SKIPPED = "ACTION_SKIPPED"
    APPLY_DONE = "APPLY_DONE"
    APPLY_PARTIAL = "APPLY_PARTIAL"
    OUTPUTS_WRITTEN = "OUTPUTS_WRITTEN"
    ERROR = "ERROR"
    # Membership events
    MEMBER_TRANSITION = "MEMBER_TRANSITION"
    DRAIN_FORCED = "DRAIN_FORCED"
    SCALE_IN = "SCALE_IN"
