"""
State management for stacks: observed resource state and module outputs.
"""

import json
import os
from pathlib import Path
from typing import Dict, Any, Optional
from datetime import datetime

from .ids import is_valid_stack_name
from .planner.plan import ObservedState


def get_webtier_home() -> Path:
    """
    Get the webtier home directory.

    Returns:
        Path: webtier home directory
    """
    webtier_home = os.environ.get("WEBTIER_HOME", ".webtier")
    return Path(webtier_home).resolve()


def get_stack_dir(stack_name: str) -> Path:
    """
    Get the directory for a specific stack.

    Args:
        stack_name: Stack name

    Returns:
        Path: Stack directory

    Raises:
        ValueError: If stack name is invalid
    """
    if not is_valid_stack_name(stack_name):
        raise ValueError(f"Invalid stack name: {stack_name}")

    return get_webtier_home() / stack_name


def create_stack_dir(stack_name: str) -> Path:
    """Create stack directory and return its path."""
    stack_dir = get_stack_dir(stack_name)
    stack_dir.mkdir(parents=True, exist_ok=True)
    return stack_dir


def write_observed_state(stack_name: str, observed: Dict[str, ObservedState], run_id: Optional[str] = None) -> None:
    """
    Write observed resource state to state.json.

    Args:
        stack_name: Stack name
        observed: Observed state per node id
        run_id: Run that produced this state
    """
    stack_dir = create_stack_dir(stack_name)
    state_data = {
        "version": 1,
        "run_id": run_id,
        "updated_at": datetime.now().isoformat(),
        "resources": {node_id: state.to_dict() for node_id, state in sorted(observed.items())},
    }

    tmp_file = stack_dir / "state.json.tmp"
    with open(tmp_file, "w") as f:
        json.dump(state_data, f, indent=2, sort_keys=True)
    tmp_file.replace(stack_dir / "state.json")


def read_observed_state(stack_name: str) -> Dict[str, ObservedState]:
    """
    Read observed resource state from state.json.

    Returns:
        Dict: Observed state per node id, empty on first run
    """
    state_file = get_stack_dir(stack_name) / "state.json"

    if not state_file.exists():
        return {}

    with open(state_file, "r") as f:
        data = json.load(f)

    return {
        node_id: ObservedState.from_dict(entry)
        for node_id, entry in data.get("resources", {}).items()
    }


def write_outputs_json(stack_name: str, outputs: Dict[str, Any]) -> Path:
    """
    Write module outputs to outputs.json.

    The document uses the same ``{"outputs": {name: {"value": v}}}`` shape the
    cross-stack lookup reads, so other stacks can consume it directly.

    Args:
        stack_name: Stack name
        outputs: Output values by name

    Returns:
        Path: Written file
    """
    stack_dir = create_stack_dir(stack_name)
    outputs_file = stack_dir / "outputs.json"
    document = {"outputs": {name: {"value": value} for name, value in outputs.items()}}

    with open(outputs_file, "w") as f:
        json.dump(document, f, indent=2, sort_keys=True)

    return outputs_file


def read_outputs_json(stack_name: str) -> Optional[Dict[str, Any]]:
    """
    Read module outputs from outputs.json.

    Returns:
        Dict: Output values by name, or None if not found
    """
    outputs_file = get_stack_dir(stack_name) / "outputs.json"

    if not outputs_file.exists():
        return None

    with open(outputs_file, "r") as f:
        document = json.load(f)

    return {name: entry.get("value") for name, entry in document.get("outputs", {}).items()}


def list_stacks() -> list[str]:
    """List all stack names that have local state."""
    webtier_home = get_webtier_home()

    if not webtier_home.exists():
        return []

    return sorted(
        item.name for item in webtier_home.iterdir()
        if item.is_dir() and is_valid_stack_name(item.name)
    )
