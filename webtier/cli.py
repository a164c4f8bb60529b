"""
Click CLI interface for webtier reconciliation.
"""

import json
import logging
import os
import sys
from typing import Optional

import click
from pydantic import ValidationError

from .apply import InMemoryDriver
from .datasources import Boto3DataProvider, StaticDataProvider
from .errors import MissingVariable, WebtierError
from .events import read_events, get_status_from_events
from .ids import is_valid_run_id
from .reconcile import apply_stack, plan_stack
from .render import render_template
from .stack import load_stack_config
from .state import list_stacks, read_outputs_json
from .tags import parse_user_tags


def _configure_logging(verbose: bool) -> None:
    level = "DEBUG" if verbose else os.environ.get("WEBTIER_LOG_LEVEL", "WARNING")
    logging.basicConfig(level=level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _load(stack_file: str, tags: tuple):
    try:
        config = load_stack_config(stack_file)
        if tags:
            config.tags.update(parse_user_tags(list(tags)))
        return config
    except (OSError, ValidationError, ValueError) as e:
        click.echo(f"Invalid stack file {stack_file}: {e}", err=True)
        sys.exit(2)


def _provider(config, offline_data: Optional[str]):
    if offline_data:
        return StaticDataProvider.from_json(offline_data)
    return Boto3DataProvider(config.region)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def main(verbose: bool):
    """
    webtier - declarative reconciliation for a load-balanced, autoscaling web tier.
    """
    _configure_logging(verbose)


@main.command("plan")
@click.argument("stack_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--offline-data", type=click.Path(exists=True, dir_okay=False),
              help="JSON file with lookup data instead of AWS")
@click.option("--replace", "replace", multiple=True, help="Force replacement of a node (repeatable)")
@click.option("--tag", "tags", multiple=True, help="Tags in format 'key=value' (repeatable)")
@click.option("--format", "output_format", type=click.Choice(["json", "human"]), default="human", help="Output format")
def plan_cmd(stack_file: str, offline_data: Optional[str], replace: tuple, tags: tuple, output_format: str):
    """
    Show the ordered actions needed to converge a stack.
    """
    config = _load(stack_file, tags)
    try:
        planned = plan_stack(config, _provider(config, offline_data), force_replace=replace)
    except WebtierError as e:
        click.echo(f"Plan failed: {e}", err=True)
        sys.exit(2)

    result = planned["plan"]
    if output_format == "json":
        print(json.dumps({"run_id": planned["run_id"], **result.to_dict()}, indent=2))
        return

    click.echo(f"Run: {planned['run_id']}")
    if result.is_noop():
        click.echo("No changes. Infrastructure matches the declared state.")
        return
    for index, step in enumerate(result.actions):
        suffix = f" (deposed {step.instance_id})" if step.deposed else (" (replacement)" if step.replacing else "")
        click.echo(f"  {index:>3}. {step.action.value:<8} {step.kind}.{step.node_id}{suffix}")
    for note in result.annotations:
        click.echo(f"  ! {note.code}: {note.message}")
    summary = result.summary()
    click.echo(
        f"Plan: {summary['Create']} to create, {summary['Update']} to update, "
        f"{summary['Replace']} to replace, {summary['Destroy']} to destroy."
    )


@main.command("apply")
@click.argument("stack_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--offline-data", type=click.Path(exists=True, dir_okay=False),
              help="JSON file with lookup data instead of AWS")
@click.option("--replace", "replace", multiple=True, help="Force replacement of a node (repeatable)")
@click.option("--tag", "tags", multiple=True, help="Tags in format 'key=value' (repeatable)")
@click.option("--max-workers", default=4, show_default=True, help="Parallel actions")
@click.option("--fail", "fail_on", multiple=True, help="Simulate a failure on a node (repeatable)")
def apply_cmd(stack_file: str, offline_data: Optional[str], replace: tuple, tags: tuple,
              max_workers: int, fail_on: tuple):
    """
    Converge a stack using the in-memory simulation driver.
    """
    config = _load(stack_file, tags)
    driver = InMemoryDriver(region=config.region, fail_on=fail_on)
    try:
        applied = apply_stack(config, _provider(config, offline_data), driver,
                              force_replace=replace, max_workers=max_workers)
    except WebtierError as e:
        click.echo(f"Apply failed before any change: {e}", err=True)
        sys.exit(2)

    result = applied["result"]
    print(json.dumps({"run_id": applied["run_id"], **result.to_dict()}, indent=2))
    if result.partial:
        sys.exit(1)


@main.command("outputs")
@click.argument("stack_name")
def outputs_cmd(stack_name: str):
    """
    Print the module outputs of the last successful apply.
    """
    try:
        outputs = read_outputs_json(stack_name)
    except ValueError as e:
        click.echo(str(e), err=True)
        sys.exit(2)

    if outputs is None:
        click.echo(f"No outputs for stack {stack_name}", err=True)
        sys.exit(1)
    print(json.dumps(outputs, indent=2))


@main.command("events")
@click.argument("stack_name")
@click.option("--last", default=20, show_default=True, help="Number of events to show")
@click.option("--run", "run_id", help="Only show events of this run")
def events_cmd(stack_name: str, last: int, run_id: Optional[str]):
    """
    Show recent events and the derived status of a stack.
    """
    if run_id is not None and not is_valid_run_id(run_id):
        click.echo(f"Invalid run id: {run_id}", err=True)
        sys.exit(2)
    try:
        events = read_events(stack_name)
    except ValueError as e:
        click.echo(str(e), err=True)
        sys.exit(2)

    if run_id is not None:
        events = [event for event in events if event.get("data", {}).get("run_id") == run_id]

    click.echo(f"Status: {get_status_from_events(stack_name)}")
    for event in events[-last:]:
        click.echo(f"  {event.get('ts', '?')} {event.get('type', '?')} {json.dumps(event.get('data', {}))}")


@main.command("stacks")
def stacks_cmd():
    """
    List stacks with local state and their status.
    """
    names = list_stacks()
    if not names:
        click.echo("No stacks found")
        return
    for name in names:
        click.echo(f"{name}\t{get_status_from_events(name)}")


@main.command("render")
@click.argument("template_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--var", "variables", multiple=True, help="Variable in format 'key=value' (repeatable)")
def render_cmd(template_file: str, variables: tuple):
    """
    Render a bootstrap template with the given variables.
    """
    try:
        values = parse_user_tags(list(variables))
    except ValueError as e:
        click.echo(f"Invalid variable: {e}", err=True)
        sys.exit(2)

    with open(template_file, "r") as f:
        body = f.read()
    try:
        click.echo(render_template(body, values), nl=False)
    except MissingVariable as e:
        click.echo(str(e), err=True)
        sys.exit(2)


if __name__ == "__main__":
    main()
