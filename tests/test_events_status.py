from webtier.events import EventTypes, emit_event, get_last_event, get_status_from_events, read_events
from webtier.ids import is_valid_run_id, is_valid_stack_name, new_physical_id, new_run_id
from webtier.planner import ObservedState
from webtier.state import (
    create_stack_dir, list_stacks, read_observed_state, read_outputs_json,
    write_observed_state, write_outputs_json,
)
from webtier.tags import base_tags, parse_user_tags

import pytest


def test_status_progression_basic(webtier_home):
    stack = "web-stage"
    create_stack_dir(stack)
    assert get_status_from_events(stack) == "unknown"
    emit_event(stack, EventTypes.RESOLVE_START, {})
    assert get_status_from_events(stack) == "resolving"
    emit_event(stack, EventTypes.PLAN_READY, {})
    assert get_status_from_events(stack) == "planned"
    emit_event(stack, EventTypes.ACTION_START, {"node_id": "web_lt"})
    assert get_status_from_events(stack) == "applying"
    emit_event(stack, EventTypes.APPLY_DONE, {})
    assert get_status_from_events(stack) == "converged"


def test_events_are_appended_in_order(webtier_home):
    emit_event("web-stage", "A", {"n": 1})
    emit_event("web-stage", "B", {"n": 2})

    events = read_events("web-stage")
    assert [e["type"] for e in events] == ["A", "B"]
    assert get_last_event("web-stage")["data"] == {"n": 2}


def test_malformed_event_lines_are_skipped(webtier_home):
    emit_event("web-stage", "A", {})
    with open(webtier_home / "web-stage" / "events.ndjson", "a") as f:
        f.write("{not json\n")

    assert len(read_events("web-stage")) == 1


def test_observed_state_roundtrip(webtier_home):
    observed = {
        "web_lt": ObservedState(
            "LaunchTemplate", {"name": "lt-1"}, {"id": "lt-0abc"}, ["instance_sg"],
            inputs={"${instance_sg.id}": "sg-1"},
            deposed=[{"kind": "LaunchTemplate", "attributes": {"name": "lt-0"}, "outputs": {"id": "lt-0old"}}],
        ),
    }
    write_observed_state("web-stage", observed, "r-20250101-000000-abcd")

    loaded = read_observed_state("web-stage")
    assert loaded["web_lt"].outputs == {"id": "lt-0abc"}
    assert loaded["web_lt"].depends_on == ["instance_sg"]
    assert loaded["web_lt"].inputs == {"${instance_sg.id}": "sg-1"}
    assert loaded["web_lt"].deposed[0]["outputs"] == {"id": "lt-0old"}
    assert not (webtier_home / "web-stage" / "state.json.tmp").exists()


def test_missing_state_is_empty(webtier_home):
    assert read_observed_state("web-stage") == {}
    assert read_outputs_json("web-stage") is None


def test_outputs_document_shape(webtier_home):
    path = write_outputs_json("web-stage", {"alb_dns_name": "web.elb.amazonaws.com"})

    assert '"value": "web.elb.amazonaws.com"' in path.read_text()
    assert read_outputs_json("web-stage") == {"alb_dns_name": "web.elb.amazonaws.com"}


def test_list_stacks(webtier_home):
    create_stack_dir("b-stack")
    create_stack_dir("a-stack")

    assert list_stacks() == ["a-stack", "b-stack"]


def test_invalid_stack_name_rejected(webtier_home):
    with pytest.raises(ValueError):
        write_outputs_json("../escape", {})


def test_ids():
    assert is_valid_run_id(new_run_id())
    assert not is_valid_run_id("d-20250101-000000-abcd")
    assert new_physical_id("sg").startswith("sg-")
    assert len(new_physical_id("sg")) == 20
    assert is_valid_stack_name("webservers-stage")
    assert not is_valid_stack_name("-web")
    assert not is_valid_stack_name("Web")


def test_tags():
    tags = base_tags("web-stage", {"owner": "ops"})
    assert tags == {"project": "webtier", "stack": "web-stage", "owner": "ops"}
    assert parse_user_tags(["env=stage", " team = web "]) == {"env": "stage", "team": "web"}
    with pytest.raises(ValueError, match="Expected 'key=value'"):
        parse_user_tags(["novalue"])
    with pytest.raises(ValueError, match="must not be empty"):
        parse_user_tags(["key="])
