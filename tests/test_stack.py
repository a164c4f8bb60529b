"""
Tests for the web tier stack definition and reconciliation passes.
"""

import base64
from unittest.mock import Mock

import pytest
from pydantic import ValidationError

from webtier.apply import InMemoryDriver, NodeStatus
from webtier.errors import LookupNotFound, MissingVariable
from webtier.events import read_events, get_status_from_events
from webtier.graph import Lifecycle, Reference, ResourceKind
from webtier.health import HealthMonitor
from webtier.planner import ActionType
from webtier.reconcile import apply_stack, plan_stack, scale_in_stack
from webtier.stack import (
    AUTOSCALING_GROUP, INSTANCE_SG, LAUNCH_TEMPLATE, LOAD_BALANCER, TARGET_GROUP,
    load_stack_config, membership_for, prepare_stack, router_for,
)
from webtier.datasources import StaticDataProvider
from webtier.state import read_observed_state, read_outputs_json


def decoded_user_data(prepared):
    return base64.b64decode(prepared.graph.node(LAUNCH_TEMPLATE).attributes["user_data"]).decode()


class TestStackConfig:
    """Test stack file loading and validation."""

    def test_load_yaml(self, tmp_path):
        stack_file = tmp_path / "stack.yaml"
        stack_file.write_text(
            "name: web-stage\n"
            "drain_timeout: 30\n"
            "server_port: 8081\n"
            "user_data_template: templates/boot.sh\n"
            "db_remote_state:\n"
            "  bucket: tf-state\n"
            "  key: db.tfstate\n"
            "health_check:\n"
            "  path: /health\n"
            "  matcher: 200-299\n"
        )

        config = load_stack_config(str(stack_file))

        assert config.server_port == 8081
        assert config.health_check.path == "/health"
        assert config.user_data_template == str(tmp_path / "templates" / "boot.sh")

    def test_drain_timeout_is_required(self, config_factory):
        with pytest.raises(ValidationError):
            config_factory(drain_timeout=None)

    @pytest.mark.parametrize("overrides", [
        {"server_port": 70000},
        {"min_size": 5, "max_size": 2},
        {"name": "Bad_Name"},
        {"db_remote_state": {"bucket": "only-bucket"}},
        {"lifecycle_overrides": {"web_lt": "sometimes"}},
    ])
    def test_invalid_configs(self, config_factory, overrides):
        with pytest.raises(ValidationError):
            config_factory(**overrides)

    def test_local_remote_state(self, config_factory):
        config = config_factory(db_remote_state={"path": "/tmp/db/outputs.json"})

        assert config.db_remote_state.backend("us-east-2").describe() == "/tmp/db/outputs.json"


class TestPrepareStack:
    """Test lookups, rendering and the declared graph."""

    def test_graph_contents(self, stack_config, offline_provider):
        prepared = prepare_stack(stack_config, offline_provider)

        assert len(prepared.graph) == 8
        assert prepared.graph.node(INSTANCE_SG).attributes["vpc_id"] == "vpc-123"
        assert prepared.graph.node(LOAD_BALANCER).attributes["subnets"] == ("subnet-a", "subnet-b")
        assert prepared.graph.node(AUTOSCALING_GROUP).attributes["name"] == Reference(LAUNCH_TEMPLATE, "name")
        assert set(prepared.graph.dependencies(AUTOSCALING_GROUP)) == {LAUNCH_TEMPLATE, TARGET_GROUP}

    def test_user_data_uses_database_lookup(self, stack_config, offline_provider):
        prepared = prepare_stack(stack_config, offline_provider)
        script = decoded_user_data(prepared)

        assert prepared.user_data == script
        assert "DB address: 10.0.0.5" in script
        assert "DB port: 5432" in script
        assert "-p 8080" in script

    def test_launch_template_name_tracks_payload(self, config_factory, offline_provider):
        first = prepare_stack(config_factory(server_port=8080), offline_provider)
        second = prepare_stack(config_factory(server_port=8081), offline_provider)

        first_name = first.graph.node(LAUNCH_TEMPLATE).attributes["name"]
        second_name = second.graph.node(LAUNCH_TEMPLATE).attributes["name"]
        assert first_name != second_name
        assert first_name.startswith("webservers-stage-")

    def test_lifecycle_defaults_and_overrides(self, config_factory, offline_provider):
        prepared = prepare_stack(config_factory(lifecycle_overrides={"asg_tg": "create_before_destroy"}),
                                 offline_provider)

        assert prepared.graph.node(LAUNCH_TEMPLATE).lifecycle is Lifecycle.CREATE_BEFORE_DESTROY
        assert prepared.graph.node(AUTOSCALING_GROUP).create_before_destroy
        assert prepared.graph.node(TARGET_GROUP).create_before_destroy
        assert prepared.graph.node(INSTANCE_SG).lifecycle is Lifecycle.DESTROY_BEFORE_CREATE

    def test_custom_template_with_unknown_variable(self, tmp_path, config_factory, offline_provider):
        template = tmp_path / "boot.sh"
        template.write_text("echo ${db_address} ${region}\n")

        with pytest.raises(MissingVariable) as exc_info:
            prepare_stack(config_factory(user_data_template=str(template)), offline_provider)

        assert exc_info.value.names == ["region"]

    def test_lookup_failure_surfaces(self, stack_config):
        with pytest.raises(LookupNotFound):
            prepare_stack(stack_config, StaticDataProvider(default_networks=[]))

    def test_health_helpers(self, stack_config):
        machine = membership_for(stack_config)
        router = router_for(stack_config, machine)

        assert machine.drain_timeout == 30
        assert router.route("/").status_code == 503


class TestReconcile:
    """Plan and apply passes with persisted state."""

    def test_first_plan_creates_all_in_dependency_order(self, webtier_home, stack_config, offline_provider):
        planned = plan_stack(stack_config, offline_provider)
        result = planned["plan"]

        assert set(result.decisions.values()) == {ActionType.CREATE}
        assert result.order.index(INSTANCE_SG) < result.order.index(LAUNCH_TEMPLATE)
        assert result.order.index(LAUNCH_TEMPLATE) < result.order.index(AUTOSCALING_GROUP)
        assert result.order.index(TARGET_GROUP) < result.order.index(AUTOSCALING_GROUP)
        assert get_status_from_events(stack_config.name) == "planned"

    def test_apply_writes_state_and_outputs(self, webtier_home, stack_config, offline_provider):
        applied = apply_stack(stack_config, offline_provider, InMemoryDriver())

        assert applied["result"].ok
        outputs = read_outputs_json(stack_config.name)
        assert outputs["alb_dns_name"].endswith(".us-east-2.elb.amazonaws.com")
        observed = read_observed_state(stack_config.name)
        assert outputs["asg_name"] == observed[LAUNCH_TEMPLATE].outputs["name"]
        assert len(observed) == 8
        assert get_status_from_events(stack_config.name) == "converged"

    def test_second_plan_is_a_noop(self, webtier_home, stack_config, offline_provider):
        apply_stack(stack_config, offline_provider, InMemoryDriver())

        planned = plan_stack(stack_config, offline_provider)

        assert planned["plan"].is_noop()

    def test_server_port_change_rolls_the_tier(self, webtier_home, config_factory, offline_provider):
        driver = InMemoryDriver()
        apply_stack(config_factory(server_port=8080), offline_provider, driver)

        planned = plan_stack(config_factory(server_port=8081), offline_provider)
        result = planned["plan"]

        assert result.decisions[LAUNCH_TEMPLATE] is ActionType.REPLACE
        assert result.decisions[AUTOSCALING_GROUP] is ActionType.REPLACE
        assert result.decisions[TARGET_GROUP] is ActionType.REPLACE
        assert result.decisions[INSTANCE_SG] is ActionType.UPDATE

        new_lt = result.index_of(LAUNCH_TEMPLATE, ActionType.CREATE)
        new_asg = result.index_of(AUTOSCALING_GROUP, ActionType.CREATE)
        old_asg = result.index_of(AUTOSCALING_GROUP, ActionType.DESTROY, deposed=True)
        old_lt = result.index_of(LAUNCH_TEMPLATE, ActionType.DESTROY, deposed=True)
        assert new_lt < new_asg < old_asg < old_lt
        assert [note.node_id for note in result.annotations] == [TARGET_GROUP]

        applied = apply_stack(config_factory(server_port=8081), offline_provider, driver, planned=planned)

        assert applied["result"].ok
        assert len(driver.resources) == 8
        kinds = sorted(record["kind"] for record in driver.resources.values())
        assert kinds.count(ResourceKind.LAUNCH_TEMPLATE.value) == 1
        assert kinds.count(ResourceKind.AUTOSCALING_GROUP.value) == 1

    def test_partial_apply_keeps_previous_outputs(self, webtier_home, stack_config, offline_provider):
        apply_stack(stack_config, offline_provider, InMemoryDriver())
        before = read_outputs_json(stack_config.name)

        applied = apply_stack(stack_config, offline_provider, InMemoryDriver(fail_on=[LOAD_BALANCER]),
                              force_replace=[LOAD_BALANCER])

        assert applied["result"].partial
        assert read_outputs_json(stack_config.name) == before
        assert get_status_from_events(stack_config.name) == "partially_applied"
        # the destroyed-then-failed balancer is recreated on the next pass
        assert plan_stack(stack_config, offline_provider)["plan"].decisions[LOAD_BALANCER] is ActionType.CREATE

    def test_resolution_error_is_logged(self, webtier_home, stack_config):
        with pytest.raises(LookupNotFound):
            plan_stack(stack_config, StaticDataProvider(default_networks=[]))

        events = read_events(stack_config.name)
        assert events[-1]["type"] == "ERROR"
        assert events[-1]["data"]["error"] == "LookupNotFound"
        assert get_status_from_events(stack_config.name) == "failed"


class TestMembershipDuringReconcile:
    """Health state feeds group replacement and scale-in."""

    def make_monitor(self, config, events):
        machine = membership_for(config)
        return HealthMonitor(machine, Mock(), traffic_port=config.server_port,
                             event_callback=lambda t, d: events.append((t, d)))

    def join(self, monitor, instance_id, group):
        monitor.machine.register(instance_id, group)
        for _ in range(monitor.machine.config.healthy_threshold):
            monitor.machine.record_check(instance_id, True)

    def test_replaced_group_drains_its_members(self, webtier_home, config_factory, offline_provider):
        driver = InMemoryDriver()
        first = apply_stack(config_factory(server_port=8080), offline_provider, driver)
        old_group = first["result"].observed[AUTOSCALING_GROUP].outputs["id"]

        config = config_factory(server_port=8081)
        events = []
        monitor = self.make_monitor(config, events)
        self.join(monitor, "i-1", old_group)
        monitor.machine.set_in_flight("i-1", 0)

        applied = apply_stack(config, offline_provider, driver, monitor=monitor, force_after=5)

        assert applied["result"].ok
        assert applied["result"].deposed[AUTOSCALING_GROUP] is NodeStatus.SUCCEEDED
        assert not monitor.machine.has("i-1")
        assert events == [("MEMBER_TRANSITION", {"instance_id": "i-1", "reason": "connections_drained"})]

    def test_scale_in_prefers_unhealthy_members(self, webtier_home, stack_config):
        events = []
        monitor = self.make_monitor(stack_config, events)
        for instance_id in ["i-1", "i-2", "i-3"]:
            self.join(monitor, instance_id, "asg-1")
            monitor.machine.set_in_flight(instance_id, 0)
        for _ in range(stack_config.health_check.unhealthy_threshold):
            monitor.machine.record_check("i-2", False)
        terminate = Mock()

        outcomes = scale_in_stack(stack_config, monitor, desired=2, terminate=terminate, group="asg-1")

        assert [outcome.instance_id for outcome in outcomes] == ["i-2"]
        terminate.assert_called_once_with("i-2")
        assert monitor.machine.routable() == ["i-1", "i-3"]
        scale_event = [e for e in read_events(stack_config.name) if e["type"] == "SCALE_IN"][-1]
        assert scale_event["data"] == {"desired": 2, "instances": ["i-2"]}
