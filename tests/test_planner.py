"""
Tests for ordering and change planning.
"""

import random

import pytest

from webtier.errors import CyclicDependency, DependencyCycle
from webtier.graph import Lifecycle, Reference, ResourceGraph, ResourceKind, ResourceNode, build_graph, symbolic
from webtier.health import HealthSnapshot, MemberState
from webtier.planner import ActionType, ObservedState, plan, select_scale_in, topological_order

CBD = Lifecycle.CREATE_BEFORE_DESTROY


def observed_from(graph):
    """Observed state as a clean apply of ``graph`` would leave it."""
    return {
        node.node_id: ObservedState(
            kind=node.kind.value,
            attributes=symbolic(node.attributes),
            outputs={"id": f"{node.node_id}-1", "arn": f"arn:{node.node_id}-1", "name": node.node_id},
            depends_on=graph.dependencies(node.node_id),
        )
        for node in graph.nodes
    }


def web_nodes(user_data="v1", port=8080, min_size=2):
    return [
        ResourceNode(ResourceKind.SECURITY_GROUP, "sg", {"name": "sg", "ingress": [port]}),
        ResourceNode(ResourceKind.LAUNCH_TEMPLATE, "lt", {
            "name": "lt", "user_data": user_data, "security_groups": [Reference("sg")],
        }, CBD),
        ResourceNode(ResourceKind.TARGET_GROUP, "tg", {"name": "tg", "port": port}),
        ResourceNode(ResourceKind.AUTOSCALING_GROUP, "asg", {
            "name": "asg",
            "launch_template": {"id": Reference("lt")},
            "target_group_arns": [Reference("tg", "arn")],
            "min_size": min_size,
        }),
    ]


def assert_requires_point_backwards(result):
    for index, step in enumerate(result.actions):
        assert all(r < index for r in step.requires), (index, step)


class TestTopologicalOrder:
    """Test dependency ordering."""

    def test_dependencies_come_first(self):
        graph = build_graph(web_nodes())
        order = topological_order(graph)

        assert order.index("sg") < order.index("lt") < order.index("asg")
        assert order.index("tg") < order.index("asg")

    def test_ties_break_by_declaration_order(self):
        graph = build_graph([
            ResourceNode(ResourceKind.SECURITY_GROUP, name, {"name": name}) for name in ["c", "a", "b"]
        ])

        assert topological_order(graph) == ["c", "a", "b"]

    def test_order_is_deterministic(self):
        assert topological_order(build_graph(web_nodes())) == topological_order(build_graph(web_nodes()))

    def test_cycle_in_hand_built_graph(self):
        nodes = [ResourceNode(ResourceKind.SECURITY_GROUP, name, {}) for name in ["a", "b", "c"]]
        graph = ResourceGraph(nodes, {"a": ["b"], "b": ["a"], "c": []})

        with pytest.raises(DependencyCycle) as exc_info:
            topological_order(graph)

        assert exc_info.value.nodes == ["a", "b"]


def random_dag(rng, size):
    """Nodes in shuffled declaration order, each referencing random earlier-ranked nodes."""
    ids = [f"n{i}" for i in range(size)]
    deps = {node_id: rng.sample(ids[:i], rng.randint(0, min(i, 3))) for i, node_id in enumerate(ids)}
    declared = ids[:]
    rng.shuffle(declared)
    nodes = [
        ResourceNode(
            ResourceKind.SECURITY_GROUP, node_id,
            {"name": node_id, "refs": [Reference(dep) for dep in deps[node_id]]},
            rng.choice(list(Lifecycle)),
        )
        for node_id in declared
    ]
    return nodes, deps


@pytest.mark.parametrize("seed", range(20))
class TestRandomGraphs:
    """Ordering properties on random acyclic graphs."""

    def test_order_respects_every_edge(self, seed):
        rng = random.Random(seed)
        nodes, deps = random_dag(rng, rng.randint(1, 15))
        order = topological_order(build_graph(nodes))

        assert sorted(order) == sorted(deps)
        for node_id, node_deps in deps.items():
            for dep in node_deps:
                assert order.index(dep) < order.index(node_id)

    def test_first_plan_creates_after_dependencies(self, seed):
        rng = random.Random(seed)
        nodes, deps = random_dag(rng, rng.randint(1, 15))
        result = plan(build_graph(nodes))

        assert all(step.action is ActionType.CREATE for step in result.actions)
        assert_requires_point_backwards(result)
        for node_id, node_deps in deps.items():
            index = result.index_of(node_id, ActionType.CREATE)
            for dep in node_deps:
                assert result.index_of(dep, ActionType.CREATE) in result.actions[index].requires

    def test_full_replacement_keeps_lifecycle_ordering(self, seed):
        rng = random.Random(seed)
        nodes, deps = random_dag(rng, rng.randint(2, 12))
        graph = build_graph(nodes)
        result = plan(graph, observed_from(graph), force_replace=list(deps))

        assert_requires_point_backwards(result)
        for node in graph.nodes:
            create = result.index_of(node.node_id, ActionType.CREATE)
            assert create is not None
            if node.create_before_destroy:
                destroy = result.index_of(node.node_id, ActionType.DESTROY, deposed=True)
                assert create < destroy
                for dependent in graph.dependents(node.node_id):
                    assert result.index_of(dependent, ActionType.CREATE) < destroy
            else:
                destroy = result.index_of(node.node_id, ActionType.DESTROY)
                assert destroy < create
                assert destroy in result.actions[create].requires

    def test_back_edge_is_rejected(self, seed):
        rng = random.Random(seed)
        nodes, deps = random_dag(rng, rng.randint(3, 12))
        edges = [(node_id, dep) for node_id, node_deps in deps.items() for dep in node_deps]
        if not edges:
            pytest.skip("random graph has no edges")
        consumer, producer = rng.choice(edges)
        for node in nodes:
            if node.node_id == producer:
                node.attributes["back"] = Reference(consumer)

        with pytest.raises(CyclicDependency):
            build_graph(nodes)


class TestPlanDecisions:
    """Test per-node decisions against observed state."""

    def test_first_run_creates_everything(self):
        result = plan(build_graph(web_nodes()))

        assert result.decisions == {node_id: ActionType.CREATE for node_id in ["sg", "lt", "tg", "asg"]}
        assert [step.node_id for step in result.actions] == result.order

    def test_unchanged_state_is_a_noop(self):
        graph = build_graph(web_nodes())
        result = plan(graph, observed_from(graph))

        assert result.is_noop()
        assert set(result.decisions.values()) == {ActionType.NOOP}

    def test_mutable_change_is_an_update(self):
        observed = observed_from(build_graph(web_nodes()))
        result = plan(build_graph(web_nodes(min_size=3)), observed)

        assert result.decisions["asg"] is ActionType.UPDATE
        assert result.changed_attributes["asg"] == ["min_size"]
        assert [step.node_id for step in result.actions] == ["asg"]

    def test_kind_change_forces_replacement(self):
        graph = build_graph(web_nodes())
        observed = observed_from(graph)
        observed["sg"].kind = ResourceKind.TARGET_GROUP.value

        assert plan(graph, observed).decisions["sg"] is ActionType.REPLACE

    def test_forced_replacement(self):
        graph = build_graph(web_nodes())
        result = plan(graph, observed_from(graph), force_replace=["sg"])

        assert result.decisions["sg"] is ActionType.REPLACE
        # lt re-points at the new security group
        assert result.decisions["lt"] is ActionType.REPLACE
        assert "security_groups" in result.changed_attributes["lt"]


class TestCreateBeforeDestroy:
    """Replacing the launch template keeps the old one until dependents move."""

    def test_ordering(self):
        observed = observed_from(build_graph(web_nodes()))
        result = plan(build_graph(web_nodes(user_data="v2")), observed)

        assert result.decisions["lt"] is ActionType.REPLACE
        assert result.decisions["asg"] is ActionType.UPDATE
        assert result.changed_attributes["asg"] == ["launch_template"]

        create = result.index_of("lt", ActionType.CREATE)
        update = result.index_of("asg", ActionType.UPDATE)
        destroy = result.index_of("lt", ActionType.DESTROY, deposed=True)
        assert create < update < destroy
        assert result.actions[create].replacing
        assert result.actions[destroy].deposed
        assert set(result.actions[destroy].requires) == {create, update}
        assert not result.annotations

    def test_deposed_destroy_carries_old_attributes(self):
        observed = observed_from(build_graph(web_nodes()))
        result = plan(build_graph(web_nodes(user_data="v2")), observed)

        destroy = result.actions[result.index_of("lt", ActionType.DESTROY, deposed=True)]
        assert destroy.rendered_attributes["user_data"] == "v1"


class TestDestroyBeforeCreate:
    """Replacing the target group leaves a gap and says so."""

    def test_destroy_precedes_create_and_is_annotated(self):
        observed = observed_from(build_graph(web_nodes()))
        result = plan(build_graph(web_nodes(port=8081)), observed)

        destroy = result.index_of("tg", ActionType.DESTROY)
        create = result.index_of("tg", ActionType.CREATE)
        update = result.index_of("asg", ActionType.UPDATE)
        assert destroy < create < update
        assert destroy in result.actions[create].requires
        assert create in result.actions[update].requires

        assert [(note.code, note.node_id) for note in result.annotations] == [
            ("ReplacementRequiresDowntime", "tg"),
        ]


class TestOrphans:
    """Removed nodes are destroyed, dependents first."""

    def test_removed_nodes_are_destroyed_in_reverse_dependency_order(self):
        observed = observed_from(build_graph(web_nodes()))
        graph = build_graph([ResourceNode(ResourceKind.SECURITY_GROUP, "sg", {"name": "sg", "ingress": [8080]})])

        result = plan(graph, observed)

        destroyed = [step.node_id for step in result.actions if step.action is ActionType.DESTROY]
        assert destroyed.index("asg") < destroyed.index("lt")
        assert destroyed.index("asg") < destroyed.index("tg")
        assert result.decisions["asg"] is ActionType.DESTROY
        assert result.decisions["sg"] is ActionType.NOOP
        assert_requires_point_backwards(result)

    def test_summary_counts_decisions(self):
        observed = observed_from(build_graph(web_nodes()))
        nodes = web_nodes()
        result = plan(build_graph([nodes[0], nodes[2]]), observed)

        assert result.summary() == {"Create": 0, "Update": 0, "Replace": 0, "Destroy": 2, "No-op": 2}

    def test_orphan_deposed_instances_go_first(self):
        observed = observed_from(build_graph(web_nodes()))
        observed["lt"].deposed = [{"kind": "LaunchTemplate", "attributes": {"name": "lt"}, "outputs": {"id": "lt-0"}}]
        graph = build_graph([ResourceNode(ResourceKind.SECURITY_GROUP, "sg", {"name": "sg", "ingress": [8080]})])

        result = plan(graph, observed)

        cleanup = result.index_of("lt", ActionType.DESTROY, deposed=True)
        destroy = result.index_of("lt", ActionType.DESTROY)
        assert result.actions[cleanup].instance_id == "lt-0"
        assert cleanup in result.actions[destroy].requires
        assert_requires_point_backwards(result)


class TestAppliedInputs:
    """Dependents whose applied inputs no longer match their producer are re-pointed."""

    def observed_with_inputs(self):
        observed = observed_from(build_graph(web_nodes()))
        observed["lt"].inputs = {"${sg.id}": "sg-1"}
        observed["asg"].inputs = {"${lt.id}": "lt-1", "${tg.arn}": "arn:tg-1"}
        return observed

    def test_matching_inputs_are_a_noop(self):
        assert plan(build_graph(web_nodes()), self.observed_with_inputs()).is_noop()

    def test_moved_producer_output_updates_dependent(self):
        observed = self.observed_with_inputs()
        observed["lt"].outputs["id"] = "lt-2"

        result = plan(build_graph(web_nodes()), observed)

        assert result.decisions["lt"] is ActionType.NOOP
        assert result.decisions["asg"] is ActionType.UPDATE
        assert result.changed_attributes["asg"] == ["launch_template"]

    def test_missing_producer_updates_dependent(self):
        observed = self.observed_with_inputs()
        del observed["tg"]

        result = plan(build_graph(web_nodes()), observed)

        assert result.decisions["tg"] is ActionType.CREATE
        assert result.decisions["asg"] is ActionType.UPDATE
        assert result.index_of("tg", ActionType.CREATE) in result.actions[result.index_of("asg", ActionType.UPDATE)].requires

    def test_state_without_inputs_is_trusted(self):
        observed = observed_from(build_graph(web_nodes()))
        observed["lt"].outputs["id"] = "lt-2"

        assert plan(build_graph(web_nodes()), observed).is_noop()


class TestLeftoverDeposed:
    """Old instances left by an earlier pass are destroyed once dependents have moved."""

    def test_leftover_is_destroyed_after_dependents(self):
        observed = observed_from(build_graph(web_nodes()))
        observed["lt"].deposed = [{"kind": "LaunchTemplate", "attributes": {"name": "lt"}, "outputs": {"id": "lt-0"}}]

        result = plan(build_graph(web_nodes(min_size=3)), observed)

        update = result.index_of("asg", ActionType.UPDATE)
        cleanup = result.index_of("lt", ActionType.DESTROY, deposed=True)
        assert result.decisions["lt"] is ActionType.NOOP
        assert result.actions[cleanup].instance_id == "lt-0"
        assert result.actions[cleanup].requires == (update,)
        assert result.actions[cleanup].to_dict()["instance_id"] == "lt-0"

    def test_replacement_destroys_both_old_instances(self):
        observed = observed_from(build_graph(web_nodes()))
        observed["lt"].deposed = [{"kind": "LaunchTemplate", "attributes": {"name": "lt"}, "outputs": {"id": "lt-0"}}]

        result = plan(build_graph(web_nodes(user_data="v2")), observed)

        cleanups = [step.instance_id for step in result.actions if step.deposed]
        assert cleanups == ["lt-0", "lt-1"]
        assert_requires_point_backwards(result)


def member(instance_id, state, failures=0):
    return HealthSnapshot(instance_id, state, None, 0, failures, None, None)


class TestScaleIn:
    """Scale-in picks from membership snapshots."""

    def test_unhealthy_members_leave_first(self):
        snapshots = [
            member("i-1", MemberState.IN_SERVICE),
            member("i-2", MemberState.UNHEALTHY, failures=2),
            member("i-3", MemberState.IN_SERVICE),
            member("i-4", MemberState.UNHEALTHY, failures=5),
        ]

        assert select_scale_in(snapshots, desired=1) == ["i-4", "i-2", "i-1"]

    def test_draining_members_count_as_leaving(self):
        snapshots = [
            member("i-1", MemberState.IN_SERVICE),
            member("i-2", MemberState.DRAINING),
            member("i-3", MemberState.IN_SERVICE),
        ]

        assert select_scale_in(snapshots, desired=2) == []
        assert select_scale_in(snapshots, desired=1) == ["i-1"]

    def test_initializing_members_are_never_picked(self):
        snapshots = [member("i-1", MemberState.INITIALIZING), member("i-2", MemberState.IN_SERVICE)]

        assert select_scale_in(snapshots, desired=0) == ["i-2"]

    def test_negative_desired(self):
        with pytest.raises(ValueError):
            select_scale_in([], desired=-1)
