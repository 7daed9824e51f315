import json
from pathlib import Path

import pytest

from bluegreen.props import CONTEXT_KEY, TopologyProps
from bluegreen.topology import errors
from bluegreen.topology.assembly import assemble_topology
from bluegreen.topology.builder import TopologyBuilder
from bluegreen.topology.models import (
    HOOK_PRINCIPAL,
    AllAtOnce,
    HookDeclaration,
    NetworkDescription,
    PortMapping,
    Subnet,
    TaskSet,
    TimeBasedCanary,
    TimeBasedLinear,
)
from bluegreen.topology.network import StaticNetworkDirectory


def _task_sets(builder: TopologyBuilder, parts) -> tuple[TaskSet, TaskSet]:
    blue = builder.declare_task_set(
        "BlueTS", parts.service, parts.blue_td, parts.blue_tg, 100, security_groups=[parts.service_sg]
    )
    green = builder.declare_task_set(
        "GreenTS", parts.service, parts.green_td, parts.green_tg, 0, security_groups=[parts.service_sg]
    )
    return blue, green


def _build(builder: TopologyBuilder, parts, blue_ts: TaskSet, green_ts: TaskSet, **overrides) -> HookDeclaration:
    args = dict(
        service=parts.service,
        blue_task_def=parts.blue_td,
        green_task_def=parts.green_td,
        blue_task_set=blue_ts,
        green_task_set=green_ts,
        prod_listener=parts.prod,
        test_listener=parts.test,
        blue_tg=parts.blue_tg,
        green_tg=parts.green_tg,
        routing_policy=TimeBasedCanary(step_percentage=20, bake_time_minutes=15),
        termination_wait_minutes=30,
    )
    args.update(overrides)
    return builder.build_hook_declaration(**args)


class TestBuildHookDeclaration:
    def test_steady_state_rollout(self, builder: TopologyBuilder, parts) -> None:
        blue, green = _task_sets(builder, parts)
        builder.mark_primary(blue)

        declaration = _build(builder, parts, blue, green)

        assert declaration.service.desired_count == 2
        assert declaration.blue_task_set.scale_percent == 100
        assert declaration.green_task_set.scale_percent == 0
        assert declaration.topology.primary_task_sets == (blue,)
        assert declaration.service_role == parts.hook_role
        assert declaration.termination_wait_minutes == 30

    def test_canary_policy_kept_unchanged(self, builder: TopologyBuilder, parts) -> None:
        blue, green = _task_sets(builder, parts)
        builder.mark_primary(blue)

        declaration = _build(builder, parts, blue, green)

        assert declaration.routing_policy == TimeBasedCanary(20, 15)
        assert declaration.routing_policy.step_percentage == 20
        assert declaration.routing_policy.bake_time_minutes == 15

    def test_reachable_task_definitions_are_blue_and_green(self, builder: TopologyBuilder, parts) -> None:
        blue, green = _task_sets(builder, parts)
        builder.mark_primary(blue)

        declaration = _build(builder, parts, blue, green)

        reachable = {ts.task_definition.name for ts in declaration.topology.task_sets_of(parts.service)}
        assert reachable == {declaration.blue_task_definition.name, declaration.green_task_definition.name}

    def test_green_target_group_bound_to_blue_task_definition(
        self, builder: TopologyBuilder, parts
    ) -> None:
        cross_tg = builder.declare_target_group("CrossTG", parts.blue_td, 80, network=parts.network)
        blue = builder.declare_task_set("BlueTS", parts.service, parts.blue_td, parts.blue_tg, 100)
        green = builder.declare_task_set("GreenTS", parts.service, parts.blue_td, cross_tg, 0)
        builder.mark_primary(blue)

        with pytest.raises(errors.IncompleteTopology) as exc_info:
            _build(builder, parts, blue, green, green_tg=cross_tg)
        assert exc_info.value.entity == "CrossTG"
        assert exc_info.value.expected == "GreenTD"
        assert exc_info.value.actual == "BlueTD"

    def test_same_task_definition_for_both_colours(self, builder: TopologyBuilder, parts) -> None:
        blue, green = _task_sets(builder, parts)
        builder.mark_primary(blue)
        with pytest.raises(errors.IncompleteTopology):
            _build(builder, parts, blue, green, green_task_def=parts.blue_td)

    def test_swapped_task_sets(self, builder: TopologyBuilder, parts) -> None:
        blue, green = _task_sets(builder, parts)
        builder.mark_primary(blue)
        with pytest.raises(errors.IncompleteTopology):
            _build(builder, parts, green, blue)

    def test_extra_task_set_on_service(self, builder: TopologyBuilder, parts) -> None:
        blue, green = _task_sets(builder, parts)
        builder.declare_task_set("ExtraTS", parts.service, parts.green_td, parts.green_tg, 0)
        builder.mark_primary(blue)
        with pytest.raises(errors.IncompleteTopology) as exc_info:
            _build(builder, parts, blue, green)
        assert exc_info.value.field == "task_sets"

    def test_missing_primary(self, builder: TopologyBuilder, parts) -> None:
        blue, green = _task_sets(builder, parts)
        with pytest.raises(errors.IncompleteTopology) as exc_info:
            _build(builder, parts, blue, green)
        assert exc_info.value.field == "primary_task_set"

    def test_green_marked_primary(self, builder: TopologyBuilder, parts) -> None:
        blue, green = _task_sets(builder, parts)
        builder.mark_primary(green)
        with pytest.raises(errors.IncompleteTopology):
            _build(builder, parts, blue, green)

    def test_listener_routes_outside_rollout(self, builder: TopologyBuilder, parts) -> None:
        stray_tg = builder.declare_target_group("StrayTG", parts.blue_td, 80, network=parts.network)
        stray = builder.declare_listener("StrayListener", parts.alb, 9003, [(stray_tg, 100)])
        blue, green = _task_sets(builder, parts)
        builder.mark_primary(blue)
        with pytest.raises(errors.IncompleteTopology) as exc_info:
            _build(builder, parts, blue, green, test_listener=stray)
        assert exc_info.value.actual == ["StrayTG"]

    def test_prod_listener_must_reach_blue(self, builder: TopologyBuilder, parts) -> None:
        blue, green = _task_sets(builder, parts)
        builder.mark_primary(blue)
        with pytest.raises(errors.IncompleteTopology):
            _build(builder, parts, blue, green, prod_listener=parts.test, test_listener=parts.prod)

    def test_listeners_on_different_load_balancers(self, builder: TopologyBuilder, parts) -> None:
        other_alb = builder.declare_load_balancer("OtherAlb", parts.network)
        other_test = builder.declare_listener("OtherTest", other_alb, 9002, [(parts.green_tg, 100)])
        blue, green = _task_sets(builder, parts)
        builder.mark_primary(blue)
        with pytest.raises(errors.IncompleteTopology):
            _build(builder, parts, blue, green, test_listener=other_test)

    def test_port_shapes_must_match(self, builder: TopologyBuilder, parts) -> None:
        wide_td = builder.declare_task_definition(
            "WideTD", "nginx:latest", 256, 512, [PortMapping(80), PortMapping(443)]
        )
        wide_tg = builder.declare_target_group("WideTG", wide_td, 80, network=parts.network)
        wide_test = builder.declare_listener("WideTest", parts.alb, 9003, [(wide_tg, 100)])
        blue = builder.declare_task_set("BlueTS", parts.service, parts.blue_td, parts.blue_tg, 100)
        green = builder.declare_task_set("WideTS", parts.service, wide_td, wide_tg, 0)
        builder.mark_primary(blue)

        with pytest.raises(errors.IncompleteTopology) as exc_info:
            _build(
                builder,
                parts,
                blue,
                green,
                green_task_def=wide_td,
                green_tg=wide_tg,
                test_listener=wide_test,
            )
        assert exc_info.value.field == "port_mappings"

    @pytest.mark.parametrize("minutes", [-1, 2881])
    def test_termination_wait_out_of_range(self, builder: TopologyBuilder, parts, minutes: int) -> None:
        blue, green = _task_sets(builder, parts)
        builder.mark_primary(blue)
        with pytest.raises(errors.InvalidRoutingPolicy):
            _build(builder, parts, blue, green, termination_wait_minutes=minutes)

    def test_unknown_routing_policy(self, builder: TopologyBuilder, parts) -> None:
        blue, green = _task_sets(builder, parts)
        builder.mark_primary(blue)
        with pytest.raises(errors.InvalidRoutingPolicy):
            _build(builder, parts, blue, green, routing_policy="canary")

    def test_other_policies(self, builder: TopologyBuilder, parts) -> None:
        blue, green = _task_sets(builder, parts)
        builder.mark_primary(blue)
        assert _build(builder, parts, blue, green, routing_policy=AllAtOnce()).routing_policy.type == "AllAtOnce"
        linear = _build(builder, parts, blue, green, routing_policy=TimeBasedLinear(10, 1)).routing_policy
        assert (linear.type, linear.step_percentage, linear.bake_time_minutes) == ("TimeBasedLinear", 10, 1)

    def test_hook_role_needs_physical_name(self, builder: TopologyBuilder, parts) -> None:
        nameless = builder.declare_role("NamelessRole", HOOK_PRINCIPAL)
        blue, green = _task_sets(builder, parts)
        builder.mark_primary(blue)
        with pytest.raises(errors.IncompleteTopology):
            _build(builder, parts, blue, green, service_role=nameless)

    def test_hook_role_ambiguous(self, builder: TopologyBuilder, parts) -> None:
        builder.declare_role("SecondHookRole", HOOK_PRINCIPAL, role_name="second")
        blue, green = _task_sets(builder, parts)
        builder.mark_primary(blue)
        with pytest.raises(errors.IncompleteTopology) as exc_info:
            _build(builder, parts, blue, green)
        assert exc_info.value.field == "service_role"

    def test_lifecycle_hooks_carried(self, builder: TopologyBuilder, parts) -> None:
        hook = builder.declare_lifecycle_hook("AfterAllowTestTraffic", "probe-fn", test_listener=parts.test)
        blue, green = _task_sets(builder, parts)
        builder.mark_primary(blue)
        assert _build(builder, parts, blue, green).lifecycle_hooks == (hook,)


class TestRoutingPolicies:
    @pytest.mark.parametrize("step", [0, 100, -5])
    def test_step_percentage_range(self, step: int) -> None:
        with pytest.raises(errors.InvalidRoutingPolicy):
            TimeBasedCanary(step_percentage=step, bake_time_minutes=15)

    def test_bake_time(self) -> None:
        with pytest.raises(errors.InvalidRoutingPolicy):
            TimeBasedLinear(step_percentage=10, bake_time_minutes=0)


class TestAssembleTopology:
    def test_standard_topology(self, declaration: HookDeclaration) -> None:
        assert declaration.blue_task_definition.name == "BlueTaskDefinition"
        assert declaration.green_task_definition.name == "GreenTaskDefinition"
        assert declaration.blue_task_definition.image == "httpd:latest"
        assert declaration.green_task_definition.image == "nginxdemos/hello:0.2"
        assert declaration.prod_listener.port == 80
        assert declaration.test_listener.port == 9002
        assert declaration.test_listener.target_groups == (declaration.green_target_group,)
        assert declaration.service_role.role_name == "codedeploybluegreenhookrole"
        assert declaration.routing_policy == TimeBasedCanary(20, 15)
        assert declaration.lifecycle_hooks == ()

    def test_with_capacity_and_test_hook(self, builder: TopologyBuilder, props) -> None:
        props.instance_type = "t2.micro"
        props.test_traffic_hook = "bluegreen-test-traffic"
        declaration = assemble_topology(builder, props)

        assert declaration.service.cluster.launch_type == "EC2"
        assert declaration.blue_task_definition.launch_type == "EC2"
        assert declaration.lifecycle_hooks[0].event == "AfterAllowTestTraffic"
        assert declaration.lifecycle_hooks[0].test_listener == declaration.test_listener

    def test_private_tasks_get_no_public_ip(self, declaration: HookDeclaration) -> None:
        assert not declaration.blue_task_set.assign_public_ip
        assert not declaration.green_task_set.assign_public_ip

    def test_public_tasks_get_public_ip(self, builder: TopologyBuilder, props: TopologyProps) -> None:
        props.subnet_type = "public"
        declaration = assemble_topology(builder, props)

        assert declaration.service.cluster.network.selected_subnets == declaration.service.cluster.network.public_subnets
        assert declaration.blue_task_set.assign_public_ip
        assert declaration.green_task_set.assign_public_ip

    def test_shipped_context_resolves_against_default_vpc(self) -> None:
        # a default VPC has only internet-routed subnets
        default_vpc = NetworkDescription(
            vpc_id="vpc-0default",
            subnets=(
                Subnet("subnet-1a", "vpc-0default", "us-east-1a", True),
                Subnet("subnet-1b", "vpc-0default", "us-east-1b", True),
                Subnet("subnet-1c", "vpc-0default", "us-east-1c", True),
            ),
        )
        cdk_json = Path(__file__).resolve().parents[2] / "cdk.json"
        context = json.loads(cdk_json.read_text())["context"][CONTEXT_KEY]

        props = TopologyProps.from_context(context)
        directory = StaticNetworkDirectory([default_vpc], default_vpc_id="vpc-0default")
        declaration = assemble_topology(TopologyBuilder(directory), props)

        assert declaration.service.cluster.network.vpc_id == "vpc-0default"
        assert declaration.blue_task_set.assign_public_ip
