"""The standard blue/green topology: one ALB, two listeners, two of everything else."""

from bluegreen.props import TopologyProps
from bluegreen.topology.builder import TopologyBuilder
from bluegreen.topology.models import (
    HOOK_PRINCIPAL,
    TASK_PRINCIPAL,
    CapacityAllocation,
    HookDeclaration,
    PortMapping,
    SecurityGroupRule,
)


def assemble_topology(builder: TopologyBuilder, props: TopologyProps) -> HookDeclaration:
    # Networking
    network = builder.declare_network(props.network_lookup())

    # Security groups
    alb_sg = builder.declare_security_group(
        "LoadBalancerSecurityGroup",
        network,
        [
            SecurityGroupRule.tcp(props.prod_port, cidr="0.0.0.0/0", description="Production traffic"),
            SecurityGroupRule.tcp(props.test_port, cidr="0.0.0.0/0", description="Test traffic"),
        ],
    )
    service_sg = builder.declare_security_group(
        "ServiceSecurityGroup",
        network,
        [
            SecurityGroupRule.tcp(
                props.container_port, source=alb_sg, description="Allow ALB to reach tasks"
            )
        ],
    )

    # IAM roles
    execution_role = builder.declare_role(
        "TaskExecutionRole",
        TASK_PRINCIPAL,
        ["service-role/AmazonECSTaskExecutionRolePolicy"],
    )
    builder.declare_role(
        "BlueGreenHookRole",
        HOOK_PRINCIPAL,
        ["AWSCodeDeployFullAccess"],
        role_name=props.hook_role_name,
    )

    # ECS cluster
    capacity = []
    if props.instance_type:
        capacity.append(
            CapacityAllocation("ClusterCapacity", props.instance_type, props.desired_capacity)
        )
    cluster = builder.declare_cluster("Cluster", network, capacity)

    alb = builder.declare_load_balancer("LoadBalancer", network, [alb_sg])

    # Task definitions
    family = f"{props.project_name}-{props.deploy_environment}"
    task_defs = {}
    for colour, image in (("Blue", props.blue_image), ("Green", props.green_image)):
        task_defs[colour] = builder.declare_task_definition(
            f"{colour}TaskDefinition",
            image,
            props.cpu,
            props.memory,
            [PortMapping(props.container_port)],
            container_name=props.container_name,
            family=family,
            launch_type=cluster.launch_type,
            execution_role=execution_role,
        )

    blue_tg = builder.declare_target_group(
        "BlueTargetGroup", task_defs["Blue"], props.container_port, network=network
    )
    green_tg = builder.declare_target_group(
        "GreenTargetGroup", task_defs["Green"], props.container_port, network=network
    )

    # ALB listeners (prod + test)
    prod_listener = builder.declare_listener("ProductionListener", alb, props.prod_port, [(blue_tg, 100)])
    test_listener = builder.declare_listener("TestListener", alb, props.test_port, [(green_tg, 100)])

    # tasks in public subnets pull images over their own public address
    assign_public_ip = props.subnet_type == "public"
    service = builder.declare_service("Service", cluster, props.desired_count)
    blue_task_set = builder.declare_task_set(
        "BlueTaskSet",
        service,
        task_defs["Blue"],
        blue_tg,
        100,
        security_groups=[service_sg],
        assign_public_ip=assign_public_ip,
    )
    green_task_set = builder.declare_task_set(
        "GreenTaskSet",
        service,
        task_defs["Green"],
        green_tg,
        0,
        security_groups=[service_sg],
        assign_public_ip=assign_public_ip,
    )
    builder.mark_primary(blue_task_set)

    if props.test_traffic_hook:
        builder.declare_lifecycle_hook(
            "AfterAllowTestTraffic", props.test_traffic_hook, test_listener=test_listener
        )

    return builder.build_hook_declaration(
        service,
        task_defs["Blue"],
        task_defs["Green"],
        blue_task_set,
        green_task_set,
        prod_listener,
        test_listener,
        blue_tg,
        green_tg,
        props.routing_policy(),
        props.termination_wait_minutes,
    )
