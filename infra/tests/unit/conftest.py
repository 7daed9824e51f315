from dataclasses import dataclass

import pytest

from bluegreen.props import TopologyProps
from bluegreen.topology.assembly import assemble_topology
from bluegreen.topology.builder import TopologyBuilder
from bluegreen.topology.models import (
    HOOK_PRINCIPAL,
    Cluster,
    HookDeclaration,
    Listener,
    LoadBalancer,
    NetworkContext,
    NetworkDescription,
    NetworkLookup,
    Role,
    SecurityGroup,
    SecurityGroupRule,
    Service,
    Subnet,
    TargetGroup,
    TaskDefinition,
)
from bluegreen.topology.network import StaticNetworkDirectory

DEFAULT_VPC = NetworkDescription(
    vpc_id="vpc-default",
    subnets=(
        Subnet("subnet-pub-a", "vpc-default", "us-east-1a", True),
        Subnet("subnet-pub-b", "vpc-default", "us-east-1b", True),
        Subnet("subnet-priv-a", "vpc-default", "us-east-1a", False),
        Subnet("subnet-priv-b", "vpc-default", "us-east-1b", False),
    ),
)

# public subnets only
TEAM_VPC = NetworkDescription(
    vpc_id="vpc-team",
    subnets=(
        Subnet("subnet-team-a", "vpc-team", "us-east-1a", True),
        Subnet("subnet-team-b", "vpc-team", "us-east-1b", True),
    ),
)


@pytest.fixture
def directory() -> StaticNetworkDirectory:
    return StaticNetworkDirectory(
        [DEFAULT_VPC, TEAM_VPC],
        default_vpc_id="vpc-default",
        tags={"vpc-team": {"team": "payments"}},
    )


@pytest.fixture
def builder(directory: StaticNetworkDirectory) -> TopologyBuilder:
    return TopologyBuilder(directory)


@pytest.fixture
def props() -> TopologyProps:
    return TopologyProps()


@pytest.fixture
def declaration(builder: TopologyBuilder, props: TopologyProps) -> HookDeclaration:
    return assemble_topology(builder, props)


@dataclass
class Parts:
    """Everything a rollout needs except the task sets."""

    network: NetworkContext
    service_sg: SecurityGroup
    hook_role: Role
    cluster: Cluster
    alb: LoadBalancer
    blue_td: TaskDefinition
    green_td: TaskDefinition
    blue_tg: TargetGroup
    green_tg: TargetGroup
    prod: Listener
    test: Listener
    service: Service


@pytest.fixture
def parts(builder: TopologyBuilder) -> Parts:
    network = builder.declare_network(NetworkLookup(is_default=True))
    alb_sg = builder.declare_security_group(
        "AlbSG", network, [SecurityGroupRule.tcp(80, cidr="0.0.0.0/0")]
    )
    service_sg = builder.declare_security_group(
        "ServiceSG", network, [SecurityGroupRule.tcp(80, source=alb_sg)]
    )
    hook_role = builder.declare_role(
        "HookRole", HOOK_PRINCIPAL, ["AWSCodeDeployFullAccess"], role_name="hookrole"
    )
    cluster = builder.declare_cluster("Cluster", network)
    alb = builder.declare_load_balancer("Alb", network, [alb_sg])
    blue_td = builder.declare_task_definition("BlueTD", "httpd:latest", 256, 512, [80])
    green_td = builder.declare_task_definition("GreenTD", "nginxdemos/hello:0.2", 256, 512, [80])
    blue_tg = builder.declare_target_group("BlueTG", blue_td, 80, network=network)
    green_tg = builder.declare_target_group("GreenTG", green_td, 80, network=network)
    prod = builder.declare_listener("ProdListener", alb, 80, [(blue_tg, 100)])
    test = builder.declare_listener("TestListener", alb, 9002, [(green_tg, 100)])
    service = builder.declare_service("Service", cluster, 2)
    return Parts(
        network=network,
        service_sg=service_sg,
        hook_role=hook_role,
        cluster=cluster,
        alb=alb,
        blue_td=blue_td,
        green_td=green_td,
        blue_tg=blue_tg,
        green_tg=green_tg,
        prod=prod,
        test=test,
        service=service,
    )
