from dataclasses import dataclass, field
from typing import Literal

from bluegreen.topology.errors import InvalidResourceSpec, InvalidRoutingPolicy

FARGATE = "FARGATE"
EC2 = "EC2"

LaunchType = Literal["FARGATE", "EC2"]
NetworkMode = Literal["awsvpc", "bridge", "host"]
SubnetType = Literal["public", "private"]
TargetType = Literal["ip", "instance"]

# Fargate cpu units -> allowed memory (MiB)
FARGATE_TIERS: dict[int, tuple[int, ...]] = {
    256: (512, 1024, 2048),
    512: tuple(range(1024, 4096 + 1, 1024)),
    1024: tuple(range(2048, 8192 + 1, 1024)),
    2048: tuple(range(4096, 16384 + 1, 1024)),
    4096: tuple(range(8192, 30720 + 1, 1024)),
    8192: tuple(range(16384, 61440 + 1, 4096)),
    16384: tuple(range(32768, 122880 + 1, 8192)),
}

SECURITY_GROUP_PROTOCOLS = ("tcp", "udp", "icmp", "-1")
PORT_MAPPING_PROTOCOLS = ("tcp", "udp")

LIFECYCLE_EVENTS = (
    "BeforeInstall",
    "AfterInstall",
    "AfterAllowTestTraffic",
    "BeforeAllowTraffic",
    "AfterAllowTraffic",
)

# construct ids the stack emits on its own
STACK_OUTPUTS = (
    "LoadBalancerDnsName",
    "ClusterName",
    "ServiceName",
    "ProdListenerPort",
    "TestListenerPort",
)
RESERVED_NAMES = frozenset(
    ["PrimaryTaskSet", "CodeDeployBlueGreenHook", *STACK_OUTPUTS]
    + [f"{event}Hook" for event in LIFECYCLE_EVENTS]
)

HOOK_PRINCIPAL = "cloudformation.amazonaws.com"
TASK_PRINCIPAL = "ecs-tasks.amazonaws.com"

# CodeDeploy caps the blue task set termination wait at two days
MAX_TERMINATION_WAIT_MINUTES = 2880


@dataclass(frozen=True)
class Subnet:
    subnet_id: str
    vpc_id: str
    availability_zone: str
    public: bool


@dataclass(frozen=True)
class NetworkLookup:
    """Criteria used to resolve an existing VPC."""

    is_default: bool | None = None
    vpc_id: str | None = None
    tags: tuple[tuple[str, str], ...] = ()
    subnet_type: SubnetType = "private"

    def describe(self) -> str:
        parts = []
        if self.is_default is not None:
            parts.append(f"is_default={self.is_default}")
        if self.vpc_id:
            parts.append(f"vpc_id={self.vpc_id}")
        for key, value in self.tags:
            parts.append(f"tag:{key}={value}")
        return ", ".join(parts) or "any"


@dataclass(frozen=True)
class NetworkDescription:
    """A VPC as reported by a network directory."""

    vpc_id: str
    subnets: tuple[Subnet, ...] = ()


@dataclass(frozen=True)
class NetworkContext:
    name: str
    vpc_id: str
    subnets: tuple[Subnet, ...]
    subnet_type: SubnetType = "private"

    def __post_init__(self) -> None:
        for subnet in self.subnets:
            if subnet.vpc_id != self.vpc_id:
                raise InvalidResourceSpec(
                    "Subnet does not belong to the network",
                    entity=self.name,
                    field="subnets",
                    expected=self.vpc_id,
                    actual=subnet.vpc_id,
                )

    @property
    def selected_subnets(self) -> tuple[Subnet, ...]:
        want_public = self.subnet_type == "public"
        return tuple(s for s in self.subnets if s.public == want_public)

    @property
    def public_subnets(self) -> tuple[Subnet, ...]:
        return tuple(s for s in self.subnets if s.public)

    @property
    def availability_zones(self) -> list[str]:
        return sorted({s.availability_zone for s in self.subnets})


@dataclass(frozen=True)
class CapacityAllocation:
    name: str
    instance_type: str
    desired_count: int = 1


@dataclass(frozen=True)
class Cluster:
    name: str
    network: NetworkContext
    capacity: tuple[CapacityAllocation, ...] = ()

    @property
    def launch_type(self) -> LaunchType:
        return EC2 if self.capacity else FARGATE


@dataclass(frozen=True)
class SecurityGroupRule:
    protocol: str
    from_port: int
    to_port: int
    cidr: str | None = None
    source: "SecurityGroup | None" = None
    description: str = ""

    @classmethod
    def tcp(cls, port: int, **kwargs) -> "SecurityGroupRule":
        return cls("tcp", port, port, **kwargs)


@dataclass(frozen=True)
class SecurityGroup:
    name: str
    network: NetworkContext
    ingress: tuple[SecurityGroupRule, ...]
    description: str = ""
    allow_all_outbound: bool = True
    egress: tuple[SecurityGroupRule, ...] = ()


@dataclass(frozen=True)
class Role:
    name: str
    assumed_by: str
    managed_policies: tuple[str, ...] = ()
    role_name: str | None = None


@dataclass(frozen=True)
class PortMapping:
    container_port: int
    protocol: str = "tcp"


@dataclass(frozen=True)
class TaskDefinition:
    name: str
    image: str
    cpu: int
    memory: int
    port_mappings: tuple[PortMapping, ...]
    container_name: str = "web"
    family: str | None = None
    network_mode: NetworkMode = "awsvpc"
    launch_type: LaunchType = FARGATE
    execution_role: Role | None = None

    @property
    def ports(self) -> set[int]:
        return {m.container_port for m in self.port_mappings}

    @property
    def port_shape(self) -> tuple[tuple[int, str], ...]:
        return tuple(sorted((m.container_port, m.protocol) for m in self.port_mappings))


@dataclass(frozen=True)
class HealthCheck:
    path: str = "/"
    interval_seconds: int = 5
    timeout_seconds: int = 4
    healthy_threshold: int = 2
    unhealthy_threshold: int = 3
    healthy_http_codes: str = "200"


@dataclass(frozen=True)
class TargetGroup:
    name: str
    task_definition: TaskDefinition
    port: int
    network: NetworkContext
    target_type: TargetType = "ip"
    protocol: str = "HTTP"
    health_check: HealthCheck = field(default_factory=HealthCheck)
    deregistration_delay_seconds: int = 5


@dataclass(frozen=True)
class LoadBalancer:
    name: str
    network: NetworkContext
    security_groups: tuple[SecurityGroup, ...] = ()
    internet_facing: bool = True

    @property
    def subnets(self) -> tuple[Subnet, ...]:
        if self.internet_facing:
            return self.network.public_subnets
        return tuple(s for s in self.network.subnets if not s.public)


@dataclass(frozen=True)
class WeightedTarget:
    target_group: TargetGroup
    weight: int


@dataclass(frozen=True)
class Listener:
    name: str
    load_balancer: LoadBalancer
    port: int
    targets: tuple[WeightedTarget, ...]
    protocol: str = "HTTP"

    @property
    def target_groups(self) -> tuple[TargetGroup, ...]:
        return tuple(t.target_group for t in self.targets)


@dataclass(frozen=True)
class Service:
    name: str
    cluster: Cluster
    desired_count: int
    propagate_tags: bool = True
    deployment_controller: str = "EXTERNAL"


@dataclass(frozen=True)
class TaskSet:
    name: str
    service: Service
    task_definition: TaskDefinition
    target_group: TargetGroup
    scale_percent: float
    security_groups: tuple[SecurityGroup, ...] = ()
    assign_public_ip: bool = False


@dataclass(frozen=True)
class LifecycleHook:
    event: str
    function_name: str
    test_listener: Listener


@dataclass(frozen=True)
class AllAtOnce:
    type = "AllAtOnce"


@dataclass(frozen=True)
class _TimeBasedPolicy:
    step_percentage: int
    bake_time_minutes: int

    def __post_init__(self) -> None:
        if not 0 < self.step_percentage < 100:
            raise InvalidRoutingPolicy(
                "Step percentage must be between 1 and 99",
                entity=type(self).__name__,
                field="step_percentage",
                actual=self.step_percentage,
            )
        if self.bake_time_minutes < 1:
            raise InvalidRoutingPolicy(
                "Bake time must be at least one minute",
                entity=type(self).__name__,
                field="bake_time_minutes",
                actual=self.bake_time_minutes,
            )


@dataclass(frozen=True)
class TimeBasedCanary(_TimeBasedPolicy):
    type = "TimeBasedCanary"


@dataclass(frozen=True)
class TimeBasedLinear(_TimeBasedPolicy):
    type = "TimeBasedLinear"


RoutingPolicy = AllAtOnce | TimeBasedCanary | TimeBasedLinear


@dataclass(frozen=True)
class Topology:
    """Snapshot of everything declared on a builder."""

    networks: tuple[NetworkContext, ...] = ()
    security_groups: tuple[SecurityGroup, ...] = ()
    roles: tuple[Role, ...] = ()
    clusters: tuple[Cluster, ...] = ()
    load_balancers: tuple[LoadBalancer, ...] = ()
    task_definitions: tuple[TaskDefinition, ...] = ()
    target_groups: tuple[TargetGroup, ...] = ()
    listeners: tuple[Listener, ...] = ()
    services: tuple[Service, ...] = ()
    task_sets: tuple[TaskSet, ...] = ()
    primary_task_sets: tuple[TaskSet, ...] = ()
    lifecycle_hooks: tuple[LifecycleHook, ...] = ()

    def task_sets_of(self, service: Service) -> tuple[TaskSet, ...]:
        return tuple(ts for ts in self.task_sets if ts.service.name == service.name)

    def is_primary(self, task_set: TaskSet) -> bool:
        return any(ts.name == task_set.name for ts in self.primary_task_sets)


@dataclass(frozen=True)
class HookDeclaration:
    service: Service
    blue_task_definition: TaskDefinition
    green_task_definition: TaskDefinition
    blue_task_set: TaskSet
    green_task_set: TaskSet
    prod_listener: Listener
    test_listener: Listener
    blue_target_group: TargetGroup
    green_target_group: TargetGroup
    routing_policy: RoutingPolicy
    termination_wait_minutes: int
    service_role: Role
    topology: Topology
    lifecycle_hooks: tuple[LifecycleHook, ...] = ()
