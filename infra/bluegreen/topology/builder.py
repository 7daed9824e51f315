"""Assembly and validation of the blue/green resource graph.

Every ``declare_*`` call validates its own inputs against the entities already
declared and returns an immutable descriptor. ``build_hook_declaration`` then
cross-checks the blue and green halves of the graph before anything is handed
to CloudFormation, because the deployment hook accepts many inconsistent
graphs and only fails once a rollout is under way.
"""

import logging
import re
from collections.abc import Iterable, Sequence

from bluegreen.topology import errors
from bluegreen.topology.models import (
    EC2,
    FARGATE,
    FARGATE_TIERS,
    HOOK_PRINCIPAL,
    LIFECYCLE_EVENTS,
    MAX_TERMINATION_WAIT_MINUTES,
    PORT_MAPPING_PROTOCOLS,
    RESERVED_NAMES,
    SECURITY_GROUP_PROTOCOLS,
    AllAtOnce,
    CapacityAllocation,
    Cluster,
    HealthCheck,
    HookDeclaration,
    LifecycleHook,
    Listener,
    LoadBalancer,
    NetworkContext,
    NetworkLookup,
    PortMapping,
    Role,
    RoutingPolicy,
    SecurityGroup,
    SecurityGroupRule,
    Service,
    TargetGroup,
    TaskDefinition,
    TaskSet,
    TimeBasedCanary,
    TimeBasedLinear,
    Topology,
    WeightedTarget,
)
from bluegreen.topology.network import NetworkDirectory

logger = logging.getLogger(__name__)

_LOGICAL_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9]{0,254}$")
_MAX_LISTENER_WEIGHT = 999


class TopologyBuilder:
    def __init__(self, directory: NetworkDirectory) -> None:
        self._directory = directory
        self._names: set[str] = set(RESERVED_NAMES)
        self._networks: list[NetworkContext] = []
        self._security_groups: list[SecurityGroup] = []
        self._roles: list[Role] = []
        self._clusters: list[Cluster] = []
        self._load_balancers: list[LoadBalancer] = []
        self._task_definitions: list[TaskDefinition] = []
        self._target_groups: list[TargetGroup] = []
        self._listeners: list[Listener] = []
        self._services: list[Service] = []
        self._task_sets: list[TaskSet] = []
        # service name -> primary task set
        self._primary: dict[str, TaskSet] = {}
        self._lifecycle_hooks: dict[str, LifecycleHook] = {}

    # -- registry helpers --------------------------------------------------

    def _check_name(self, name: str) -> None:
        if not _LOGICAL_NAME.match(name or ""):
            raise errors.InvalidResourceSpec(
                "Logical name must be alphanumeric and start with a letter",
                entity=name,
                field="name",
            )
        if name in self._names:
            raise errors.DuplicateLogicalName("Logical name already declared", entity=name)

    def _register(self, collection: list, entity):
        self._names.add(entity.name)
        collection.append(entity)
        logger.debug("Declared %s %s", type(entity).__name__, entity.name)
        return entity

    @staticmethod
    def _require_declared(collection: list, entity, kind: str) -> None:
        if entity not in collection:
            raise errors.IncompleteTopology(
                f"{kind} was not declared on this builder",
                entity=getattr(entity, "name", None),
            )

    # -- declarations ------------------------------------------------------

    def declare_network(self, lookup_criteria: NetworkLookup, name: str = "Vpc") -> NetworkContext:
        self._check_name(name)
        matches = self._directory.find_networks(lookup_criteria)
        if not matches:
            raise errors.NetworkNotFound(
                "No network matches the lookup criteria",
                entity=name,
                field="lookup_criteria",
                expected=lookup_criteria.describe(),
            )
        if len(matches) > 1:
            raise errors.AmbiguousNetwork(
                "More than one network matches the lookup criteria",
                entity=name,
                field="lookup_criteria",
                expected=1,
                actual=sorted(m.vpc_id for m in matches),
            )

        found = matches[0]
        network = NetworkContext(
            name=name,
            vpc_id=found.vpc_id,
            subnets=found.subnets,
            subnet_type=lookup_criteria.subnet_type,
        )
        if not network.selected_subnets:
            raise errors.NetworkNotFound(
                f"Network has no {lookup_criteria.subnet_type} subnets",
                entity=name,
                field="subnet_type",
                expected=lookup_criteria.subnet_type,
                actual=found.vpc_id,
            )
        return self._register(self._networks, network)

    def declare_security_group(
        self,
        name: str,
        network: NetworkContext,
        rules: Iterable[SecurityGroupRule],
        *,
        description: str = "",
        allow_all_outbound: bool = True,
        egress: Iterable[SecurityGroupRule] = (),
    ) -> SecurityGroup:
        self._check_name(name)
        self._require_declared(self._networks, network, "Network")
        ingress = tuple(rules)
        egress = tuple(egress)
        for rule in ingress + egress:
            self._check_rule(name, network, rule)

        return self._register(
            self._security_groups,
            SecurityGroup(
                name=name,
                network=network,
                ingress=ingress,
                description=description or f"{name} security group",
                allow_all_outbound=allow_all_outbound,
                egress=egress,
            ),
        )

    def _check_rule(self, name: str, network: NetworkContext, rule: SecurityGroupRule) -> None:
        if rule.protocol not in SECURITY_GROUP_PROTOCOLS:
            raise errors.InvalidRule(
                "Unrecognized protocol",
                entity=name,
                field="protocol",
                expected=SECURITY_GROUP_PROTOCOLS,
                actual=rule.protocol,
            )
        # all-protocol rules cover every port; -1 is the only other accepted value
        lowest = -1 if rule.protocol == "-1" else 0
        for field_name in ("from_port", "to_port"):
            port = getattr(rule, field_name)
            if not lowest <= port <= 65535:
                raise errors.InvalidRule(
                    "Port out of range",
                    entity=name,
                    field=field_name,
                    expected=f"{lowest}-65535",
                    actual=port,
                )
        if rule.protocol != "-1" and rule.from_port > rule.to_port:
            raise errors.InvalidRule(
                "Port range is inverted",
                entity=name,
                field="to_port",
                expected=f">= {rule.from_port}",
                actual=rule.to_port,
            )
        if (rule.cidr is None) == (rule.source is None):
            raise errors.InvalidRule(
                "Rule needs exactly one peer: a CIDR or a source security group",
                entity=name,
                field="peer",
            )
        if rule.source is not None:
            self._require_declared(self._security_groups, rule.source, "Source security group")
            if rule.source.network.vpc_id != network.vpc_id:
                raise errors.InvalidRule(
                    "Source security group lives in another network",
                    entity=name,
                    field="source",
                    expected=network.vpc_id,
                    actual=rule.source.network.vpc_id,
                )

    def declare_role(
        self,
        name: str,
        assumed_by: str,
        managed_policies: Sequence[str] = (),
        role_name: str | None = None,
    ) -> Role:
        self._check_name(name)
        if not assumed_by:
            raise errors.InvalidResourceSpec("Role needs a service principal", entity=name, field="assumed_by")
        return self._register(
            self._roles,
            Role(name=name, assumed_by=assumed_by, managed_policies=tuple(managed_policies), role_name=role_name),
        )

    def declare_cluster(
        self,
        name: str,
        network: NetworkContext,
        capacity: Iterable[CapacityAllocation] = (),
    ) -> Cluster:
        self._check_name(name)
        self._require_declared(self._networks, network, "Network")
        capacity = tuple(capacity)
        allocation_names = set()
        for allocation in capacity:
            if not _LOGICAL_NAME.match(allocation.name or ""):
                raise errors.InvalidResourceSpec(
                    "Capacity allocation name must be alphanumeric and start with a letter",
                    entity=name,
                    field="capacity",
                    actual=allocation.name,
                )
            if allocation.name in allocation_names:
                raise errors.DuplicateLogicalName(
                    "Capacity allocation name used twice in one cluster", entity=name, actual=allocation.name
                )
            allocation_names.add(allocation.name)
            if not allocation.instance_type:
                raise errors.InvalidResourceSpec(
                    "Capacity allocation needs an instance type", entity=allocation.name, field="instance_type"
                )
            if allocation.desired_count < 1:
                raise errors.InvalidResourceSpec(
                    "Capacity allocation needs at least one instance",
                    entity=allocation.name,
                    field="desired_count",
                    expected=">= 1",
                    actual=allocation.desired_count,
                )
        return self._register(self._clusters, Cluster(name=name, network=network, capacity=capacity))

    def declare_load_balancer(
        self,
        name: str,
        network: NetworkContext,
        security_groups: Iterable[SecurityGroup] = (),
        internet_facing: bool = True,
    ) -> LoadBalancer:
        self._check_name(name)
        self._require_declared(self._networks, network, "Network")
        security_groups = tuple(security_groups)
        for group in security_groups:
            self._require_declared(self._security_groups, group, "Security group")

        load_balancer = LoadBalancer(
            name=name,
            network=network,
            security_groups=security_groups,
            internet_facing=internet_facing,
        )
        zones = {s.availability_zone for s in load_balancer.subnets}
        if len(zones) < 2:
            raise errors.InvalidResourceSpec(
                "Load balancer needs subnets in at least two availability zones",
                entity=name,
                field="subnets",
                expected=">= 2 zones",
                actual=sorted(zones),
            )
        return self._register(self._load_balancers, load_balancer)

    def declare_task_definition(
        self,
        name: str,
        image_ref: str,
        cpu: int,
        memory: int,
        port_mappings: Iterable[PortMapping | int],
        *,
        container_name: str = "web",
        family: str | None = None,
        network_mode: str = "awsvpc",
        launch_type: str = FARGATE,
        execution_role: Role | None = None,
    ) -> TaskDefinition:
        self._check_name(name)
        if not image_ref or not image_ref.strip():
            raise errors.InvalidResourceSpec("Image reference is empty", entity=name, field="image_ref")

        mappings = tuple(m if isinstance(m, PortMapping) else PortMapping(container_port=m) for m in port_mappings)
        if not mappings:
            raise errors.InvalidResourceSpec("At least one port mapping is required", entity=name, field="port_mappings")
        seen: set[int] = set()
        for mapping in mappings:
            if not 1 <= mapping.container_port <= 65535 or mapping.protocol not in PORT_MAPPING_PROTOCOLS:
                raise errors.InvalidResourceSpec(
                    "Invalid port mapping",
                    entity=name,
                    field="port_mappings",
                    expected=f"port 1-65535 over {PORT_MAPPING_PROTOCOLS}",
                    actual=(mapping.container_port, mapping.protocol),
                )
            if mapping.container_port in seen:
                raise errors.InvalidResourceSpec(
                    "Container port mapped twice", entity=name, field="port_mappings", actual=mapping.container_port
                )
            seen.add(mapping.container_port)

        if launch_type not in (FARGATE, EC2):
            raise errors.InvalidResourceSpec(
                "Unknown launch type", entity=name, field="launch_type", expected=(FARGATE, EC2), actual=launch_type
            )
        if launch_type == FARGATE:
            if network_mode != "awsvpc":
                raise errors.InvalidResourceSpec(
                    "Fargate tasks must use awsvpc networking",
                    entity=name,
                    field="network_mode",
                    expected="awsvpc",
                    actual=network_mode,
                )
            if cpu not in FARGATE_TIERS:
                raise errors.InvalidResourceSpec(
                    "cpu is not a Fargate tier", entity=name, field="cpu", expected=sorted(FARGATE_TIERS), actual=cpu
                )
            if memory not in FARGATE_TIERS[cpu]:
                raise errors.InvalidResourceSpec(
                    f"memory is not allowed with {cpu} cpu units",
                    entity=name,
                    field="memory",
                    expected=FARGATE_TIERS[cpu],
                    actual=memory,
                )
        elif cpu <= 0 or memory <= 0:
            raise errors.InvalidResourceSpec(
                "cpu and memory must be positive", entity=name, field="cpu/memory", actual=(cpu, memory)
            )
        if execution_role is not None:
            self._require_declared(self._roles, execution_role, "Execution role")

        return self._register(
            self._task_definitions,
            TaskDefinition(
                name=name,
                image=image_ref,
                cpu=cpu,
                memory=memory,
                port_mappings=mappings,
                container_name=container_name,
                family=family,
                network_mode=network_mode,
                launch_type=launch_type,
                execution_role=execution_role,
            ),
        )

    def declare_target_group(
        self,
        name: str,
        task_def: TaskDefinition,
        port: int,
        *,
        network: NetworkContext,
        protocol: str = "HTTP",
        target_type: str | None = None,
        health_check: HealthCheck | None = None,
        deregistration_delay_seconds: int = 5,
    ) -> TargetGroup:
        self._check_name(name)
        self._require_declared(self._task_definitions, task_def, "Task definition")
        self._require_declared(self._networks, network, "Network")
        if port not in task_def.ports:
            raise errors.PortMismatch(
                "Port is not mapped by the task definition",
                entity=name,
                field="port",
                expected=sorted(task_def.ports),
                actual=port,
            )

        expected_type = "ip" if task_def.network_mode == "awsvpc" else "instance"
        if target_type is not None and target_type != expected_type:
            raise errors.TargetTypeMismatch(
                f"{task_def.network_mode} tasks need {expected_type} targets",
                entity=name,
                field="target_type",
                expected=expected_type,
                actual=target_type,
            )

        health_check = health_check or HealthCheck()
        if health_check.timeout_seconds >= health_check.interval_seconds:
            raise errors.InvalidResourceSpec(
                "Health check timeout must be shorter than its interval",
                entity=name,
                field="health_check.timeout_seconds",
                expected=f"< {health_check.interval_seconds}",
                actual=health_check.timeout_seconds,
            )

        return self._register(
            self._target_groups,
            TargetGroup(
                name=name,
                task_definition=task_def,
                port=port,
                network=network,
                target_type=expected_type,
                protocol=protocol,
                health_check=health_check,
                deregistration_delay_seconds=deregistration_delay_seconds,
            ),
        )

    def declare_listener(
        self,
        name: str,
        load_balancer: LoadBalancer,
        port: int,
        initial_targets_with_weights: Iterable[WeightedTarget | tuple[TargetGroup, int]],
        *,
        protocol: str = "HTTP",
    ) -> Listener:
        self._check_name(name)
        self._require_declared(self._load_balancers, load_balancer, "Load balancer")
        if not 1 <= port <= 65535:
            raise errors.InvalidResourceSpec(
                "Listener port out of range", entity=name, field="port", expected="1-65535", actual=port
            )

        targets = tuple(
            t if isinstance(t, WeightedTarget) else WeightedTarget(target_group=t[0], weight=t[1])
            for t in initial_targets_with_weights
        )
        names = [t.target_group.name for t in targets]
        if len(set(names)) != len(names):
            raise errors.InvalidResourceSpec(
                "Target group listed twice", entity=name, field="targets", actual=names
            )
        for target in targets:
            self._require_declared(self._target_groups, target.target_group, "Target group")
            if not 0 <= target.weight <= _MAX_LISTENER_WEIGHT:
                raise errors.WeightSumInvalid(
                    "Weight out of range",
                    entity=name,
                    field=f"weight[{target.target_group.name}]",
                    expected=f"0-{_MAX_LISTENER_WEIGHT}",
                    actual=target.weight,
                )
        total = sum(t.weight for t in targets)
        if total != 100:
            raise errors.WeightSumInvalid(
                "Listener weights must sum to 100", entity=name, field="weights", expected=100, actual=total
            )

        for existing in self._listeners:
            if existing.load_balancer.name == load_balancer.name and existing.port == port:
                raise errors.DuplicateListenerPort(
                    f"Port already bound by listener {existing.name}",
                    entity=name,
                    field="port",
                    actual=port,
                )

        return self._register(
            self._listeners,
            Listener(name=name, load_balancer=load_balancer, port=port, targets=targets, protocol=protocol),
        )

    def declare_service(
        self,
        name: str,
        cluster: Cluster,
        desired_count: int,
        *,
        propagate_tags: bool = True,
    ) -> Service:
        self._check_name(name)
        self._require_declared(self._clusters, cluster, "Cluster")
        if desired_count < 1:
            raise errors.InvalidDesiredCount(
                "Service needs at least one task", entity=name, field="desired_count", expected=">= 1", actual=desired_count
            )
        if self._services:
            raise errors.ServiceAlreadyDeclared(
                "Only one service may take part in a rollout",
                entity=name,
                actual=self._services[0].name,
            )
        return self._register(
            self._services,
            Service(name=name, cluster=cluster, desired_count=desired_count, propagate_tags=propagate_tags),
        )

    def declare_task_set(
        self,
        name: str,
        service: Service,
        task_def: TaskDefinition,
        target_group: TargetGroup,
        scale_percent: float,
        *,
        security_groups: Iterable[SecurityGroup] = (),
        assign_public_ip: bool = False,
    ) -> TaskSet:
        self._check_name(name)
        self._require_declared(self._services, service, "Service")
        self._require_declared(self._task_definitions, task_def, "Task definition")
        self._require_declared(self._target_groups, target_group, "Target group")
        if not 0 <= scale_percent <= 100:
            raise errors.ScaleOutOfRange(
                "Scale must be a percentage", entity=name, field="scale_percent", expected="0-100", actual=scale_percent
            )
        if target_group.task_definition != task_def:
            raise errors.TargetGroupTaskDefMismatch(
                "Target group is bound to a different task definition",
                entity=name,
                field="target_group",
                expected=task_def.name,
                actual=target_group.task_definition.name,
            )
        if task_def.launch_type != service.cluster.launch_type:
            raise errors.InvalidResourceSpec(
                "Task definition launch type does not match the cluster",
                entity=name,
                field="launch_type",
                expected=service.cluster.launch_type,
                actual=task_def.launch_type,
            )
        security_groups = tuple(security_groups)
        for group in security_groups:
            self._require_declared(self._security_groups, group, "Security group")

        return self._register(
            self._task_sets,
            TaskSet(
                name=name,
                service=service,
                task_definition=task_def,
                target_group=target_group,
                scale_percent=scale_percent,
                security_groups=security_groups,
                assign_public_ip=assign_public_ip,
            ),
        )

    def mark_primary(self, task_set: TaskSet) -> TaskSet:
        self._require_declared(self._task_sets, task_set, "Task set")
        current = self._primary.get(task_set.service.name)
        if current is not None and current.name != task_set.name:
            raise errors.ServiceAlreadyHasPrimary(
                "Service already has a primary task set",
                entity=task_set.service.name,
                field="primary_task_set",
                expected=current.name,
                actual=task_set.name,
            )
        self._primary[task_set.service.name] = task_set
        logger.debug("Marked %s primary for %s", task_set.name, task_set.service.name)
        return task_set

    def declare_lifecycle_hook(
        self,
        event: str,
        function_name: str,
        *,
        test_listener: Listener | None = None,
    ) -> LifecycleHook:
        if event not in LIFECYCLE_EVENTS:
            raise errors.InvalidResourceSpec(
                "Unknown lifecycle event", entity=function_name, field="event", expected=LIFECYCLE_EVENTS, actual=event
            )
        if not function_name:
            raise errors.InvalidResourceSpec("Lifecycle hook needs a function name", entity=event, field="function_name")
        if event in self._lifecycle_hooks:
            raise errors.DuplicateLifecycleHook(
                "Lifecycle event already has a hook",
                entity=event,
                actual=self._lifecycle_hooks[event].function_name,
            )
        # the hook function probes test traffic, so it needs a listener to probe
        if test_listener is None:
            raise errors.InvalidResourceSpec(
                "Lifecycle hook needs a test listener", entity=function_name, field="test_listener"
            )
        self._require_declared(self._listeners, test_listener, "Listener")
        hook = LifecycleHook(event=event, function_name=function_name, test_listener=test_listener)
        self._lifecycle_hooks[event] = hook
        return hook

    def topology(self) -> Topology:
        return Topology(
            networks=tuple(self._networks),
            security_groups=tuple(self._security_groups),
            roles=tuple(self._roles),
            clusters=tuple(self._clusters),
            load_balancers=tuple(self._load_balancers),
            task_definitions=tuple(self._task_definitions),
            target_groups=tuple(self._target_groups),
            listeners=tuple(self._listeners),
            services=tuple(self._services),
            task_sets=tuple(self._task_sets),
            primary_task_sets=tuple(self._primary.values()),
            lifecycle_hooks=tuple(self._lifecycle_hooks.values()),
        )

    # -- final cross-validation --------------------------------------------

    def build_hook_declaration(
        self,
        service: Service,
        blue_task_def: TaskDefinition,
        green_task_def: TaskDefinition,
        blue_task_set: TaskSet,
        green_task_set: TaskSet,
        prod_listener: Listener,
        test_listener: Listener,
        blue_tg: TargetGroup,
        green_tg: TargetGroup,
        routing_policy: RoutingPolicy,
        termination_wait_minutes: int,
        *,
        service_role: Role | None = None,
    ) -> HookDeclaration:
        """Cross-check the blue and green halves and freeze the declaration.

        Raises:
            IncompleteTopology: blue and green resources are cross-wired, a
                counterpart is missing, or the traffic routes do not match.
            InvalidRoutingPolicy: unknown policy or termination wait out of range.
        """
        if not isinstance(routing_policy, (AllAtOnce, TimeBasedCanary, TimeBasedLinear)):
            raise errors.InvalidRoutingPolicy(
                "Unknown traffic routing policy", field="routing_policy", actual=type(routing_policy).__name__
            )
        if not 0 <= termination_wait_minutes <= MAX_TERMINATION_WAIT_MINUTES:
            raise errors.InvalidRoutingPolicy(
                "Termination wait out of range",
                field="termination_wait_minutes",
                expected=f"0-{MAX_TERMINATION_WAIT_MINUTES}",
                actual=termination_wait_minutes,
            )

        self._require_declared(self._services, service, "Service")
        for pair, collection in (
            ((blue_task_def, green_task_def), self._task_definitions),
            ((blue_task_set, green_task_set), self._task_sets),
            ((blue_tg, green_tg), self._target_groups),
            ((prod_listener, test_listener), self._listeners),
        ):
            blue, green = pair
            self._require_declared(collection, blue, type(blue).__name__)
            self._require_declared(collection, green, type(green).__name__)
            if blue.name == green.name:
                raise errors.IncompleteTopology(
                    "Blue and green must be distinct resources", entity=blue.name, field=type(blue).__name__
                )

        for colour, tg, task_def in (("blue", blue_tg, blue_task_def), ("green", green_tg, green_task_def)):
            if tg.task_definition != task_def:
                raise errors.IncompleteTopology(
                    f"The {colour} target group is bound to another task definition",
                    entity=tg.name,
                    field="task_definition",
                    expected=task_def.name,
                    actual=tg.task_definition.name,
                )

        for colour, task_set, task_def, tg in (
            ("blue", blue_task_set, blue_task_def, blue_tg),
            ("green", green_task_set, green_task_def, green_tg),
        ):
            if task_set.service != service:
                raise errors.IncompleteTopology(
                    f"The {colour} task set belongs to another service",
                    entity=task_set.name,
                    field="service",
                    expected=service.name,
                    actual=task_set.service.name,
                )
            if task_set.task_definition != task_def:
                raise errors.IncompleteTopology(
                    f"The {colour} task set runs another task definition",
                    entity=task_set.name,
                    field="task_definition",
                    expected=task_def.name,
                    actual=task_set.task_definition.name,
                )
            if task_set.target_group != tg:
                raise errors.IncompleteTopology(
                    f"The {colour} task set registers with another target group",
                    entity=task_set.name,
                    field="target_group",
                    expected=tg.name,
                    actual=task_set.target_group.name,
                )

        topology = self.topology()
        service_task_sets = topology.task_sets_of(service)
        expected_sets = {blue_task_set.name, green_task_set.name}
        actual_sets = {ts.name for ts in service_task_sets}
        if actual_sets != expected_sets:
            raise errors.IncompleteTopology(
                "Service task sets are not exactly blue and green",
                entity=service.name,
                field="task_sets",
                expected=sorted(expected_sets),
                actual=sorted(actual_sets),
            )
        expected_defs = {blue_task_def.name, green_task_def.name}
        reachable_defs = {ts.task_definition.name for ts in service_task_sets}
        if reachable_defs != expected_defs:
            raise errors.IncompleteTopology(
                "Task definitions reachable from the service are not exactly blue and green",
                entity=service.name,
                field="task_definitions",
                expected=sorted(expected_defs),
                actual=sorted(reachable_defs),
            )

        if blue_task_def.port_shape != green_task_def.port_shape:
            raise errors.IncompleteTopology(
                "Blue and green task definitions map different ports",
                entity=green_task_def.name,
                field="port_mappings",
                expected=blue_task_def.port_shape,
                actual=green_task_def.port_shape,
            )
        if blue_tg.port != green_tg.port:
            raise errors.IncompleteTopology(
                "Blue and green target groups route to different ports",
                entity=green_tg.name,
                field="port",
                expected=blue_tg.port,
                actual=green_tg.port,
            )

        if prod_listener.load_balancer != test_listener.load_balancer:
            raise errors.IncompleteTopology(
                "Production and test listeners must share a load balancer",
                entity=test_listener.name,
                field="load_balancer",
                expected=prod_listener.load_balancer.name,
                actual=test_listener.load_balancer.name,
            )
        routed = {blue_tg.name, green_tg.name}
        for listener in (prod_listener, test_listener):
            stray = {tg.name for tg in listener.target_groups} - routed
            if stray:
                raise errors.IncompleteTopology(
                    "Listener routes to a target group outside the rollout",
                    entity=listener.name,
                    field="targets",
                    expected=sorted(routed),
                    actual=sorted(stray),
                )
        if blue_tg not in prod_listener.target_groups:
            raise errors.IncompleteTopology(
                "Production listener does not route to the blue target group",
                entity=prod_listener.name,
                field="targets",
                expected=blue_tg.name,
                actual=[tg.name for tg in prod_listener.target_groups],
            )

        if not topology.is_primary(blue_task_set):
            raise errors.IncompleteTopology(
                "The blue task set must be the primary task set",
                entity=service.name,
                field="primary_task_set",
                expected=blue_task_set.name,
                actual=self._primary[service.name].name if service.name in self._primary else None,
            )

        declaration = HookDeclaration(
            service=service,
            blue_task_definition=blue_task_def,
            green_task_definition=green_task_def,
            blue_task_set=blue_task_set,
            green_task_set=green_task_set,
            prod_listener=prod_listener,
            test_listener=test_listener,
            blue_target_group=blue_tg,
            green_target_group=green_tg,
            routing_policy=routing_policy,
            termination_wait_minutes=termination_wait_minutes,
            service_role=self._resolve_hook_role(service_role),
            topology=topology,
            lifecycle_hooks=topology.lifecycle_hooks,
        )
        logger.info(
            "Built %s hook declaration for service %s (blue=%s, green=%s)",
            routing_policy.type,
            service.name,
            blue_task_set.name,
            green_task_set.name,
        )
        return declaration

    def _resolve_hook_role(self, service_role: Role | None) -> Role:
        if service_role is not None:
            self._require_declared(self._roles, service_role, "Hook service role")
        else:
            candidates = [r for r in self._roles if r.assumed_by == HOOK_PRINCIPAL]
            if len(candidates) != 1:
                raise errors.IncompleteTopology(
                    f"Expected exactly one role assumed by {HOOK_PRINCIPAL}",
                    field="service_role",
                    expected=1,
                    actual=len(candidates),
                )
            service_role = candidates[0]
        # the hook refers to its role by physical name
        if not service_role.role_name:
            raise errors.IncompleteTopology(
                "Hook service role needs a fixed role name", entity=service_role.name, field="role_name"
            )
        return service_role
