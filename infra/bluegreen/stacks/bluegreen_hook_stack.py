from pathlib import Path

from aws_cdk import (
    Stack,
    Duration,
    RemovalPolicy,
    DefaultStackSynthesizer,
    CfnCodeDeployBlueGreenAdditionalOptions,
    CfnCodeDeployBlueGreenApplication,
    CfnCodeDeployBlueGreenApplicationTarget,
    CfnCodeDeployBlueGreenEcsAttributes,
    CfnCodeDeployBlueGreenHook,
    CfnCodeDeployBlueGreenLifecycleEventHooks,
    CfnTrafficRoute,
    CfnTrafficRouting,
    CfnTrafficRoutingConfig,
    CfnTrafficRoutingTimeBasedCanary,
    CfnTrafficRoutingTimeBasedLinear,
    CfnTrafficRoutingType,
    aws_ec2 as ec2,
    aws_ecs as ecs,
    aws_elasticloadbalancingv2 as elbv2,
    aws_iam as iam,
    aws_lambda as _lambda,
    aws_logs as logs,
    CfnOutput,
)
from constructs import Construct

from bluegreen.topology.models import (
    HookDeclaration,
    LifecycleHook,
    RoutingPolicy,
    SecurityGroupRule,
    TimeBasedCanary,
    TimeBasedLinear,
)

LAMBDA_DIR = Path(__file__).resolve().parents[3] / "src" / "lambda"

_LIFECYCLE_PROPERTIES = {
    "BeforeInstall": "before_install",
    "AfterInstall": "after_install",
    "AfterAllowTestTraffic": "after_allow_test_traffic",
    "BeforeAllowTraffic": "before_allow_traffic",
    "AfterAllowTraffic": "after_allow_traffic",
}


class BlueGreenHookStack(Stack):
    """Renders a validated hook declaration as a CodeDeploy blue/green template.

    Every declared entity becomes a top-level construct named after its
    logical name, so the logical IDs the hook refers to are the declared names.
    """

    def __init__(
        self, scope: Construct, construct_id: str, declaration: HookDeclaration, **kwargs
    ) -> None:
        # the blue/green transform rejects templates carrying Rules
        kwargs.setdefault(
            "synthesizer", DefaultStackSynthesizer(generate_bootstrap_version_rule=False)
        )
        kwargs.setdefault("analytics_reporting", False)
        super().__init__(scope, construct_id, **kwargs)

        self.declaration = declaration
        topology = declaration.topology

        # IAM roles
        self.roles: dict[str, iam.Role] = {}
        for role in topology.roles:
            construct = iam.Role(
                self,
                role.name,
                role_name=role.role_name,
                assumed_by=iam.ServicePrincipal(role.assumed_by),
                managed_policies=[
                    iam.ManagedPolicy.from_aws_managed_policy_name(policy)
                    for policy in role.managed_policies
                ],
            )
            construct.node.default_child.override_logical_id(role.name)
            self.roles[role.name] = construct

        # Security groups
        self.security_groups: dict[str, ec2.CfnSecurityGroup] = {}
        for group in topology.security_groups:
            if group.allow_all_outbound:
                egress = [
                    ec2.CfnSecurityGroup.EgressProperty(
                        ip_protocol="-1",
                        cidr_ip="0.0.0.0/0",
                        description="Allow all outbound traffic by default",
                    )
                ]
            elif group.egress:
                egress = [self._egress_rule(rule) for rule in group.egress]
            else:
                egress = [
                    ec2.CfnSecurityGroup.EgressProperty(
                        ip_protocol="icmp",
                        cidr_ip="255.255.255.255/32",
                        from_port=252,
                        to_port=86,
                        description="Disallow all traffic",
                    )
                ]
            self.security_groups[group.name] = ec2.CfnSecurityGroup(
                self,
                group.name,
                group_description=group.description,
                vpc_id=group.network.vpc_id,
                security_group_ingress=[self._ingress_rule(rule) for rule in group.ingress],
                security_group_egress=egress,
            )

        # ECS clusters
        self.clusters: dict[str, ecs.Cluster] = {}
        for cluster in topology.clusters:
            vpc = ec2.Vpc.from_vpc_attributes(
                self,
                f"{cluster.name}-{cluster.network.name}",
                vpc_id=cluster.network.vpc_id,
                availability_zones=cluster.network.availability_zones,
            )
            construct = ecs.Cluster(self, cluster.name, vpc=vpc)
            construct.node.default_child.override_logical_id(cluster.name)
            for allocation in cluster.capacity:
                subnets = [
                    ec2.Subnet.from_subnet_attributes(
                        self,
                        f"{cluster.name}-{allocation.name}-{subnet.subnet_id}",
                        subnet_id=subnet.subnet_id,
                        availability_zone=subnet.availability_zone,
                    )
                    for subnet in cluster.network.selected_subnets
                ]
                construct.add_capacity(
                    allocation.name,
                    instance_type=ec2.InstanceType(allocation.instance_type),
                    desired_capacity=allocation.desired_count,
                    vpc_subnets=ec2.SubnetSelection(subnets=subnets),
                )
            self.clusters[cluster.name] = construct

        # ALB
        self.load_balancers: dict[str, elbv2.CfnLoadBalancer] = {}
        for lb in topology.load_balancers:
            self.load_balancers[lb.name] = elbv2.CfnLoadBalancer(
                self,
                lb.name,
                type="application",
                scheme="internet-facing" if lb.internet_facing else "internal",
                subnets=[subnet.subnet_id for subnet in lb.subnets],
                security_groups=[
                    self.security_groups[group.name].attr_group_id for group in lb.security_groups
                ],
            )

        # Target groups
        self.target_groups: dict[str, elbv2.CfnTargetGroup] = {}
        for tg in topology.target_groups:
            hc = tg.health_check
            self.target_groups[tg.name] = elbv2.CfnTargetGroup(
                self,
                tg.name,
                port=tg.port,
                protocol=tg.protocol,
                target_type=tg.target_type,
                vpc_id=tg.network.vpc_id,
                health_check_enabled=True,
                health_check_path=hc.path,
                health_check_protocol=tg.protocol,
                health_check_interval_seconds=hc.interval_seconds,
                health_check_timeout_seconds=hc.timeout_seconds,
                healthy_threshold_count=hc.healthy_threshold,
                unhealthy_threshold_count=hc.unhealthy_threshold,
                matcher=elbv2.CfnTargetGroup.MatcherProperty(http_code=hc.healthy_http_codes),
                target_group_attributes=[
                    elbv2.CfnTargetGroup.TargetGroupAttributeProperty(
                        key="deregistration_delay.timeout_seconds",
                        value=str(tg.deregistration_delay_seconds),
                    )
                ],
            )

        # Listeners (prod + test)
        self.listeners: dict[str, elbv2.CfnListener] = {}
        for listener in topology.listeners:
            self.listeners[listener.name] = elbv2.CfnListener(
                self,
                listener.name,
                load_balancer_arn=self.load_balancers[listener.load_balancer.name].ref,
                port=listener.port,
                protocol=listener.protocol,
                default_actions=[
                    elbv2.CfnListener.ActionProperty(
                        type="forward",
                        forward_config=elbv2.CfnListener.ForwardConfigProperty(
                            target_groups=[
                                elbv2.CfnListener.TargetGroupTupleProperty(
                                    target_group_arn=self.target_groups[t.target_group.name].ref,
                                    weight=t.weight,
                                )
                                for t in listener.targets
                            ]
                        ),
                    )
                ],
            )

        # Task definitions
        self.task_definitions: dict[str, ecs.CfnTaskDefinition] = {}
        for task_def in topology.task_definitions:
            execution_role = None
            log_configuration = None
            # the awslogs driver writes through the execution role
            if task_def.execution_role is not None:
                execution_role = self.roles[task_def.execution_role.name].role_arn
                log_group = logs.LogGroup(
                    self,
                    f"{task_def.name}-Logs",
                    retention=logs.RetentionDays.ONE_MONTH,
                    removal_policy=RemovalPolicy.DESTROY,
                )
                log_configuration = ecs.CfnTaskDefinition.LogConfigurationProperty(
                    log_driver="awslogs",
                    options={
                        "awslogs-group": log_group.log_group_name,
                        "awslogs-region": self.region,
                        "awslogs-stream-prefix": task_def.container_name,
                    },
                )
            self.task_definitions[task_def.name] = ecs.CfnTaskDefinition(
                self,
                task_def.name,
                family=task_def.family,
                cpu=str(task_def.cpu),
                memory=str(task_def.memory),
                network_mode=task_def.network_mode,
                requires_compatibilities=[task_def.launch_type],
                execution_role_arn=execution_role,
                container_definitions=[
                    ecs.CfnTaskDefinition.ContainerDefinitionProperty(
                        name=task_def.container_name,
                        image=task_def.image,
                        essential=True,
                        log_configuration=log_configuration,
                        port_mappings=[
                            ecs.CfnTaskDefinition.PortMappingProperty(
                                container_port=m.container_port, protocol=m.protocol
                            )
                            for m in task_def.port_mappings
                        ],
                    )
                ],
            )

        # ECS service with an external deployment controller
        self.services: dict[str, ecs.CfnService] = {}
        for service in topology.services:
            construct = ecs.CfnService(
                self,
                service.name,
                cluster=self.clusters[service.cluster.name].cluster_name,
                desired_count=service.desired_count,
                deployment_controller=ecs.CfnService.DeploymentControllerProperty(
                    type=service.deployment_controller
                ),
                propagate_tags="SERVICE" if service.propagate_tags else None,
            )
            for dependency in list(self.target_groups.values()) + list(self.listeners.values()):
                construct.node.add_dependency(dependency)
            self.services[service.name] = construct

        # Task sets
        self.task_sets: dict[str, ecs.CfnTaskSet] = {}
        for task_set in topology.task_sets:
            task_def = task_set.task_definition
            cluster = task_set.service.cluster
            network_configuration = None
            if task_def.network_mode == "awsvpc":
                network_configuration = ecs.CfnTaskSet.NetworkConfigurationProperty(
                    aws_vpc_configuration=ecs.CfnTaskSet.AwsVpcConfigurationProperty(
                        assign_public_ip="ENABLED" if task_set.assign_public_ip else "DISABLED",
                        security_groups=[
                            self.security_groups[group.name].attr_group_id
                            for group in task_set.security_groups
                        ],
                        subnets=[subnet.subnet_id for subnet in cluster.network.selected_subnets],
                    )
                )
            self.task_sets[task_set.name] = ecs.CfnTaskSet(
                self,
                task_set.name,
                cluster=self.clusters[cluster.name].cluster_name,
                service=self.services[task_set.service.name].attr_name,
                task_definition=self.task_definitions[task_def.name].ref,
                launch_type=task_def.launch_type,
                scale=ecs.CfnTaskSet.ScaleProperty(unit="PERCENT", value=task_set.scale_percent),
                load_balancers=[
                    ecs.CfnTaskSet.LoadBalancerProperty(
                        container_name=task_def.container_name,
                        container_port=task_set.target_group.port,
                        target_group_arn=self.target_groups[task_set.target_group.name].ref,
                    )
                ],
                network_configuration=network_configuration,
            )

        for task_set in topology.primary_task_sets:
            ecs.CfnPrimaryTaskSet(
                self,
                "PrimaryTaskSet",
                cluster=self.clusters[task_set.service.cluster.name].cluster_name,
                service=self.services[task_set.service.name].attr_name,
                task_set_id=self.task_sets[task_set.name].attr_id,
            )

        # Lambda functions run by CodeDeploy at lifecycle events
        self.lifecycle_functions: dict[str, _lambda.Function] = {
            hook.event: self._lifecycle_function(hook) for hook in declaration.lifecycle_hooks
        }

        self.add_transform("AWS::CodeDeployBlueGreen")
        self.hook = self._hook(declaration)

        # Useful outputs for pipeline wiring
        lb = self.load_balancers[declaration.prod_listener.load_balancer.name]
        service = self.services[declaration.service.name]
        CfnOutput(self, "LoadBalancerDnsName", value=lb.attr_dns_name)
        CfnOutput(self, "ClusterName", value=self.clusters[declaration.service.cluster.name].cluster_name)
        CfnOutput(self, "ServiceName", value=service.attr_name)
        CfnOutput(self, "ProdListenerPort", value=str(declaration.prod_listener.port))
        CfnOutput(self, "TestListenerPort", value=str(declaration.test_listener.port))

    def _ingress_rule(self, rule: SecurityGroupRule) -> ec2.CfnSecurityGroup.IngressProperty:
        ports = {} if rule.protocol == "-1" else {"from_port": rule.from_port, "to_port": rule.to_port}
        return ec2.CfnSecurityGroup.IngressProperty(
            ip_protocol=rule.protocol,
            cidr_ip=rule.cidr,
            source_security_group_id=(
                self.security_groups[rule.source.name].attr_group_id if rule.source else None
            ),
            description=rule.description or None,
            **ports,
        )

    def _egress_rule(self, rule: SecurityGroupRule) -> ec2.CfnSecurityGroup.EgressProperty:
        ports = {} if rule.protocol == "-1" else {"from_port": rule.from_port, "to_port": rule.to_port}
        return ec2.CfnSecurityGroup.EgressProperty(
            ip_protocol=rule.protocol,
            cidr_ip=rule.cidr,
            destination_security_group_id=(
                self.security_groups[rule.source.name].attr_group_id if rule.source else None
            ),
            description=rule.description or None,
            **ports,
        )

    def _lifecycle_function(self, hook: LifecycleHook) -> _lambda.Function:
        lb = self.load_balancers[hook.test_listener.load_balancer.name]
        environment = {"TEST_URL": f"http://{lb.attr_dns_name}:{hook.test_listener.port}/"}

        function = _lambda.Function(
            self,
            f"{hook.event}Hook",
            function_name=hook.function_name,
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="pre_traffic_hook.handler",
            code=_lambda.Code.from_asset(str(LAMBDA_DIR)),
            memory_size=256,
            timeout=Duration.seconds(120),
            environment=environment,
        )
        function.add_to_role_policy(
            iam.PolicyStatement(
                actions=["codedeploy:PutLifecycleEventHookExecutionStatus"],
                resources=["*"],
            )
        )
        function.add_permission(
            "AllowCodeDeployInvoke",
            principal=iam.ServicePrincipal("codedeploy.amazonaws.com"),
            action="lambda:InvokeFunction",
        )
        return function

    def _hook(self, declaration: HookDeclaration) -> CfnCodeDeployBlueGreenHook:
        listener_type = elbv2.CfnListener.CFN_RESOURCE_TYPE_NAME
        lifecycle_event_hooks = None
        if declaration.lifecycle_hooks:
            lifecycle_event_hooks = CfnCodeDeployBlueGreenLifecycleEventHooks(
                **{
                    _LIFECYCLE_PROPERTIES[hook.event]: hook.function_name
                    for hook in declaration.lifecycle_hooks
                }
            )

        hook = CfnCodeDeployBlueGreenHook(
            self,
            "CodeDeployBlueGreenHook",
            service_role=declaration.service_role.role_name,
            traffic_routing_config=_traffic_routing_config(declaration.routing_policy),
            additional_options=CfnCodeDeployBlueGreenAdditionalOptions(
                termination_wait_time_in_minutes=declaration.termination_wait_minutes
            ),
            lifecycle_event_hooks=lifecycle_event_hooks,
            applications=[
                CfnCodeDeployBlueGreenApplication(
                    target=CfnCodeDeployBlueGreenApplicationTarget(
                        type=ecs.CfnService.CFN_RESOURCE_TYPE_NAME,
                        logical_id=self.get_logical_id(self.services[declaration.service.name]),
                    ),
                    ecs_attributes=CfnCodeDeployBlueGreenEcsAttributes(
                        task_definitions=[
                            self.get_logical_id(self.task_definitions[declaration.blue_task_definition.name]),
                            self.get_logical_id(self.task_definitions[declaration.green_task_definition.name]),
                        ],
                        task_sets=[
                            self.get_logical_id(self.task_sets[declaration.blue_task_set.name]),
                            self.get_logical_id(self.task_sets[declaration.green_task_set.name]),
                        ],
                        traffic_routing=CfnTrafficRouting(
                            prod_traffic_route=CfnTrafficRoute(
                                type=listener_type,
                                logical_id=self.get_logical_id(self.listeners[declaration.prod_listener.name]),
                            ),
                            test_traffic_route=CfnTrafficRoute(
                                type=listener_type,
                                logical_id=self.get_logical_id(self.listeners[declaration.test_listener.name]),
                            ),
                            target_groups=[
                                self.get_logical_id(self.target_groups[declaration.blue_target_group.name]),
                                self.get_logical_id(self.target_groups[declaration.green_target_group.name]),
                            ],
                        ),
                    ),
                )
            ],
        )
        return hook


def _traffic_routing_config(policy: RoutingPolicy) -> CfnTrafficRoutingConfig:
    if isinstance(policy, TimeBasedCanary):
        return CfnTrafficRoutingConfig(
            type=CfnTrafficRoutingType.TIME_BASED_CANARY,
            time_based_canary=CfnTrafficRoutingTimeBasedCanary(
                step_percentage=policy.step_percentage,
                bake_time_mins=policy.bake_time_minutes,
            ),
        )
    if isinstance(policy, TimeBasedLinear):
        return CfnTrafficRoutingConfig(
            type=CfnTrafficRoutingType.TIME_BASED_LINEAR,
            time_based_linear=CfnTrafficRoutingTimeBasedLinear(
                step_percentage=policy.step_percentage,
                bake_time_mins=policy.bake_time_minutes,
            ),
        )
    return CfnTrafficRoutingConfig(type=CfnTrafficRoutingType.ALL_AT_ONCE)
