# -*- coding: utf-8 -*-
from dataclasses import dataclass, field, fields
from typing import Any

from bluegreen.topology.errors import InvalidResourceSpec, InvalidRoutingPolicy
from bluegreen.topology.models import (
    AllAtOnce,
    NetworkLookup,
    RoutingPolicy,
    TimeBasedCanary,
    TimeBasedLinear,
)

CONTEXT_KEY = "bluegreen"


@dataclass
class TopologyProps:
    """Settings for the standard blue/green topology, read from CDK context."""

    project_name: str = "bluegreen"
    deploy_environment: str = "dev"
    stack_tags: list[tuple[str, str]] = field(default_factory=list)

    # network lookup
    vpc_is_default: bool | None = True
    vpc_id: str | None = None
    vpc_tags: dict[str, str] = field(default_factory=dict)
    subnet_type: str = "private"

    # containers
    blue_image: str = "httpd:latest"
    green_image: str = "nginxdemos/hello:0.2"
    container_name: str = "web"
    container_port: int = 80
    cpu: int = 256
    memory: int = 512
    desired_count: int = 1

    # EC2 capacity; Fargate when instance_type is unset
    instance_type: str | None = None
    desired_capacity: int = 1

    # load balancer
    prod_port: int = 80
    test_port: int = 9002

    # deployment hook
    routing_type: str = "TimeBasedCanary"
    step_percentage: int = 20
    bake_time_minutes: int = 15
    termination_wait_minutes: int = 30
    hook_role_name: str = "codedeploybluegreenhookrole"
    test_traffic_hook: str | None = None

    @classmethod
    def from_context(cls, context: dict[str, Any] | None) -> "TopologyProps":
        context = dict(context or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(context) - known)
        if unknown:
            raise InvalidResourceSpec(
                "Unknown settings in CDK context", entity=CONTEXT_KEY, field="context", actual=unknown
            )

        tags = context.get("stack_tags")
        if isinstance(tags, dict):
            context["stack_tags"] = list(tags.items())
        elif tags is not None:
            context["stack_tags"] = [tuple(pair) for pair in tags]
        return cls(**context)

    def network_lookup(self) -> NetworkLookup:
        return NetworkLookup(
            is_default=None if self.vpc_id else self.vpc_is_default,
            vpc_id=self.vpc_id,
            tags=tuple(sorted(self.vpc_tags.items())),
            subnet_type=self.subnet_type,
        )

    def routing_policy(self) -> RoutingPolicy:
        if self.routing_type == "AllAtOnce":
            return AllAtOnce()
        if self.routing_type == "TimeBasedCanary":
            return TimeBasedCanary(self.step_percentage, self.bake_time_minutes)
        if self.routing_type == "TimeBasedLinear":
            return TimeBasedLinear(self.step_percentage, self.bake_time_minutes)
        raise InvalidRoutingPolicy(
            "Unknown traffic routing type",
            entity=CONTEXT_KEY,
            field="routing_type",
            expected=("AllAtOnce", "TimeBasedCanary", "TimeBasedLinear"),
            actual=self.routing_type,
        )
