# -*- coding: utf-8 -*-
from aws_cdk import Environment, Stage, Tags
from constructs import Construct

from bluegreen.props import TopologyProps
from bluegreen.stacks.bluegreen_hook_stack import BlueGreenHookStack
from bluegreen.topology.assembly import assemble_topology
from bluegreen.topology.builder import TopologyBuilder
from bluegreen.topology.network import NetworkDirectory


class DevStage(Stage):
    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        env: Environment,
        props: TopologyProps,
        directory: NetworkDirectory,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        declaration = assemble_topology(TopologyBuilder(directory), props)

        self.bluegreen_stack = BlueGreenHookStack(
            self,
            f"{props.project_name}-{env.region}-ecs-blue-green-hook",
            declaration=declaration,
            env=Environment(account=env.account, region=env.region),
        )
        for key, value in [("environment", props.deploy_environment), *props.stack_tags]:
            Tags.of(self.bluegreen_stack).add(key, value)
