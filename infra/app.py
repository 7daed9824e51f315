#!/usr/bin/env python3
import logging
import os
import sys

import aws_cdk as cdk
import boto3

from bluegreen.props import CONTEXT_KEY, TopologyProps
from bluegreen.stages.dev import DevStage
from bluegreen.topology.errors import TopologyError
from bluegreen.topology.network import Boto3NetworkDirectory

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def main() -> None:
    app = cdk.App()
    env = cdk.Environment(
        account=os.environ.get("CDK_DEFAULT_ACCOUNT"),
        region=os.environ.get("CDK_DEFAULT_REGION"),
    )
    profile = os.environ.get("AWS_PROFILE")
    session = boto3.session.Session(profile_name=profile, region_name=env.region)

    try:
        props = TopologyProps.from_context(app.node.try_get_context(CONTEXT_KEY))
        DevStage(
            app,
            props.deploy_environment.capitalize(),
            env=env,
            props=props,
            directory=Boto3NetworkDirectory(session),
        )
    except TopologyError as exc:
        logger.error(exc.describe())
        sys.exit(1)

    app.synth()


if __name__ == "__main__":
    main()
