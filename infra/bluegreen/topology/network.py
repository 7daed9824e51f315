"""VPC lookup for the topology builder."""

import logging
from collections.abc import Iterable
from typing import Any, Protocol

from boto3.session import Session
from botocore.exceptions import ClientError

from bluegreen.topology.errors import NetworkNotFound
from bluegreen.topology.models import NetworkDescription, NetworkLookup, Subnet

logger = logging.getLogger(__name__)


class NetworkDirectory(Protocol):
    def find_networks(self, criteria: NetworkLookup) -> list[NetworkDescription]:
        """Return every network matching the criteria (zero, one or many)."""
        ...


class StaticNetworkDirectory:
    """Directory over a fixed list of networks, used offline and in tests."""

    def __init__(
        self,
        networks: Iterable[NetworkDescription],
        default_vpc_id: str | None = None,
        tags: dict[str, dict[str, str]] | None = None,
    ) -> None:
        self._networks = list(networks)
        self._default_vpc_id = default_vpc_id
        self._tags = tags or {}

    def find_networks(self, criteria: NetworkLookup) -> list[NetworkDescription]:
        matches = []
        for network in self._networks:
            if criteria.vpc_id and network.vpc_id != criteria.vpc_id:
                continue
            if criteria.is_default is not None and (
                (network.vpc_id == self._default_vpc_id) != criteria.is_default
            ):
                continue
            network_tags = self._tags.get(network.vpc_id, {})
            if any(network_tags.get(key) != value for key, value in criteria.tags):
                continue
            matches.append(network)
        return matches


class Boto3NetworkDirectory:
    """Directory backed by the EC2 API."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def find_networks(self, criteria: NetworkLookup) -> list[NetworkDescription]:
        ec2 = self._session.client("ec2")
        filters = _vpc_filters(criteria)
        logger.info("Looking up VPCs matching %s", criteria.describe())
        try:
            response = ec2.describe_vpcs(Filters=filters) if filters else ec2.describe_vpcs()
            networks = [
                NetworkDescription(
                    vpc_id=vpc["VpcId"],
                    subnets=tuple(_describe_subnets(ec2, vpc["VpcId"])),
                )
                for vpc in response.get("Vpcs", [])
            ]
        except ClientError as exc:
            raise NetworkNotFound(
                f"Failed to look up VPCs: {exc}",
                field="lookup_criteria",
                expected=criteria.describe(),
            ) from exc

        logger.info("Found %d matching VPC(s)", len(networks))
        return networks


def _vpc_filters(criteria: NetworkLookup) -> list[dict[str, Any]]:
    filters: list[dict[str, Any]] = []
    if criteria.vpc_id:
        filters.append({"Name": "vpc-id", "Values": [criteria.vpc_id]})
    if criteria.is_default is not None:
        filters.append({"Name": "is-default", "Values": [str(criteria.is_default).lower()]})
    for key, value in criteria.tags:
        filters.append({"Name": f"tag:{key}", "Values": [value]})
    return filters


def _describe_subnets(ec2: Any, vpc_id: str) -> list[Subnet]:
    """List the subnets of a VPC, classifying them by their route to an internet gateway."""
    vpc_filter = [{"Name": "vpc-id", "Values": [vpc_id]}]
    route_tables = ec2.describe_route_tables(Filters=vpc_filter).get("RouteTables", [])

    main_is_public = False
    explicit: dict[str, bool] = {}
    for table in route_tables:
        routes_to_igw = any(
            str(route.get("GatewayId", "")).startswith("igw-") for route in table.get("Routes", [])
        )
        for association in table.get("Associations", []):
            if association.get("Main"):
                main_is_public = routes_to_igw
            elif association.get("SubnetId"):
                explicit[association["SubnetId"]] = routes_to_igw

    subnets = []
    for subnet in ec2.describe_subnets(Filters=vpc_filter).get("Subnets", []):
        subnet_id = subnet["SubnetId"]
        subnets.append(
            Subnet(
                subnet_id=subnet_id,
                vpc_id=subnet["VpcId"],
                availability_zone=subnet["AvailabilityZone"],
                public=explicit.get(subnet_id, main_is_public),
            )
        )
    return subnets
