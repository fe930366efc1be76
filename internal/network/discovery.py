"""Network discovery in the migration regions.

Subnet classification, security-group and address discovery run against
EC2 listings.  VPC peering, peer routes and the staging subnet are
delegated to external functions invoked by name.
"""

import logging
from typing import Iterable, Optional

from internal.aws.clients import ClientFactory, FunctionInvoker, paginate
from internal.config.settings import settings_store
from internal.models.errors import ExternalCallError, NoMatchingSubnetError
from internal.models.types import (
    TAG_MACHINE,
    CreateProjectRequest,
    Credential,
    Project,
    SecurityGroupRef,
)
from internal.network.cidr import Cidr, find_unused_addresses
from internal.network.translation import TranslationStore

logger = logging.getLogger(__name__)


def _vpc_filter(vpc_id: str) -> list[dict]:
    return [{"Name": "vpc-id", "Values": [vpc_id]}]


def routes_to_internet(route_tables: list[dict]) -> bool:
    for table in route_tables:
        for route in table.get("Routes", []):
            if (route.get("GatewayId") or "").startswith("igw-"):
                return True
    return False


def select_subnet(candidates: Iterable[tuple[dict, list[dict]]], want_public: bool) -> dict:
    """Return the first subnet with the requested visibility.

    ``candidates`` yields ``(subnet, associated route tables)`` in listing
    order.  A subnet is public when one of its route tables routes to an
    internet gateway; no route table at all means private.
    """
    for subnet, route_tables in candidates:
        subnet_id = subnet["SubnetId"]
        if not route_tables:
            if not want_public:
                logger.info("Found private subnet %s with empty route table", subnet_id)
                return subnet
            continue
        public = routes_to_internet(route_tables)
        if public and want_public:
            logger.info("Found public subnet %s with IGW", subnet_id)
            return subnet
        if not public and not want_public:
            logger.info("Found private subnet %s with no route to IGW", subnet_id)
            return subnet
    raise NoMatchingSubnetError(
        f"Unable to find a {'public' if want_public else 'private'} subnet"
    )


class NetworkDiscovery:
    def __init__(self, clients: ClientFactory, invoker: FunctionInvoker,
                 translations: TranslationStore, settings=settings_store):
        self._clients = clients
        self._invoker = invoker
        self._translations = translations
        self._settings = settings

    # ── EC2 discovery ───────────────────────────────────────────────────────

    def find_subnet(self, region: str, vpc_id: str, want_public: bool,
                    credential: Optional[Credential] = None) -> dict:
        ec2 = self._clients.client("ec2", region, credential)
        subnets = paginate(ec2, "describe_subnets", "Subnets", Filters=_vpc_filter(vpc_id))

        def candidates():
            for subnet in subnets:
                tables = paginate(
                    ec2, "describe_route_tables", "RouteTables",
                    Filters=[{"Name": "association.subnet-id", "Values": [subnet["SubnetId"]]}],
                )
                yield subnet, tables

        return select_subnet(candidates(), want_public)

    def find_security_groups(self, region: str, vpc_id: str,
                             credential: Optional[Credential] = None) -> dict[str, list[SecurityGroupRef]]:
        """Map machine names to the security groups tagged for them.

        A group's machine tag holds a comma-separated list of machine names.
        """
        ec2 = self._clients.client("ec2", region, credential)
        groups = paginate(ec2, "describe_security_groups", "SecurityGroups", Filters=_vpc_filter(vpc_id))
        result: dict[str, list[SecurityGroupRef]] = {}
        for group in groups:
            ref = SecurityGroupRef(id=group["GroupId"], name=group.get("GroupName", ""))
            for tag in group.get("Tags", []):
                if tag.get("Key") != TAG_MACHINE:
                    continue
                for name in tag.get("Value", "").split(","):
                    name = name.strip()
                    if name:
                        result.setdefault(name, []).append(ref)
        return result

    def find_ip_addresses(self, region: str, vpc_id: str, subnet: dict, count: int,
                          credential: Optional[Credential] = None) -> list[str]:
        ec2 = self._clients.client("ec2", region, credential)
        interfaces = paginate(ec2, "describe_network_interfaces", "NetworkInterfaces",
                              Filters=_vpc_filter(vpc_id))
        cidr = Cidr(subnet["CidrBlock"])
        used = {i["PrivateIpAddress"] for i in interfaces if i.get("PrivateIpAddress")}
        return find_unused_addresses(cidr, used | cidr.reserved(), count)

    def find_peered_vpcs(self, source_region: str, target_region: str,
                         credential: Credential) -> list[dict]:
        """Source VPCs already peered with a VPC that exists in the target region."""
        source_ec2 = self._clients.client("ec2", source_region, credential)
        target_ec2 = self._clients.client("ec2", target_region, credential)
        source_vpcs = paginate(source_ec2, "describe_vpcs", "Vpcs")
        target_ids = {v["VpcId"] for v in paginate(target_ec2, "describe_vpcs", "Vpcs")}

        peered = []
        for vpc in source_vpcs:
            peer_id = self._translations.find_target_vpc_id(vpc["VpcId"], source_region, target_region)
            if peer_id and peer_id in target_ids:
                peered.append({
                    "vpcId": vpc["VpcId"],
                    "cidrBlock": vpc.get("CidrBlock", ""),
                    "name": _name_tag(vpc.get("Tags", [])),
                    "peerVpcId": peer_id,
                })
        return peered

    # ── External network functions ──────────────────────────────────────────

    def peer_vpc(self, request: CreateProjectRequest, secret_id: str):
        function = self._settings.function("peer_vpc")
        logger.info("Peering VPC %s (%s -> %s)", request.source_vpc_id,
                    request.source_region, request.target_region)
        self._invoker.invoke(function, request.to_payload(secret_id))

    def find_staging_subnet_id(self, request: CreateProjectRequest, secret_id: str) -> str:
        function = self._settings.function("find_common_subnet")
        subnet_id = self._invoker.invoke(function, request.to_payload(secret_id))
        if not isinstance(subnet_id, str) or not subnet_id:
            raise ExternalCallError(function, f"expected a subnet id, got {subnet_id!r}")
        logger.info("Using staging subnet %s", subnet_id)
        return subnet_id

    def add_peer_route(self, project: Project, instance_ids: list[str]):
        function = self._settings.function("add_peer_route")
        self._invoker.invoke(function, {
            "sourceVpcId": project.replication.source_vpc_id,
            "sourceRegion": project.source_region,
            "targetRegion": project.target_region,
            "instanceIds": list(instance_ids),
            "projectId": project.id,
        })


def _name_tag(tags: list[dict]) -> str:
    for tag in tags:
        if tag.get("Key") == "Name":
            return tag.get("Value", "")
    return ""
