"""Source instance inventory.

An instance qualifies for agent installation when its instance profile's
role has the SSM managed-instance policy attached, and (when a VPC is
given) it runs inside that VPC.
"""

import logging
from typing import Optional

from internal.aws.clients import AWS_ERRORS, ClientFactory, paginate
from internal.models.errors import NotFoundError, TransportError
from internal.models.types import Credential

logger = logging.getLogger(__name__)

SSM_POLICY = "AmazonSSMManagedInstanceCore"


def profile_name(arn: Optional[str]) -> str:
    """Trailing path segment of an instance-profile ARN, or '' when absent."""
    if not arn or "/" not in arn:
        return ""
    return arn[arn.rindex("/") + 1:]


def _summarize(instance: dict, region: str) -> dict:
    name = next((t["Value"] for t in instance.get("Tags", []) if t.get("Key") == "Name"), "")
    return {
        "instanceId": instance["InstanceId"],
        "name": name,
        "instanceType": instance.get("InstanceType", ""),
        "privateIpAddress": instance.get("PrivateIpAddress", ""),
        "vpcId": instance.get("VpcId", ""),
        "subnetId": instance.get("SubnetId", ""),
        "state": instance.get("State", {}).get("Name", ""),
        "region": region,
    }


class InstanceInventory:
    def __init__(self, clients: ClientFactory):
        self._clients = clients

    def describe_instance(self, region: str, credential: Optional[Credential], instance_id: str) -> dict:
        ec2 = self._clients.client("ec2", region, credential)
        reservations = paginate(ec2, "describe_instances", "Reservations", InstanceIds=[instance_id])
        for reservation in reservations:
            for instance in reservation.get("Instances", []):
                return instance
        raise NotFoundError(f"Instance {instance_id} not found in {region}")

    def find_qualified_instances(self, region: str, credential: Optional[Credential],
                                 vpc_id: Optional[str] = None) -> list[dict]:
        ec2 = self._clients.client("ec2", region, credential)
        iam = self._clients.client("iam", region, credential)
        qualified = []
        for reservation in paginate(ec2, "describe_instances", "Reservations"):
            for instance in reservation.get("Instances", []):
                if self.is_qualified(instance, vpc_id, iam):
                    qualified.append(_summarize(instance, region))
        return qualified

    def is_qualified(self, instance: dict, vpc_id: Optional[str], iam) -> bool:
        instance_id = instance["InstanceId"]
        profile = instance.get("IamInstanceProfile")
        if not profile:
            logger.info("Instance %s has no instance profile", instance_id)
            return False

        name = profile_name(profile.get("Arn"))
        if not name:
            logger.info("Instance %s: invalid instance profile arn %s", instance_id, profile.get("Arn"))
            return False

        try:
            roles = iam.get_instance_profile(InstanceProfileName=name)["InstanceProfile"]["Roles"]
        except AWS_ERRORS as e:
            raise TransportError(f"Unable to read instance profile {name}: {e}") from e
        if not roles:
            logger.info("Instance %s profile %s has no role", instance_id, name)
            return False
        # an instance profile holds at most one role
        role = roles[0]["RoleName"]
        policies = paginate(iam, "list_attached_role_policies", "AttachedPolicies", RoleName=role)
        if not any(p.get("PolicyName") == SSM_POLICY for p in policies):
            logger.info("Instance %s profile has no %s policy attached", instance_id, SSM_POLICY)
            return False

        if vpc_id and instance.get("VpcId") != vpc_id:
            logger.info("Instance %s is not running inside the source VPC %s", instance_id, vpc_id)
            return False
        return True
