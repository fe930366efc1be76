"""Launch blueprint assembly for live-migration projects.

``build_launch_spec`` turns a described source instance into the payload
of the blueprint provisioning function:

  1. translate the subnet and every security group through the
     translation store (source side: source -> target, target side:
     target -> source)
  2. tag the instance's tag set with the blueprint-configured marker
  3. validate the instance type in the destination region, falling back
     to the project's target instance type
  4. rename block devices /dev/sdX -> /dev/xvdX
  5. take the role name from the instance-profile ARN

``configure`` then submits the payload and returns the replication
service's view of the new blueprint.  Any failure aborts the machine;
nothing is partially applied here.
"""

import logging
from datetime import datetime, timezone

from internal.aws.clients import ClientFactory, FunctionInvoker
from internal.aws.secrets import SecretManager
from internal.compute.instance_types import InstanceTypeCache, map_type
from internal.compute.instances import InstanceInventory, profile_name
from internal.config.settings import settings_store
from internal.models.errors import ExternalCallError, NotFoundError
from internal.models.types import (
    TAG_BLUEPRINT,
    LaunchSpec,
    Project,
    ReplicationBlueprint,
    Side,
)
from internal.network.translation import TranslationStore

logger = logging.getLogger(__name__)

SOURCE_DEVICE_PREFIX = "/dev/sd"
TARGET_DEVICE_PREFIX = "/dev/xvd"


def translate_device_name(name: str) -> str:
    if name.startswith(SOURCE_DEVICE_PREFIX):
        return TARGET_DEVICE_PREFIX + name[len(SOURCE_DEVICE_PREFIX):]
    return name


def blueprint_tag() -> dict:
    return {"key": TAG_BLUEPRINT, "value": datetime.now(timezone.utc).isoformat()}


def parse_blueprint_reply(function: str, reply) -> ReplicationBlueprint:
    """Parse a provisioning function reply; anything malformed is fatal."""
    try:
        return ReplicationBlueprint.from_api(reply)
    except (KeyError, TypeError, AttributeError) as e:
        raise ExternalCallError(function, f"malformed blueprint reply {reply!r}") from e


class BlueprintBuilder:
    def __init__(self, clients: ClientFactory, invoker: FunctionInvoker,
                 translations: TranslationStore, secrets: SecretManager,
                 instances: InstanceInventory, settings=settings_store,
                 type_cache: InstanceTypeCache = None):
        self._clients = clients
        self._invoker = invoker
        self._translations = translations
        self._secrets = secrets
        self._instances = instances
        self._settings = settings
        self._type_cache = type_cache

    def _translate(self, project: Project, side: Side, resource_id: str) -> str:
        if side == Side.SOURCE:
            return self._translations.find_target_id(resource_id, project.source_region, project.target_region)
        return self._translations.find_source_id(resource_id, project.source_region, project.target_region)

    def build_launch_spec(self, project: Project, side: Side, machine_id: str,
                          instance: dict, credential=None) -> LaunchSpec:
        item = project.replication.get_item(side)
        if item is None:
            raise NotFoundError(f"Project {project.id} has no {side.value} replication item")

        subnet_id = self._translate(project, side, instance["SubnetId"])
        security_group_ids = [
            self._translate(project, side, group["GroupId"])
            for group in instance.get("SecurityGroups", [])
        ]

        tags = [{"key": t["Key"], "value": t["Value"]} for t in instance.get("Tags", [])]
        tags.append(blueprint_tag())

        destination = Side.TARGET if side == Side.SOURCE else Side.SOURCE
        region = project.get_region(destination)
        ec2 = self._clients.client("ec2", region, credential)
        instance_type = map_type(ec2, region, instance.get("InstanceType", ""),
                                 project.replication.target_instance_type, cache=self._type_cache)

        disks = [translate_device_name(m["DeviceName"]) for m in instance.get("BlockDeviceMappings", [])]
        iam_role = profile_name((instance.get("IamInstanceProfile") or {}).get("Arn"))

        return LaunchSpec(
            project_id=item.id,
            machine_id=machine_id,
            subnet_id=subnet_id,
            security_group_ids=security_group_ids,
            private_ip=instance.get("PrivateIpAddress", ""),
            instance_type=instance_type,
            tags=tags,
            disks=disks,
            iam_role=iam_role,
        )

    def configure(self, project: Project, side: Side, machine_id: str,
                  instance_id: str) -> ReplicationBlueprint:
        logger.debug("Configure blueprint for %s machine %s (%s)", side.value, machine_id, instance_id)
        credential = self._secrets.get_credential(project.secret_id(Side.SOURCE))
        instance = self._instances.describe_instance(project.get_region(side), credential, instance_id)
        spec = self.build_launch_spec(project, side, machine_id, instance, credential)

        function = self._settings.function("configure_blueprint")
        reply = self._invoker.invoke(function, spec.to_payload())
        blueprint = parse_blueprint_reply(function, reply)
        logger.info("Configured blueprint of machine %s (%s, %s)", machine_id,
                    spec.instance_type, spec.subnet_id)
        return blueprint
