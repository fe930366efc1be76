"""Blueprints of managed-execution projects.

A managed project has one combined replication item and a target VPC.
Its blueprints are kept in the local store, edited in bulk, and pushed
to the replication service by ``configure_blueprints``.
"""

import logging
import uuid
from datetime import datetime, timezone

from internal.aws.clients import ClientFactory, FunctionInvoker
from internal.blueprint.builder import blueprint_tag, parse_blueprint_reply
from internal.compute.instance_types import (
    InstanceTypeCache,
    map_type,
    select_disk_type,
    select_instance_type,
)
from internal.config.settings import settings_store
from internal.db import database
from internal.models.errors import NotFoundError
from internal.models.types import (
    Blueprint,
    CreateManagedProjectRequest,
    DiskType,
    LaunchSpec,
    Machine,
    ManagedProject,
    Project,
    ProjectKind,
    ProjectState,
    SecurityGroupRef,
    SetBlueprintRequest,
    Tier,
)
from internal.network.discovery import NetworkDiscovery
from internal.orchestration.lifecycle import transition
from internal.replication.service import ReplicationService

logger = logging.getLogger(__name__)


def _require_addresses(addresses: list[str], count: int, subnet_id: str):
    if len(addresses) < count:
        raise NotFoundError(
            f"Subnet {subnet_id} has {len(addresses)} free addresses, {count} needed"
        )


class ManagedProjectService:
    def __init__(self, replication: ReplicationService, network: NetworkDiscovery,
                 clients: ClientFactory, invoker: FunctionInvoker,
                 settings=settings_store, type_cache: InstanceTypeCache = None):
        self.replication = replication
        self.network = network
        self.clients = clients
        self.invoker = invoker
        self.settings = settings
        self.type_cache = type_cache

    # ── Projects ────────────────────────────────────────────────────────────

    def create_managed_project(self, request: CreateManagedProjectRequest) -> Project:
        errors = request.validate()
        if errors:
            raise ValueError("; ".join(errors))
        project = database.save_project(Project(
            id=str(uuid.uuid4()),
            name=request.name,
            kind=ProjectKind.MANAGED,
            source_region=request.source_region,
            target_region=request.target_region,
            managed=ManagedProject(item=request.item, vpc_id=request.target_vpc_id),
        ))
        # nothing to provision; the replication item already exists
        transition(project, ProjectState.CREATING, "create")
        return transition(project, ProjectState.ACTIVE, "create")

    def get_project(self, project_id: str) -> Project:
        project = database.get_project(project_id)
        if project is None or project.kind != ProjectKind.MANAGED:
            raise NotFoundError(f"Managed project {project_id} not found")
        return project

    def delete(self, project_id: str) -> Project:
        project = self.get_project(project_id)
        transition(project, ProjectState.DELETING, "delete")
        transition(project, ProjectState.DELETED, "delete")
        # blueprints go with the project row
        database.delete_project(project.id)
        return project

    def get_machines(self, project: Project) -> list[Machine]:
        machines = self.replication.list_machines(project.managed.item.id)
        for machine in machines:
            machine.region = project.target_region
        return machines

    # ── Blueprints ──────────────────────────────────────────────────────────

    def get_blueprints(self, project: Project) -> list[Blueprint]:
        return database.list_blueprints(project.id)

    def _load(self, project: Project, machine_ids: list[str]) -> list[Blueprint]:
        blueprints = []
        for machine_id in machine_ids:
            blueprint = database.get_blueprint(project.id, machine_id)
            if blueprint is None:
                raise NotFoundError(f"Blueprint of machine {machine_id} not found")
            blueprints.append(blueprint)
        return blueprints

    def load_blueprints(self, project: Project) -> list[Blueprint]:
        """Create a blueprint per new machine; refresh security groups of known ones."""
        region = project.target_region
        vpc_id = project.managed.vpc_id
        machines = self.replication.list_machines(project.managed.item.id)
        if not machines:
            return []

        subnet = self.network.find_subnet(region, vpc_id, want_public=False)
        security_groups = self.network.find_security_groups(region, vpc_id)
        addresses = self.network.find_ip_addresses(region, vpc_id, subnet, len(machines))
        _require_addresses(addresses, len(machines), subnet["SubnetId"])

        existing = {b.machine_id: b for b in database.list_blueprints(project.id)}
        batch = []
        for machine, address in zip(machines, addresses):
            blueprint = existing.get(machine.id)
            if blueprint is None:
                props = machine.source
                blueprint = Blueprint(
                    project_id=project.id,
                    machine_id=machine.id,
                    name=props.name,
                    os_name=props.os,
                    cpus=props.cpu_cores,
                    memory=props.memory_bytes,
                    public_subnet=False,
                    instance_type=select_instance_type(Tier.ECONOMY, props.cpu_cores, props.memory_bytes),
                    subnet_id=subnet["SubnetId"],
                    ip_address=address,
                    disks=list(props.disks),
                    disk_iops=self.settings.load()["blueprint"]["disk_iops"],
                    disk_type=DiskType.STANDARD,
                )
            blueprint.security_groups = security_groups.get(blueprint.name, [])
            if not blueprint.security_groups:
                logger.warning("No security group tagged for machine %s (%s)", blueprint.name, machine.id)
            batch.append(blueprint)

        database.save_blueprints(batch)
        logger.info("Loaded %d blueprints for project %s", len(batch), project.id)
        return batch

    def set_blueprint(self, project: Project, request: SetBlueprintRequest) -> list[Blueprint]:
        errors = request.validate()
        if errors:
            raise ValueError("; ".join(errors))

        region = project.target_region
        blueprints = self._load(project, request.machine_ids)

        if not request.subnet_intact:
            subnet = self.network.find_subnet(region, project.managed.vpc_id, request.public_subnet)
            addresses = self.network.find_ip_addresses(region, project.managed.vpc_id, subnet, len(blueprints))
            _require_addresses(addresses, len(blueprints), subnet["SubnetId"])
            for blueprint, address in zip(blueprints, addresses):
                blueprint.public_subnet = request.public_subnet
                blueprint.subnet_id = subnet["SubnetId"]
                blueprint.ip_address = address

        if not request.disk_intact:
            disk_type = select_disk_type(request.disk_type)
            for blueprint in blueprints:
                blueprint.disk_type = disk_type

        if not request.instance_intact:
            if request.instance_type == Tier.CUSTOMIZED:
                ec2 = self.clients.client("ec2", region)
                instance_type = map_type(ec2, region, request.custom_instance_type,
                                         self.settings.load()["blueprint"]["default_instance_type"],
                                         cache=self.type_cache)
                for blueprint in blueprints:
                    blueprint.instance_type = instance_type
            else:
                for blueprint in blueprints:
                    blueprint.instance_type = select_instance_type(
                        request.instance_type, blueprint.cpus, blueprint.memory)

        database.save_blueprints(blueprints)
        return blueprints

    def select_security_group(self, project: Project, machine_ids: list[str],
                              security_groups: list[SecurityGroupRef]) -> list[Blueprint]:
        blueprints = self._load(project, machine_ids)
        for blueprint in blueprints:
            blueprint.security_groups = list(security_groups)
        database.save_blueprints(blueprints)
        return blueprints

    def configure_blueprints(self, project: Project, machine_ids: list[str]) -> list[Blueprint]:
        """Push stored blueprints to the replication service; stamp each on success."""
        region = project.target_region
        blueprints = self._load(project, machine_ids)
        ec2 = self.clients.client("ec2", region)
        fallback = self.settings.load()["blueprint"]["default_instance_type"]
        function = self.settings.function("configure_blueprint")
        tag = blueprint_tag()

        for blueprint in blueprints:
            spec = LaunchSpec(
                project_id=project.managed.item.id,
                machine_id=blueprint.machine_id,
                subnet_id=blueprint.subnet_id,
                security_group_ids=[g.id for g in blueprint.security_groups],
                private_ip=blueprint.ip_address,
                instance_type=map_type(ec2, region, blueprint.instance_type, fallback, cache=self.type_cache),
                tags=[tag],
                disks=blueprint.disks,
                iam_role=blueprint.iam_role,
                disk_iops=blueprint.disk_iops,
                disk_type=blueprint.disk_type,
            )
            parse_blueprint_reply(function, self.invoker.invoke(function, spec.to_payload()))
            blueprint.configured_at = datetime.now(timezone.utc).isoformat()
            database.save_blueprint(blueprint)
            logger.info("Configured blueprint of machine %s in project %s", blueprint.machine_id, project.id)

        database.append_audit_log("configure-blueprints", project.id, detail={"machineIds": list(machine_ids)})
        return blueprints
