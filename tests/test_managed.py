"""Tests for managed-execution projects and their blueprints."""

import pytest

from conftest import FakeAwsClient, FakeClientFactory, FakeInvoker, FakeReplication
from internal.blueprint.managed import ManagedProjectService
from internal.compute.instance_types import InstanceTypeCache
from internal.db import database
from internal.models.errors import ExternalCallError, NotFoundError
from internal.models.types import (
    GIB,
    CreateManagedProjectRequest,
    DiskType,
    Machine,
    ProjectState,
    SecurityGroupRef,
    SetBlueprintRequest,
    SourceProperties,
)


class _Network:
    """Discovery stub with one private and one public subnet."""

    def __init__(self, addresses=None, groups=None):
        self.addresses = addresses
        self.groups = groups if groups is not None else {
            "web-1": [SecurityGroupRef("sg-web", "web")],
        }
        self.subnet_requests = []

    def find_subnet(self, region, vpc_id, want_public, credential=None):
        self.subnet_requests.append((region, vpc_id, want_public))
        return {"SubnetId": "subnet-public" if want_public else "subnet-private", "CidrBlock": "10.0.0.0/24"}

    def find_security_groups(self, region, vpc_id, credential=None):
        return self.groups

    def find_ip_addresses(self, region, vpc_id, subnet, count, credential=None):
        if self.addresses is not None:
            return list(self.addresses)
        prefix = "10.0.1." if subnet["SubnetId"] == "subnet-public" else "10.0.0."
        return [f"{prefix}{10 + i}" for i in range(count + 1)]


def _machine(machine_id, name, cpus=2, memory=4 * GIB):
    return Machine(id=machine_id, source=SourceProperties(
        name=name, os="linux", cpu_cores=cpus, memory_bytes=memory, disks=["/dev/xvda"]))


def _service(settings, network=None, machines=None, invoker=None, offered=("t2.large", "c5.large")):
    replication = FakeReplication(machines={"ce-1": machines if machines is not None else [
        _machine("m-1", "web-1"), _machine("m-2", "db-1", cpus=8, memory=32 * GIB),
    ]})
    ec2 = FakeAwsClient(pages={"describe_instance_types": [
        {"InstanceTypes": [{"InstanceType": t} for t in offered]},
    ]})
    return ManagedProjectService(
        replication=replication,
        network=network or _Network(),
        clients=FakeClientFactory({"ec2": ec2}),
        invoker=invoker or FakeInvoker(),
        settings=settings,
        type_cache=InstanceTypeCache(),
    )


def _create(service):
    return service.create_managed_project(CreateManagedProjectRequest.from_dict({
        "name": "erp", "targetRegion": "us-west-2", "targetVpcId": "vpc-tgt",
        "project": {"id": "ce-1", "name": "erp-managed"},
    }))


# ── Projects ────────────────────────────────────────────────────────────────

def test_create_managed_project_is_active(settings):
    service = _service(settings)
    project = _create(service)
    assert project.state == ProjectState.ACTIVE
    assert service.get_project(project.id).managed.item.id == "ce-1"
    states = [(e["from_state"], e["to_state"]) for e in reversed(database.list_audit_log(project.id))]
    assert states == [("UNINITIALIZED", "CREATING"), ("CREATING", "ACTIVE")]


def test_create_managed_project_validates(settings):
    service = _service(settings)
    with pytest.raises(ValueError, match="targetVpcId"):
        service.create_managed_project(CreateManagedProjectRequest.from_dict({
            "name": "erp", "targetRegion": "us-west-2", "project": {"id": "ce-1"},
        }))


def test_get_project_rejects_unknown(settings):
    with pytest.raises(NotFoundError):
        _service(settings).get_project("nope")


def test_delete_managed_project_removes_it_with_blueprints(settings):
    service = _service(settings)
    project = _create(service)
    service.load_blueprints(project)
    assert len(database.list_blueprints(project.id)) == 2

    assert service.delete(project.id).state == ProjectState.DELETED
    assert database.get_project(project.id) is None
    assert database.list_blueprints(project.id) == []
    assert [e["to_state"] for e in database.list_audit_log(project.id, action="delete")] == ["DELETED", "DELETING"]
    with pytest.raises(NotFoundError):
        service.delete(project.id)


def test_get_machines_sets_region(settings):
    service = _service(settings)
    project = _create(service)
    assert {m.region for m in service.get_machines(project)} == {"us-west-2"}


# ── load_blueprints ─────────────────────────────────────────────────────────

def test_load_creates_economy_blueprints(settings):
    service = _service(settings)
    project = _create(service)
    blueprints = service.load_blueprints(project)

    assert [b.machine_id for b in blueprints] == ["m-1", "m-2"]
    web, db = blueprints
    assert web.subnet_id == "subnet-private"
    assert web.public_subnet is False
    assert web.ip_address != db.ip_address
    assert web.instance_type == "t2.medium"
    assert db.instance_type == "t2.large"
    assert web.disk_type == DiskType.STANDARD
    assert web.disk_iops == 3000
    assert web.security_groups == [SecurityGroupRef("sg-web", "web")]
    assert db.security_groups == []
    assert [b.machine_id for b in service.get_blueprints(project)] == ["m-1", "m-2"]


def test_load_keeps_existing_blueprints(settings):
    network = _Network()
    service = _service(settings, network=network)
    project = _create(service)
    service.load_blueprints(project)
    service.set_blueprint(project, SetBlueprintRequest.from_dict({
        "machineIds": ["m-1"], "subnetIntact": True, "diskIntact": True,
        "instanceType": "customized", "customInstanceType": "c5.large",
    }))

    network.groups = {"web-1": [SecurityGroupRef("sg-new", "new")]}
    reloaded = {b.machine_id: b for b in service.load_blueprints(project)}
    assert reloaded["m-1"].instance_type == "c5.large"
    assert reloaded["m-1"].security_groups == [SecurityGroupRef("sg-new", "new")]
    assert database.get_blueprint(project.id, "m-1").version == 3


def test_load_without_machines_touches_nothing(settings):
    network = _Network()
    service = _service(settings, network=network, machines=[])
    project = _create(service)
    assert service.load_blueprints(project) == []
    assert network.subnet_requests == []


def test_load_fails_when_subnet_is_full(settings):
    service = _service(settings, network=_Network(addresses=["10.0.0.5"]))
    project = _create(service)
    with pytest.raises(NotFoundError, match="subnet-private"):
        service.load_blueprints(project)
    assert database.list_blueprints(project.id) == []


# ── set_blueprint ───────────────────────────────────────────────────────────

def test_set_blueprint_moves_to_public_subnet(settings):
    service = _service(settings)
    project = _create(service)
    service.load_blueprints(project)

    [bp] = service.set_blueprint(project, SetBlueprintRequest.from_dict({
        "machineIds": ["m-2"], "publicSubnet": True, "diskType": "business", "instanceType": "business",
    }))
    assert bp.public_subnet is True
    assert bp.subnet_id == "subnet-public"
    assert bp.ip_address.startswith("10.0.1.")
    assert bp.disk_type == DiskType.SSD
    assert bp.instance_type == "m5.2xlarge"


def test_set_blueprint_customized_type_is_validated(settings):
    service = _service(settings)
    project = _create(service)
    service.load_blueprints(project)

    [bp] = service.set_blueprint(project, SetBlueprintRequest.from_dict({
        "machineIds": ["m-1"], "subnetIntact": True, "diskType": "customized",
        "instanceType": "customized", "customInstanceType": "c5.large",
    }))
    assert bp.instance_type == "c5.large"
    assert bp.disk_type == DiskType.PROVISIONED_SSD

    [bp] = service.set_blueprint(project, SetBlueprintRequest.from_dict({
        "machineIds": ["m-1"], "subnetIntact": True, "diskIntact": True,
        "instanceType": "customized", "customInstanceType": "x9.huge",
    }))
    assert bp.instance_type == "t2.large"


def test_set_blueprint_intact_flags(settings):
    service = _service(settings)
    project = _create(service)
    [before, _] = service.load_blueprints(project)

    [after] = service.set_blueprint(project, SetBlueprintRequest.from_dict({
        "machineIds": ["m-1"], "subnetIntact": True, "diskIntact": True, "instanceIntact": True,
    }))
    assert (after.subnet_id, after.ip_address, after.disk_type, after.instance_type) == (
        before.subnet_id, before.ip_address, before.disk_type, before.instance_type)


def test_set_blueprint_requires_known_machine(settings):
    service = _service(settings)
    project = _create(service)
    with pytest.raises(NotFoundError):
        service.set_blueprint(project, SetBlueprintRequest.from_dict({
            "machineIds": ["m-9"], "subnetIntact": True, "diskIntact": True, "instanceIntact": True,
        }))


def test_set_blueprint_rejects_missing_tier(settings):
    service = _service(settings)
    project = _create(service)
    with pytest.raises(ValueError, match="diskType"):
        service.set_blueprint(project, SetBlueprintRequest.from_dict({
            "machineIds": ["m-1"], "subnetIntact": True, "instanceIntact": True,
        }))


# ── security groups & configure ─────────────────────────────────────────────

def test_select_security_group(settings):
    service = _service(settings)
    project = _create(service)
    service.load_blueprints(project)
    groups = [SecurityGroupRef("sg-a", "a"), SecurityGroupRef("sg-b", "b")]
    service.select_security_group(project, ["m-1", "m-2"], groups)
    assert all(b.security_groups == groups for b in service.get_blueprints(project))


def test_configure_pushes_and_stamps(settings):
    invoker = FakeInvoker({"DRPCloudEndureConfigureBlueprint": lambda p: {"id": "bp", "machineId": p["machineId"]}})
    service = _service(settings, invoker=invoker)
    project = _create(service)
    service.load_blueprints(project)

    configured = service.configure_blueprints(project, ["m-1"])
    assert configured[0].configured_at is not None
    assert database.get_blueprint(project.id, "m-2").configured_at is None

    payload = invoker.payloads("DRPCloudEndureConfigureBlueprint")[0]
    assert payload["projectId"] == "ce-1"
    assert payload["subnetId"] == "subnet-private"
    assert payload["securityGroupIds"] == ["sg-web"]
    assert payload["diskType"] == "STANDARD"
    assert payload["diskIops"] == 3000
    assert payload["tags"][0]["key"] == "drp:blueprint-configured"
    assert [e["action"] for e in database.list_audit_log(project.id, action="configure-blueprints")] == [
        "configure-blueprints"]


def test_configure_stops_at_first_failure(settings):
    invoker = FakeInvoker({"DRPCloudEndureConfigureBlueprint": ExternalCallError(
        "DRPCloudEndureConfigureBlueprint", "rejected")})
    service = _service(settings, invoker=invoker)
    project = _create(service)
    service.load_blueprints(project)
    with pytest.raises(ExternalCallError):
        service.configure_blueprints(project, ["m-1", "m-2"])
    assert len(invoker.calls) == 1
    assert all(b.configured_at is None for b in service.get_blueprints(project))
