"""Data types for the migration control plane."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


GIB = 1024 * 1024 * 1024
TAG_BLUEPRINT = "drp:blueprint-configured"
TAG_MACHINE = "drp:machine"
DEFAULT_INSTANCE_TYPE = "t2.large"
DEFAULT_DISK_IOPS = 3000


class Side(str, Enum):
    """Role of one half of a migration pairing."""
    SOURCE = "source"
    TARGET = "target"


class Tier(str, Enum):
    ECONOMY = "economy"
    BUSINESS = "business"
    CUSTOMIZED = "customized"


class DiskType(str, Enum):
    STANDARD = "STANDARD"
    SSD = "SSD"
    GP3 = "GP3"
    PROVISIONED_SSD = "PROVISIONED_SSD"
    PROVISIONED_IO2 = "PROVISIONED_IO2"


class ProjectKind(str, Enum):
    LIVE = "live"          # one replication item per side
    MANAGED = "managed"    # one combined item, blueprints managed here


class ProjectState(str, Enum):
    UNINITIALIZED = "UNINITIALIZED"
    CREATING = "CREATING"
    ACTIVE = "ACTIVE"
    CUTOVER_PENDING = "CUTOVER_PENDING"
    CUTOVER_COMPLETE = "CUTOVER_COMPLETE"
    DELETING = "DELETING"
    DELETED = "DELETED"


# ── Credentials & projects ──────────────────────────────────────────────────

@dataclass
class Credential:
    access_key_id: str
    secret_access_key: str
    session_token: Optional[str] = None

    def to_boto(self) -> dict:
        """Keyword arguments for ``boto3.Session``."""
        kwargs = {
            "aws_access_key_id": self.access_key_id,
            "aws_secret_access_key": self.secret_access_key,
        }
        if self.session_token:
            kwargs["aws_session_token"] = self.session_token
        return kwargs

    def to_dict(self) -> dict:
        data = {"accessKeyId": self.access_key_id, "secretAccessKey": self.secret_access_key}
        if self.session_token:
            data["sessionToken"] = self.session_token
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Credential":
        return cls(
            access_key_id=data.get("accessKeyId", ""),
            secret_access_key=data.get("secretAccessKey", ""),
            session_token=data.get("sessionToken"),
        )


@dataclass
class ReplicationItem:
    """Handle of a replication-service project for one side."""
    id: str
    name: str = ""

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["ReplicationItem"]:
        if not data:
            return None
        if not isinstance(data, dict) or not data.get("id"):
            raise ValueError(f"replication project {data!r} has no id")
        return cls(id=data["id"], name=data.get("name", ""))


@dataclass
class ReplicationProject:
    """Live-migration details: one replication item per side plus the cutover item."""
    source: Optional[ReplicationItem] = None
    target: Optional[ReplicationItem] = None
    cutover: Optional[ReplicationItem] = None
    public_network: bool = False
    source_vpc_id: str = ""
    target_vpc_id: str = ""
    target_instance_type: str = DEFAULT_INSTANCE_TYPE

    def get_item(self, side: Side) -> Optional[ReplicationItem]:
        return self.source if side == Side.SOURCE else self.target

    def get_vpc_id(self, side: Side) -> str:
        return self.source_vpc_id if side == Side.SOURCE else self.target_vpc_id

    def to_dict(self) -> dict:
        return {
            "source": self.source.to_dict() if self.source else None,
            "target": self.target.to_dict() if self.target else None,
            "cutover": self.cutover.to_dict() if self.cutover else None,
            "publicNetwork": self.public_network,
            "sourceVpcId": self.source_vpc_id,
            "targetVpcId": self.target_vpc_id,
            "targetInstanceType": self.target_instance_type,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ReplicationProject":
        return cls(
            source=ReplicationItem.from_dict(data.get("source")),
            target=ReplicationItem.from_dict(data.get("target")),
            cutover=ReplicationItem.from_dict(data.get("cutover")),
            public_network=bool(data.get("publicNetwork", False)),
            source_vpc_id=data.get("sourceVpcId") or "",
            target_vpc_id=data.get("targetVpcId") or "",
            target_instance_type=data.get("targetInstanceType") or DEFAULT_INSTANCE_TYPE,
        )


@dataclass
class ManagedProject:
    """Managed-execution details: one combined item and the target VPC."""
    item: ReplicationItem
    vpc_id: str

    def to_dict(self) -> dict:
        return {"item": self.item.to_dict(), "vpcId": self.vpc_id}

    @classmethod
    def from_dict(cls, data: dict) -> "ManagedProject":
        return cls(item=ReplicationItem.from_dict(data["item"]), vpc_id=data.get("vpcId", ""))


@dataclass
class Project:
    """Durable record pairing a source and a target environment."""
    id: str
    name: str
    kind: ProjectKind
    target_region: str
    source_region: Optional[str] = None
    state: ProjectState = ProjectState.UNINITIALIZED
    replication: Optional[ReplicationProject] = None
    managed: Optional[ManagedProject] = None
    created_at: float = 0
    updated_at: float = 0

    def get_region(self, side: Side) -> Optional[str]:
        return self.source_region if side == Side.SOURCE else self.target_region

    def secret_id(self, side: Side) -> str:
        return f"{self.id}-{side.value}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "sourceRegion": self.source_region,
            "targetRegion": self.target_region,
            "state": self.state.value,
            "replication": self.replication.to_dict() if self.replication else None,
            "managed": self.managed.to_dict() if self.managed else None,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Project":
        return cls(
            id=data["id"],
            name=data["name"],
            kind=ProjectKind(data["kind"]),
            source_region=data.get("sourceRegion"),
            target_region=data["targetRegion"],
            state=ProjectState(data.get("state", ProjectState.UNINITIALIZED.value)),
            replication=ReplicationProject.from_dict(data["replication"]) if data.get("replication") else None,
            managed=ManagedProject.from_dict(data["managed"]) if data.get("managed") else None,
            created_at=data.get("createdAt", 0),
            updated_at=data.get("updatedAt", 0),
        )


# ── Replicated machines ─────────────────────────────────────────────────────

@dataclass
class ReplicationInfo:
    replicated_storage_bytes: int = 0
    total_storage_bytes: int = 0
    last_consistency_date_time: Optional[str] = None

    @property
    def replication_ratio(self) -> float:
        if self.total_storage_bytes <= 0:
            return 0.0
        return self.replicated_storage_bytes / self.total_storage_bytes


@dataclass
class SourceProperties:
    name: str = ""
    os: str = ""
    cpu_cores: int = 1
    memory_bytes: int = 0
    disks: list = field(default_factory=list)


@dataclass
class Machine:
    """A replicated virtual machine as reported by the replication service."""
    id: str
    source: SourceProperties = field(default_factory=SourceProperties)
    replication_info: ReplicationInfo = field(default_factory=ReplicationInfo)
    region: str = ""
    blueprint_configured: bool = False

    @classmethod
    def from_api(cls, data: dict) -> "Machine":
        props = data.get("sourceProperties") or {}
        cpus = props.get("cpu") or []
        info = data.get("replicationInfo") or {}
        return cls(
            id=data["id"],
            source=SourceProperties(
                name=props.get("name", ""),
                os=props.get("os", ""),
                cpu_cores=cpus[0].get("cores", 1) if cpus else 1,
                memory_bytes=props.get("memory", 0),
                disks=[d.get("name", "") for d in props.get("disks") or []],
            ),
            replication_info=ReplicationInfo(
                replicated_storage_bytes=info.get("replicatedStorageBytes", 0),
                total_storage_bytes=info.get("totalStorageBytes", 0),
                last_consistency_date_time=info.get("lastConsistencyDateTime"),
            ),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.source.name,
            "os": self.source.os,
            "cpus": self.source.cpu_cores,
            "memory": self.source.memory_bytes,
            "disks": list(self.source.disks),
            "replicationInfo": {
                "replicatedStorageBytes": self.replication_info.replicated_storage_bytes,
                "totalStorageBytes": self.replication_info.total_storage_bytes,
                "lastConsistencyDateTime": self.replication_info.last_consistency_date_time,
            },
            "region": self.region,
            "blueprintConfigured": self.blueprint_configured,
        }


@dataclass
class ReplicationBlueprint:
    """Launch blueprint as held by the replication service."""
    machine_id: str
    id: str = ""
    instance_type: str = ""
    subnet_ids: list = field(default_factory=list)
    private_ips: list = field(default_factory=list)
    security_group_ids: list = field(default_factory=list)
    iam_role: str = ""
    tags: list = field(default_factory=list)

    @property
    def is_configured(self) -> bool:
        return any(t.get("key") == TAG_BLUEPRINT for t in self.tags)

    @classmethod
    def from_api(cls, data: dict) -> "ReplicationBlueprint":
        return cls(
            machine_id=data["machineId"],
            id=data.get("id", ""),
            instance_type=data.get("instanceType", ""),
            subnet_ids=list(data.get("subnetIDs") or []),
            private_ips=list(data.get("privateIPs") or []),
            security_group_ids=list(data.get("securityGroupIDs") or []),
            iam_role=data.get("iamRole", ""),
            tags=list(data.get("tags") or []),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "machineId": self.machine_id,
            "instanceType": self.instance_type,
            "subnetIDs": self.subnet_ids,
            "privateIPs": self.private_ips,
            "securityGroupIDs": self.security_group_ids,
            "iamRole": self.iam_role,
            "tags": self.tags,
            "configured": self.is_configured,
        }


# ── Target launch specification ─────────────────────────────────────────────

@dataclass(frozen=True)
class SecurityGroupRef:
    id: str
    name: str = ""

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name}

    @classmethod
    def from_dict(cls, data: dict) -> "SecurityGroupRef":
        if not isinstance(data, dict) or not data.get("id"):
            raise ValueError(f"security group {data!r} has no id")
        return cls(id=data["id"], name=data.get("name", ""))


@dataclass
class Blueprint:
    """Persisted target launch specification, keyed by (project_id, machine_id)."""
    project_id: str
    machine_id: str
    name: str = ""
    os_name: str = ""
    cpus: int = 1
    memory: int = 0
    public_subnet: bool = False
    iam_role: str = ""
    instance_type: str = ""
    subnet_id: str = ""
    ip_address: str = ""
    disks: list = field(default_factory=list)
    disk_iops: int = DEFAULT_DISK_IOPS
    disk_type: DiskType = DiskType.STANDARD
    security_groups: list = field(default_factory=list)
    configured_at: Optional[str] = None
    version: int = 0

    def to_dict(self) -> dict:
        return {
            "projectId": self.project_id,
            "machineId": self.machine_id,
            "name": self.name,
            "osName": self.os_name,
            "cpus": self.cpus,
            "memory": self.memory,
            "publicSubnet": self.public_subnet,
            "iamRole": self.iam_role,
            "instanceType": self.instance_type,
            "subnetId": self.subnet_id,
            "ipAddress": self.ip_address,
            "disks": list(self.disks),
            "diskIops": self.disk_iops,
            "diskType": self.disk_type.value,
            "securityGroups": [g.to_dict() for g in self.security_groups],
            "configuredAt": self.configured_at,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Blueprint":
        return cls(
            project_id=data["projectId"],
            machine_id=data["machineId"],
            name=data.get("name", ""),
            os_name=data.get("osName", ""),
            cpus=data.get("cpus", 1),
            memory=data.get("memory", 0),
            public_subnet=bool(data.get("publicSubnet", False)),
            iam_role=data.get("iamRole", ""),
            instance_type=data.get("instanceType", ""),
            subnet_id=data.get("subnetId", ""),
            ip_address=data.get("ipAddress", ""),
            disks=list(data.get("disks") or []),
            disk_iops=data.get("diskIops", DEFAULT_DISK_IOPS),
            disk_type=DiskType(data.get("diskType", DiskType.STANDARD.value)),
            security_groups=[SecurityGroupRef.from_dict(g) for g in data.get("securityGroups") or []],
            configured_at=data.get("configuredAt"),
            version=data.get("version", 0),
        )


@dataclass
class LaunchSpec:
    """Payload submitted to the blueprint provisioning function."""
    project_id: str
    machine_id: str
    subnet_id: str
    security_group_ids: list
    private_ip: str
    instance_type: str
    tags: list
    disks: list
    iam_role: str = ""
    disk_iops: Optional[int] = None
    disk_type: Optional[DiskType] = None

    def to_payload(self) -> dict:
        payload = {
            "projectId": self.project_id,
            "machineId": self.machine_id,
            "subnetId": self.subnet_id,
            "securityGroupIds": list(self.security_group_ids),
            "privateIp": self.private_ip,
            "instanceType": self.instance_type,
            "tags": list(self.tags),
            "disks": list(self.disks),
            "iamRole": self.iam_role,
        }
        if self.disk_iops is not None:
            payload["diskIops"] = self.disk_iops
        if self.disk_type is not None:
            payload["diskType"] = self.disk_type.value
        return payload


# ── Requests ────────────────────────────────────────────────────────────────

@dataclass
class CreateProjectRequest:
    """Initiation request for a live-migration project."""
    name: str
    source_region: str
    target_region: str
    source_vpc_id: str
    source_credential: Optional[Credential]
    public_network: bool = False
    target_instance_type: str = DEFAULT_INSTANCE_TYPE

    @classmethod
    def _kwargs(cls, body: dict) -> dict:
        cred = body.get("sourceCredential")
        return {
            "name": body.get("name", ""),
            "source_region": body.get("sourceRegion", ""),
            "target_region": body.get("targetRegion", ""),
            "source_vpc_id": body.get("sourceVpcId", ""),
            "source_credential": Credential.from_dict(cred) if cred else None,
            "public_network": bool(body.get("publicNetwork", False)),
            "target_instance_type": body.get("targetInstanceType") or DEFAULT_INSTANCE_TYPE,
        }

    @classmethod
    def from_dict(cls, body: dict) -> "CreateProjectRequest":
        return cls(**cls._kwargs(body))

    def validate(self) -> list:
        """Return a list of validation errors (empty if valid)."""
        errors = []
        if not self.name:
            errors.append("name is required")
        if not self.source_region:
            errors.append("sourceRegion is required")
        if not self.target_region:
            errors.append("targetRegion is required")
        if not self.source_vpc_id:
            errors.append("sourceVpcId is required")
        if self.source_credential is None:
            errors.append("sourceCredential is required")
        return errors

    def to_payload(self, secret_id: str) -> dict:
        """Workflow input; the credential travels only as a secret reference."""
        return {
            "name": self.name,
            "sourceRegion": self.source_region,
            "targetRegion": self.target_region,
            "sourceVpcId": self.source_vpc_id,
            "publicNetwork": self.public_network,
            "targetInstanceType": self.target_instance_type,
            "sourceCredentialId": secret_id,
        }


@dataclass
class RunWizardRequest(CreateProjectRequest):
    cidr: str = ""
    continuous: bool = False
    instance_ids: list = field(default_factory=list)

    @classmethod
    def from_dict(cls, body: dict) -> "RunWizardRequest":
        kwargs = cls._kwargs(body)
        kwargs.update(
            cidr=body.get("cidr", ""),
            continuous=bool(body.get("continuous", False)),
            instance_ids=list(body.get("instanceIds") or []),
        )
        return cls(**kwargs)

    def validate(self) -> list:
        errors = super().validate()
        if not self.instance_ids:
            errors.append("instanceIds must not be empty")
        return errors

    def to_payload(self, secret_id: str) -> dict:
        payload = super().to_payload(secret_id)
        payload.update(cidr=self.cidr, continuous=self.continuous, instanceIds=list(self.instance_ids))
        return payload


@dataclass
class CreateManagedProjectRequest:
    name: str
    target_region: str
    target_vpc_id: str
    item: Optional[ReplicationItem]
    source_region: Optional[str] = None

    @classmethod
    def from_dict(cls, body: dict) -> "CreateManagedProjectRequest":
        return cls(
            name=body.get("name", ""),
            target_region=body.get("targetRegion", ""),
            target_vpc_id=body.get("targetVpcId", ""),
            item=ReplicationItem.from_dict(body.get("project")),
            source_region=body.get("sourceRegion"),
        )

    def validate(self) -> list:
        errors = []
        if not self.name:
            errors.append("name is required")
        if not self.target_region:
            errors.append("targetRegion is required")
        if not self.target_vpc_id:
            errors.append("targetVpcId is required")
        if self.item is None:
            errors.append("project is required")
        return errors


@dataclass
class SetBlueprintRequest:
    """Bulk blueprint edit; each *_intact flag leaves that part untouched."""
    machine_ids: list
    public_subnet: bool = False
    subnet_intact: bool = False
    disk_intact: bool = False
    instance_intact: bool = False
    disk_type: Optional[Tier] = None
    instance_type: Optional[Tier] = None
    custom_instance_type: str = ""

    @classmethod
    def from_dict(cls, body: dict) -> "SetBlueprintRequest":
        disk = body.get("diskType")
        instance = body.get("instanceType")
        return cls(
            machine_ids=list(body.get("machineIds") or []),
            public_subnet=bool(body.get("publicSubnet", False)),
            subnet_intact=bool(body.get("subnetIntact", False)),
            disk_intact=bool(body.get("diskIntact", False)),
            instance_intact=bool(body.get("instanceIntact", False)),
            disk_type=Tier(disk) if disk else None,
            instance_type=Tier(instance) if instance else None,
            custom_instance_type=body.get("customInstanceType", ""),
        )

    def validate(self) -> list:
        errors = []
        if not self.machine_ids:
            errors.append("machineIds must not be empty")
        if not self.disk_intact and self.disk_type is None:
            errors.append("diskType is required unless diskIntact is set")
        if not self.instance_intact:
            if self.instance_type is None:
                errors.append("instanceType is required unless instanceIntact is set")
            elif self.instance_type == Tier.CUSTOMIZED and not self.custom_instance_type:
                errors.append("customInstanceType is required for the customized tier")
        return errors
