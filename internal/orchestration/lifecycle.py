"""Migration lifecycle orchestrator.

Project state machine:

  UNINITIALIZED -> CREATING -> ACTIVE -> CUTOVER_PENDING -> CUTOVER_COMPLETE
                       |          |            |                  |
                       +----------+------------+------------------+--> DELETING -> DELETED

``create``, ``cutback`` and ``delete`` perform their checks, hand the
multi-step work to the workflow executor and move the project into the
pending state.  The executor reports completion through
``record_workflow_result``.  Every transition and hand-off is written to
the audit log.

Known limitations:
  - create is not atomic: when VPC peering succeeded but the hand-off
    fails, peering stays in place and the create is reported as failed.
  - delete releases credentials as soon as the hand-off is accepted,
    without waiting for the workflow to finish.
"""

import logging
import uuid
from typing import Optional

from internal.aws.clients import FunctionInvoker
from internal.aws.secrets import SecretManager
from internal.blueprint.builder import BlueprintBuilder
from internal.compute.instances import InstanceInventory
from internal.config.settings import settings_store
from internal.db import database
from internal.models.errors import (
    ExternalCallError,
    InvalidTransitionError,
    MigrationError,
    NotFoundError,
    PreconditionFailedError,
    PreconditionReason,
)
from internal.models.types import (
    CreateProjectRequest,
    Credential,
    Machine,
    Project,
    ProjectKind,
    ProjectState,
    ReplicationBlueprint,
    ReplicationProject,
    RunWizardRequest,
    Side,
)
from internal.network.discovery import NetworkDiscovery
from internal.network.translation import TranslationStore
from internal.replication.service import ReplicationService
from internal.workflows.executor import (
    CREATE_PROJECT,
    DELETE_PROJECT,
    PREPARE_CUTBACK,
    RUN_WIZARD,
    SubmissionAck,
    WorkflowExecutor,
)

logger = logging.getLogger(__name__)

CUTBACK_REPLICATION_THRESHOLD = 0.9

TRANSITIONS = {
    ProjectState.UNINITIALIZED: {ProjectState.CREATING},
    ProjectState.CREATING: {ProjectState.ACTIVE, ProjectState.DELETING},
    ProjectState.ACTIVE: {ProjectState.CUTOVER_PENDING, ProjectState.DELETING},
    ProjectState.CUTOVER_PENDING: {ProjectState.CUTOVER_COMPLETE, ProjectState.DELETING},
    ProjectState.CUTOVER_COMPLETE: {ProjectState.DELETING},
    ProjectState.DELETING: {ProjectState.DELETED},
    ProjectState.DELETED: set(),
}


def check_transition(project: Project, target: ProjectState):
    if target not in TRANSITIONS[project.state]:
        raise InvalidTransitionError(
            f"Project {project.id} cannot move from {project.state.value} to {target.value}"
        )


def transition(project: Project, target: ProjectState, action: str,
               detail: Optional[dict] = None) -> Project:
    """Move a project to ``target``, persist it and record the move."""
    check_transition(project, target)
    previous = project.state
    project.state = target
    database.save_project(project)
    database.append_audit_log(action, project.id, previous.value, target.value, detail)
    logger.info("Project %s: %s -> %s (%s)", project.id, previous.value, target.value, action)
    return project


def check_cutback_precondition(machines: list[Machine], blueprints: dict[str, ReplicationBlueprint]):
    """Raise for the first machine that is not ready for cutback."""
    for machine in machines:
        blueprint = blueprints.get(machine.id)
        if blueprint is None or not blueprint.is_configured:
            raise PreconditionFailedError(machine.id, PreconditionReason.BLUEPRINT_NOT_CONFIGURED)

        info = machine.replication_info
        if info.replication_ratio < CUTBACK_REPLICATION_THRESHOLD:
            raise PreconditionFailedError(machine.id, PreconditionReason.REPLICATION_INCOMPLETE)

        if not info.last_consistency_date_time:
            raise PreconditionFailedError(machine.id, PreconditionReason.NO_CONSISTENCY_TIMESTAMP)


class MigrationOrchestrator:
    def __init__(self, secrets: SecretManager, network: NetworkDiscovery,
                 translations: TranslationStore, executor: WorkflowExecutor,
                 replication: ReplicationService, builder: BlueprintBuilder,
                 instances: InstanceInventory, invoker: FunctionInvoker,
                 settings=settings_store):
        self.secrets = secrets
        self.network = network
        self.translations = translations
        self.executor = executor
        self.replication = replication
        self.builder = builder
        self.instances = instances
        self.invoker = invoker
        self.settings = settings

    # ── Projects ────────────────────────────────────────────────────────────

    def get_project(self, project_id: str, kind: ProjectKind = ProjectKind.LIVE) -> Project:
        project = database.get_project(project_id)
        if project is None or project.kind != kind:
            raise NotFoundError(f"Project {project_id} not found")
        return project

    def _new_project(self, request: CreateProjectRequest) -> Project:
        errors = request.validate()
        if errors:
            raise ValueError("; ".join(errors))
        project = Project(
            id=str(uuid.uuid4()),
            name=request.name,
            kind=ProjectKind.LIVE,
            source_region=request.source_region,
            target_region=request.target_region,
            replication=ReplicationProject(
                public_network=request.public_network,
                source_vpc_id=request.source_vpc_id,
                target_instance_type=request.target_instance_type,
            ),
        )
        return database.save_project(project)

    def create(self, request: CreateProjectRequest) -> Project:
        project = self._new_project(request)
        transition(project, ProjectState.CREATING, "create")

        secret_id = self.secrets.save_secret(request.source_credential, project.secret_id(Side.SOURCE))
        peered = False
        if not request.public_network:
            try:
                self.network.peer_vpc(request, secret_id)
            except MigrationError as e:
                database.append_audit_log("create-peering", project.id,
                                          detail={"sourceVpcId": request.source_vpc_id}, error=str(e))
                raise
            peered = True

        try:
            subnet_id = self.network.find_staging_subnet_id(request, secret_id)
            payload = request.to_payload(secret_id)
            payload.update(projectId=project.id, stagingSubnetId=subnet_id)
            ack = self.executor.submit(CREATE_PROJECT, payload)
        except MigrationError as e:
            database.append_audit_log("create-handoff", project.id,
                                      detail={"peeringApplied": peered}, error=str(e))
            if not peered:
                raise
            logger.warning("Create of project %s failed after VPC peering was applied: %s", project.id, e)
            raise ExternalCallError(CREATE_PROJECT, f"create failed after VPC peering was applied: {e}") from e

        database.append_audit_log("create-handoff", project.id, detail={"executionId": ack.execution_id})
        return project

    def run_wizard(self, request: RunWizardRequest) -> Project:
        project = self._new_project(request)
        transition(project, ProjectState.CREATING, "run-wizard")

        # same id as a created project; the tag also marks it for delete_temp_secrets
        secret_id = self.secrets.save_secret(request.source_credential, project.secret_id(Side.SOURCE),
                                             project_id=project.id, temporary=True)
        target_vpc_id = self.translations.find_target_vpc_id(
            request.source_vpc_id, request.source_region, request.target_region)
        if target_vpc_id is None:
            logger.warning("Target VPC of %s is not resolved yet, continuing without it", request.source_vpc_id)
        else:
            project.replication.target_vpc_id = target_vpc_id
            database.save_project(project)

        payload = request.to_payload(secret_id)
        payload.update(projectId=project.id, targetVpcId=target_vpc_id)
        ack = self.executor.submit(RUN_WIZARD, payload)
        database.append_audit_log("run-wizard-handoff", project.id, detail={"executionId": ack.execution_id})
        return project

    def cutback(self, project_id: str, terminate: bool) -> SubmissionAck:
        project = self.get_project(project_id)
        check_transition(project, ProjectState.CUTOVER_PENDING)
        item = project.replication.cutover
        if item is None:
            raise NotFoundError(f"Project {project_id} has no cutover item")

        machines = self.replication.list_machines(item.id)
        blueprints = {b.machine_id: b for b in self.replication.list_blueprints(item.id)}
        try:
            check_cutback_precondition(machines, blueprints)
        except PreconditionFailedError as e:
            database.append_audit_log("cutback", project.id, error=str(e),
                                      detail={"machineId": e.machine_id, "reason": e.reason.value})
            raise

        ack = self.executor.submit(PREPARE_CUTBACK, {
            "terminate": terminate,
            "side": Side.SOURCE.value,
            "projectId": project.id,
        })
        transition(project, ProjectState.CUTOVER_PENDING, "cutback",
                   {"terminate": terminate, "executionId": ack.execution_id})
        return ack

    def delete(self, project_id: str) -> SubmissionAck:
        project = self.get_project(project_id)
        check_transition(project, ProjectState.DELETING)
        ack = self.executor.submit(DELETE_PROJECT, {"id": project.id})
        transition(project, ProjectState.DELETING, "delete", {"executionId": ack.execution_id})

        self.secrets.delete_secret(project.secret_id(Side.SOURCE))
        self.secrets.delete_temp_secrets(project.id)
        return ack

    def record_workflow_result(self, project_id: str, state: ProjectState,
                               replication: Optional[dict] = None) -> Project:
        project = self.get_project(project_id)
        check_transition(project, state)
        if replication:
            merged = project.replication.to_dict()
            merged.update(replication)
            project.replication = ReplicationProject.from_dict(merged)
        transition(project, state, "workflow-result", {"replication": replication} if replication else None)
        if state == ProjectState.DELETED:
            database.delete_project(project.id)
            logger.info("Project %s removed", project.id)
        return project

    # ── Machines ────────────────────────────────────────────────────────────

    def get_machines(self, project: Project, side: Side) -> list[Machine]:
        item = project.replication.get_item(side)
        if item is None:
            return []
        machines = self.replication.list_machines(item.id)
        blueprints = {b.machine_id: b for b in self.replication.list_blueprints(item.id)}
        for machine in machines:
            blueprint = blueprints.get(machine.id)
            machine.region = project.get_region(side) or ""
            machine.blueprint_configured = bool(blueprint and blueprint.is_configured)
        return machines

    def install_agent(self, project: Project, side: Side, instance_ids: list[str]):
        if not project.replication.public_network:
            logger.info("Using private network, adding routes to VPC peering")
            self.network.add_peer_route(project, instance_ids)

        function = self.settings.function("install_agent")
        result = self.invoker.invoke(function, {
            "side": side.value,
            "projectId": project.id,
            "instanceIds": list(instance_ids),
        })
        if result is not True:
            raise ExternalCallError(function, "agent installation failed")
        database.append_audit_log("install-agent", project.id,
                                  detail={"side": side.value, "instanceIds": list(instance_ids)})

    def launch_machines(self, project: Project, side: Side, launch_type: str,
                        machine_ids: list[str]) -> dict:
        item = project.replication.get_item(side)
        if item is None:
            raise NotFoundError(f"Project {project.id} has no {side.value} replication item")

        function = self.settings.function("launch_machines")
        result = self.invoker.invoke(function, {
            "projectId": item.id,
            "launchType": launch_type,
            "machineIds": list(machine_ids),
        })
        if not isinstance(result, dict):
            raise ExternalCallError(function, f"unexpected launch reply {result!r}")
        database.append_audit_log("launch-machines", project.id,
                                  detail={"side": side.value, "launchType": launch_type})
        return result

    def configure_blueprints(self, project: Project, side: Side,
                             machine_map: dict[str, str]) -> list[ReplicationBlueprint]:
        """Configure each machine's blueprint from its source instance, in order."""
        return [
            self.builder.configure(project, side, machine_id, instance_id)
            for machine_id, instance_id in machine_map.items()
        ]

    # ── Discovery ───────────────────────────────────────────────────────────

    def find_vpcs(self, source_region: str, target_region: str, credential: Credential) -> list[dict]:
        return self.network.find_peered_vpcs(source_region, target_region, credential)

    def find_instances(self, region: str, credential: Credential, vpc_id: Optional[str] = None) -> list[dict]:
        return self.instances.find_qualified_instances(region, credential, vpc_id)
