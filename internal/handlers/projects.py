"""HTTP handlers for live-migration projects.

Endpoints:
  GET    /health                                   Health check
  POST   /api/projects                             Create a project (peering + create workflow)
  POST   /api/wizard                               Run the replication wizard
  GET    /api/projects/<id>                        Project detail
  DELETE /api/projects/<id>                        Delete a project
  PUT    /api/projects/<id>/cutback/<terminate>    Prepare cutback
  POST   /api/projects/<id>/state                  Workflow completion callback
  GET    /api/projects/<id>/machines/<side>        Machines with blueprint status
  PUT    /api/projects/<id>/machines/agent         Install the replication agent
  PUT    /api/projects/<id>/machines/blueprint     Configure launch blueprints
  POST   /api/projects/<id>/machines               Launch machines
  PUT    /api/vpcs                                 Peered source VPCs
  PUT    /api/instances                            Qualified source instances
  GET    /api/projects/<id>/audit-log              Audit log of a project

Error mapping (app-wide):
  ValueError 400, NotFoundError 404, InvalidTransitionError 409,
  PreconditionFailedError 412, ExternalCallError 502, TransportError 503.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from internal.db.database import list_audit_log
from internal.models.errors import (
    ExternalCallError,
    InvalidTransitionError,
    MigrationError,
    NotFoundError,
    PreconditionFailedError,
    TransportError,
)
from internal.models.types import (
    CreateProjectRequest,
    Credential,
    ProjectState,
    RunWizardRequest,
    Side,
)

logger = logging.getLogger(__name__)

projects_bp = Blueprint("projects", __name__)

ACCEPTED = {"status": "accepted"}


def _orchestrator():
    return current_app.extensions["drp.orchestrator"]


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValueError("Request body must be a valid JSON object")
    return body


def _parse_bool(value: str) -> bool:
    lowered = value.lower()
    if lowered in ("true", "1"):
        return True
    if lowered in ("false", "0"):
        return False
    raise ValueError(f"Expected true or false, got {value!r}")


def _credential(body: dict, key: str = "sourceCredential") -> Credential:
    data = body.get(key)
    if not data:
        raise ValueError(f"{key} is required")
    return Credential.from_dict(data)


# ── Error mapping ───────────────────────────────────────────────────────────

@projects_bp.app_errorhandler(ValueError)
def _bad_request(e):
    return jsonify({"error": str(e)}), 400


@projects_bp.app_errorhandler(NotFoundError)
def _not_found(e):
    return jsonify({"error": str(e)}), 404


@projects_bp.app_errorhandler(InvalidTransitionError)
def _conflict(e):
    return jsonify({"error": str(e)}), 409


@projects_bp.app_errorhandler(PreconditionFailedError)
def _precondition_failed(e):
    return jsonify({"error": str(e), "machineId": e.machine_id, "reason": e.reason.value}), 412


@projects_bp.app_errorhandler(ExternalCallError)
def _bad_gateway(e):
    return jsonify({"error": str(e), "function": e.function}), 502


@projects_bp.app_errorhandler(TransportError)
def _unavailable(e):
    return jsonify({"error": str(e)}), 503


@projects_bp.app_errorhandler(MigrationError)
def _migration_error(e):
    logger.error("Unhandled migration error: %s", e)
    return jsonify({"error": str(e)}), 500


# ── Projects ────────────────────────────────────────────────────────────────

@projects_bp.route("/health", methods=["GET"])
def health():
    """Health check endpoint."""
    return jsonify({"status": "ok"}), 200


@projects_bp.route("/api/projects", methods=["POST"])
def create_project():
    req = CreateProjectRequest.from_dict(_json_body())
    project = _orchestrator().create(req)
    return jsonify({**ACCEPTED, "project": project.to_dict()}), 202


@projects_bp.route("/api/wizard", methods=["POST"])
def run_wizard():
    req = RunWizardRequest.from_dict(_json_body())
    project = _orchestrator().run_wizard(req)
    return jsonify({**ACCEPTED, "project": project.to_dict()}), 202


@projects_bp.route("/api/projects/<project_id>", methods=["GET"])
def get_project(project_id):
    return jsonify(_orchestrator().get_project(project_id).to_dict()), 200


@projects_bp.route("/api/projects/<project_id>", methods=["DELETE"])
def delete_project(project_id):
    _orchestrator().delete(project_id)
    return jsonify(ACCEPTED), 202


@projects_bp.route("/api/projects/<project_id>/cutback/<terminate>", methods=["PUT"])
def prepare_cutback(project_id, terminate):
    _orchestrator().cutback(project_id, _parse_bool(terminate))
    return jsonify(ACCEPTED), 202


@projects_bp.route("/api/projects/<project_id>/state", methods=["POST"])
def record_state(project_id):
    body = _json_body()
    state = ProjectState(body.get("state", ""))
    project = _orchestrator().record_workflow_result(project_id, state, body.get("replication"))
    return jsonify(project.to_dict()), 200


@projects_bp.route("/api/projects/<project_id>/audit-log", methods=["GET"])
def audit_log(project_id):
    _orchestrator().get_project(project_id)
    limit = request.args.get("limit", 100, type=int)
    return jsonify({"entries": list_audit_log(project_id=project_id, limit=limit)}), 200


# ── Machines ────────────────────────────────────────────────────────────────

@projects_bp.route("/api/projects/<project_id>/machines/<side>", methods=["GET"])
def get_machines(project_id, side):
    orchestrator = _orchestrator()
    project = orchestrator.get_project(project_id)
    machines = orchestrator.get_machines(project, Side(side))
    return jsonify([m.to_dict() for m in machines]), 200


@projects_bp.route("/api/projects/<project_id>/machines/agent", methods=["PUT"])
def install_agent(project_id):
    body = _json_body()
    orchestrator = _orchestrator()
    project = orchestrator.get_project(project_id)
    orchestrator.install_agent(project, Side(body.get("side", "")), body.get("instanceIds") or [])
    return jsonify(ACCEPTED), 202


@projects_bp.route("/api/projects/<project_id>/machines/blueprint", methods=["PUT"])
def configure_blueprints(project_id):
    body = _json_body()
    machine_map = body.get("machineIdMap") or {}
    if not isinstance(machine_map, dict):
        raise ValueError("machineIdMap must map machine ids to instance ids")
    orchestrator = _orchestrator()
    project = orchestrator.get_project(project_id)
    orchestrator.configure_blueprints(project, Side(body.get("side", "")), machine_map)
    return jsonify(ACCEPTED), 202


@projects_bp.route("/api/projects/<project_id>/machines", methods=["POST"])
def launch_machines(project_id):
    body = _json_body()
    orchestrator = _orchestrator()
    project = orchestrator.get_project(project_id)
    result = orchestrator.launch_machines(project, Side(body.get("side", "")),
                                          body.get("launchType", ""), body.get("machineIds") or [])
    return jsonify({**ACCEPTED, "result": result}), 202


# ── Discovery ───────────────────────────────────────────────────────────────

@projects_bp.route("/api/vpcs", methods=["PUT"])
def find_vpcs():
    body = _json_body()
    source_region = body.get("sourceRegion", "")
    target_region = body.get("targetRegion", "")
    if not source_region or not target_region:
        raise ValueError("sourceRegion and targetRegion are required")
    vpcs = _orchestrator().find_vpcs(source_region, target_region, _credential(body))
    return jsonify(vpcs), 200


@projects_bp.route("/api/instances", methods=["PUT"])
def find_instances():
    body = _json_body()
    region = body.get("region", "")
    if not region:
        raise ValueError("region is required")
    instances = _orchestrator().find_instances(region, _credential(body, "credential"), body.get("vpcId"))
    return jsonify(instances), 200
