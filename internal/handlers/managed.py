"""HTTP handlers for managed-execution projects.

Endpoints:
  POST   /api/managed-projects                         Register a managed project
  GET    /api/managed-projects/<id>                    Project detail
  DELETE /api/managed-projects/<id>                    Delete a managed project
  GET    /api/managed-projects/<id>/machines           Machines of the project
  GET    /api/managed-projects/<id>/blueprints         Stored blueprints
  PUT    /api/managed-projects/<id>/blueprints         (Re)load blueprints from the machines
  PUT    /api/managed-projects/<id>/set-blueprint      Bulk subnet/disk/instance edit
  PUT    /api/managed-projects/<id>/security-groups    Assign security groups
  PUT    /api/managed-projects/<id>/configure          Push blueprints to the replication service
"""

from flask import Blueprint, current_app, jsonify, request

from internal.models.types import (
    CreateManagedProjectRequest,
    SecurityGroupRef,
    SetBlueprintRequest,
)

managed_bp = Blueprint("managed", __name__)


def _service():
    return current_app.extensions["drp.managed"]


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValueError("Request body must be a valid JSON object")
    return body


def _machine_ids(body: dict) -> list:
    machine_ids = body.get("machineIds") or []
    if not machine_ids:
        raise ValueError("machineIds must not be empty")
    return list(machine_ids)


@managed_bp.route("/api/managed-projects", methods=["POST"])
def create_managed_project():
    req = CreateManagedProjectRequest.from_dict(_json_body())
    project = _service().create_managed_project(req)
    return jsonify(project.to_dict()), 201


@managed_bp.route("/api/managed-projects/<project_id>", methods=["GET"])
def get_managed_project(project_id):
    return jsonify(_service().get_project(project_id).to_dict()), 200


@managed_bp.route("/api/managed-projects/<project_id>", methods=["DELETE"])
def delete_managed_project(project_id):
    project = _service().delete(project_id)
    return jsonify(project.to_dict()), 200


@managed_bp.route("/api/managed-projects/<project_id>/machines", methods=["GET"])
def get_machines(project_id):
    service = _service()
    machines = service.get_machines(service.get_project(project_id))
    return jsonify([m.to_dict() for m in machines]), 200


@managed_bp.route("/api/managed-projects/<project_id>/blueprints", methods=["GET"])
def get_blueprints(project_id):
    service = _service()
    blueprints = service.get_blueprints(service.get_project(project_id))
    return jsonify([b.to_dict() for b in blueprints]), 200


@managed_bp.route("/api/managed-projects/<project_id>/blueprints", methods=["PUT"])
def load_blueprints(project_id):
    service = _service()
    blueprints = service.load_blueprints(service.get_project(project_id))
    return jsonify([b.to_dict() for b in blueprints]), 200


@managed_bp.route("/api/managed-projects/<project_id>/set-blueprint", methods=["PUT"])
def set_blueprint(project_id):
    service = _service()
    project = service.get_project(project_id)
    blueprints = service.set_blueprint(project, SetBlueprintRequest.from_dict(_json_body()))
    return jsonify([b.to_dict() for b in blueprints]), 200


@managed_bp.route("/api/managed-projects/<project_id>/security-groups", methods=["PUT"])
def select_security_group(project_id):
    body = _json_body()
    groups = [SecurityGroupRef.from_dict(g) for g in body.get("securityGroups") or []]
    service = _service()
    project = service.get_project(project_id)
    blueprints = service.select_security_group(project, _machine_ids(body), groups)
    return jsonify([b.to_dict() for b in blueprints]), 200


@managed_bp.route("/api/managed-projects/<project_id>/configure", methods=["PUT"])
def configure_blueprints(project_id):
    body = _json_body()
    service = _service()
    project = service.get_project(project_id)
    service.configure_blueprints(project, _machine_ids(body))
    return jsonify({"status": "accepted"}), 202
