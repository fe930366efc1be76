"""Migration control plane entry point.

Wires the collaborators from settings and serves the HTTP API.

Environment:
  PORT                   listen port (default 8080)
  AWS_REGION             region of the control plane's own services (default us-east-1)
  DRP_LOG_LEVEL          log level (default INFO)
  DRP_CONFIG_PATH        settings file (default config/migration.yaml)
  DRP_DB_PATH            SQLite file (default drp.db)
  DRP_REPLICATION_TOKEN  replication service API token
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

from flask import Flask

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

from internal.aws.clients import ClientFactory, FunctionInvoker
from internal.aws.secrets import SecretManager
from internal.blueprint.builder import BlueprintBuilder
from internal.blueprint.managed import ManagedProjectService
from internal.compute.instances import InstanceInventory
from internal.config.settings import settings_store
from internal.db import database
from internal.handlers.managed import managed_bp
from internal.handlers.projects import projects_bp
from internal.network.discovery import NetworkDiscovery
from internal.network.translation import TranslationStore
from internal.orchestration.lifecycle import MigrationOrchestrator
from internal.replication.service import CloudEndureClient, ReauthenticatingService
from internal.workflows.executor import StepFunctionsExecutor

logger = logging.getLogger(__name__)


def build_services(settings=settings_store) -> tuple[MigrationOrchestrator, ManagedProjectService]:
    """Build the orchestrator and the managed-project service on real AWS clients."""
    config = settings.load()
    region = os.getenv("AWS_REGION", "us-east-1")
    clients = ClientFactory()

    invoker = FunctionInvoker(clients.client("lambda", region))
    translations = TranslationStore(clients.client("dynamodb", region), config["tables"]["translation"])
    secrets = SecretManager(clients.client("secretsmanager", region), config["secrets"]["prefix"])
    executor = StepFunctionsExecutor(clients.client("stepfunctions", region), settings)
    replication = ReauthenticatingService(
        CloudEndureClient(config["replication"]["api_url"], config["replication"]["api_token"])
    )
    instances = InstanceInventory(clients)
    network = NetworkDiscovery(clients, invoker, translations, settings)
    builder = BlueprintBuilder(clients, invoker, translations, secrets, instances, settings)

    orchestrator = MigrationOrchestrator(
        secrets=secrets,
        network=network,
        translations=translations,
        executor=executor,
        replication=replication,
        builder=builder,
        instances=instances,
        invoker=invoker,
        settings=settings,
    )
    managed = ManagedProjectService(replication, network, clients, invoker, settings)
    return orchestrator, managed


def create_app(orchestrator: MigrationOrchestrator | None = None,
               managed: ManagedProjectService | None = None) -> Flask:
    if orchestrator is None or managed is None:
        default_orchestrator, default_managed = build_services()
        orchestrator = orchestrator or default_orchestrator
        managed = managed or default_managed

    app = Flask(__name__)
    app.extensions["drp.orchestrator"] = orchestrator
    app.extensions["drp.managed"] = managed
    app.register_blueprint(projects_bp)
    app.register_blueprint(managed_bp)
    return app


def run() -> None:
    logging.basicConfig(
        level=os.getenv("DRP_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    database.init_db()
    app = create_app()
    port = int(os.getenv("PORT", "8080"))
    logger.info("Migration control plane listening on http://0.0.0.0:%d", port)
    app.run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    run()
