"""Shared fixtures and in-memory collaborators for the test suite."""

import io
import json
import os
import tempfile

import pytest

from internal.compute.instance_types import instance_type_cache
from internal.config.settings import SettingsStore
from internal.models.errors import NotFoundError
from internal.workflows.executor import SubmissionAck


@pytest.fixture(autouse=True)
def temp_db():
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    from internal.db import database
    database.init_db(path)
    yield path
    os.unlink(path)


@pytest.fixture(autouse=True)
def fresh_type_cache():
    instance_type_cache.clear()
    yield
    instance_type_cache.clear()


@pytest.fixture
def settings(tmp_path):
    return SettingsStore(str(tmp_path / "missing.yaml"))


# ── boto3 fakes ─────────────────────────────────────────────────────────────

class FakePaginator:
    def __init__(self, client, operation):
        self.client = client
        self.operation = operation

    def paginate(self, **kwargs):
        self.client.calls.append((self.operation, kwargs))
        pages = self.client.pages.get(self.operation, [])
        if callable(pages):
            pages = pages(**kwargs)
        for page in pages:
            yield page


class FakeAwsClient:
    """boto3-like client: paginated listings from ``pages``, other calls from ``methods``.

    ``pages`` maps an operation to a list of page dicts, or to a callable
    taking the request kwargs and returning such a list.
    """

    def __init__(self, pages=None, **methods):
        self.pages = pages or {}
        self.calls = []
        for name, fn in methods.items():
            setattr(self, name, self._recorded(name, fn))

    def _recorded(self, name, fn):
        def call(**kwargs):
            self.calls.append((name, kwargs))
            return fn(**kwargs)
        return call

    def get_paginator(self, operation):
        return FakePaginator(self, operation)

    def operations(self, name):
        return [kwargs for op, kwargs in self.calls if op == name]


class FakeClientFactory:
    """Returns clients keyed by service, or by (service, region) when registered so."""

    def __init__(self, clients):
        self.clients = clients
        self.requested = []

    def client(self, service, region, credential=None):
        self.requested.append((service, region, credential))
        if (service, region) in self.clients:
            return self.clients[(service, region)]
        return self.clients[service]


def lambda_reply(payload):
    """A Lambda invoke response whose payload is ``payload`` serialized as JSON."""
    return {"StatusCode": 200, "Payload": io.BytesIO(json.dumps(payload).encode("utf-8"))}


# ── Collaborator fakes ──────────────────────────────────────────────────────

class FakeInvoker:
    def __init__(self, replies=None):
        self.replies = replies or {}
        self.calls = []

    def invoke(self, function, payload):
        self.calls.append((function, payload))
        reply = self.replies.get(function)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(payload)
        return reply

    def payloads(self, function):
        return [p for f, p in self.calls if f == function]


class FakeExecutor:
    def __init__(self, error=None):
        self.error = error
        self.submissions = []

    def submit(self, workflow, payload):
        if self.error is not None:
            raise self.error
        self.submissions.append((workflow, payload))
        return SubmissionAck(workflow=workflow, execution_id=f"exec-{len(self.submissions)}")


class FakeReplication:
    def __init__(self, machines=None, blueprints=None):
        self.machines = machines or {}
        self.blueprints = blueprints or {}
        self.logins = 0

    def login(self):
        self.logins += 1

    def list_machines(self, item_id):
        return list(self.machines.get(item_id, []))

    def list_blueprints(self, item_id):
        return list(self.blueprints.get(item_id, []))


class FakeSecrets:
    def __init__(self):
        self.saved = {}
        self.temporary = {}
        self.deleted = []
        self.deleted_temp_for = []

    def save_secret(self, credential, secret_id=None, project_id=None, temporary=False):
        secret_id = secret_id or f"secret-{len(self.saved) + len(self.temporary) + 1}"
        if temporary:
            self.temporary[secret_id] = (project_id, credential)
        else:
            self.saved[secret_id] = credential
        return secret_id

    def get_credential(self, secret_id):
        if secret_id in self.temporary:
            return self.temporary[secret_id][1]
        if secret_id not in self.saved:
            raise NotFoundError(f"Secret {secret_id} not found")
        return self.saved[secret_id]

    def delete_secret(self, secret_id):
        self.deleted.append(secret_id)
        found = secret_id in self.saved or secret_id in self.temporary
        self.saved.pop(secret_id, None)
        self.temporary.pop(secret_id, None)
        return found

    def delete_temp_secrets(self, project_id):
        self.deleted_temp_for.append(project_id)
        owned = [sid for sid, (owner, _) in self.temporary.items() if owner == project_id]
        for secret_id in owned:
            del self.temporary[secret_id]
        return len(owned)


class FakeTranslations:
    """Translation store over plain records: (id, targetId, sourceRegion, targetRegion)."""

    def __init__(self, records=None):
        self.records = records or []

    def _last(self, key, value, source_region, target_region):
        result = None
        for rid, tid, src, tgt in self.records:
            if (rid if key == "id" else tid) == value and (src, tgt) == (source_region, target_region):
                result = (rid, tid)
        return result

    def find_target_id(self, source_id, source_region, target_region):
        match = self._last("id", source_id, source_region, target_region)
        if match is None:
            raise NotFoundError(f"Unable to find target ID of {source_id}")
        return match[1]

    def find_source_id(self, target_id, source_region, target_region):
        match = self._last("targetId", target_id, source_region, target_region)
        if match is None:
            raise NotFoundError(f"Unable to find source ID of {target_id}")
        return match[0]

    def find_target_vpc_id(self, source_vpc_id, source_region, target_region):
        match = self._last("id", source_vpc_id, source_region, target_region)
        return match[1] if match else None


class FakeNetwork:
    """Network collaborator recording peering, staging and route calls."""

    def __init__(self, staging_subnet="subnet-staging", peer_error=None):
        self.staging_subnet = staging_subnet
        self.peer_error = peer_error
        self.peered = []
        self.routes = []
        self.staging_requests = []

    def peer_vpc(self, request, secret_id):
        if self.peer_error is not None:
            raise self.peer_error
        self.peered.append((request.source_vpc_id, secret_id))

    def find_staging_subnet_id(self, request, secret_id):
        self.staging_requests.append(secret_id)
        if isinstance(self.staging_subnet, Exception):
            raise self.staging_subnet
        return self.staging_subnet

    def add_peer_route(self, project, instance_ids):
        self.routes.append((project.id, list(instance_ids)))

    def find_peered_vpcs(self, source_region, target_region, credential):
        return [{"vpcId": "vpc-src", "peerVpcId": "vpc-tgt"}]


# ── Fixtures ────────────────────────────────────────────────────────────────

@pytest.fixture
def invoker():
    return FakeInvoker()


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def replication():
    return FakeReplication()


@pytest.fixture
def secrets():
    return FakeSecrets()


@pytest.fixture
def translations():
    return FakeTranslations([
        ("vpc-src", "vpc-tgt", "us-east-1", "us-west-2"),
        ("subnet-src", "subnet-tgt", "us-east-1", "us-west-2"),
        ("sg-src-1", "sg-tgt-1", "us-east-1", "us-west-2"),
        ("sg-src-2", "sg-tgt-2", "us-east-1", "us-west-2"),
    ])


@pytest.fixture
def network():
    return FakeNetwork()
