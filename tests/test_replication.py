"""Tests for the replication service REST client."""

import pytest
import requests
import responses
from responses import matchers

from internal.models.errors import SessionExpiredError, TransportError
from internal.replication.service import PAGE_SIZE, CloudEndureClient, ReauthenticatingService

API = "https://replication.example.com/api/latest"


def _machine(machine_id, replicated=100, total=100):
    return {
        "id": machine_id,
        "sourceProperties": {
            "name": f"host-{machine_id}",
            "os": "linux",
            "cpu": [{"cores": 4}],
            "memory": 8589934592,
            "disks": [{"name": "/dev/sda"}],
        },
        "replicationInfo": {
            "replicatedStorageBytes": replicated,
            "totalStorageBytes": total,
            "lastConsistencyDateTime": "2024-01-01T00:00:00Z",
        },
    }


@pytest.fixture
def client():
    return CloudEndureClient(API, "token-123")


@responses.activate
def test_login_sets_xsrf_header(client):
    responses.post(
        f"{API}/login",
        json={"username": "ops"},
        headers={"Set-Cookie": "XSRF-TOKEN=xsrf-abc; Path=/"},
        match=[matchers.json_params_matcher({"userApiToken": "token-123"})],
    )
    client.login()
    assert client.session.headers["X-XSRF-TOKEN"] == "xsrf-abc"


@responses.activate
def test_list_machines_parses_source_properties(client):
    responses.get(f"{API}/projects/ce-1/machines", json={"items": [_machine("m-1", replicated=50)]})
    [machine] = client.list_machines("ce-1")
    assert machine.id == "m-1"
    assert machine.source.cpu_cores == 4
    assert machine.source.memory_bytes == 8589934592
    assert machine.source.disks == ["/dev/sda"]
    assert machine.replication_info.replication_ratio == 0.5


@responses.activate
def test_list_machines_follows_pages(client):
    first = [_machine(f"m-{i}") for i in range(PAGE_SIZE)]
    responses.get(
        f"{API}/projects/ce-1/machines", json={"items": first},
        match=[matchers.query_param_matcher({"offset": "0", "limit": str(PAGE_SIZE)})],
    )
    responses.get(
        f"{API}/projects/ce-1/machines", json={"items": [_machine("m-last")]},
        match=[matchers.query_param_matcher({"offset": str(PAGE_SIZE), "limit": str(PAGE_SIZE)})],
    )
    machines = client.list_machines("ce-1")
    assert len(machines) == PAGE_SIZE + 1
    assert machines[-1].id == "m-last"


@responses.activate
def test_list_blueprints(client):
    responses.get(f"{API}/projects/ce-1/blueprints", json={"items": [
        {"id": "bp-1", "machineId": "m-1", "tags": [{"key": "drp:blueprint-configured", "value": "x"}]},
        {"id": "bp-2", "machineId": "m-2", "tags": []},
    ]})
    blueprints = client.list_blueprints("ce-1")
    assert [(b.machine_id, b.is_configured) for b in blueprints] == [("m-1", True), ("m-2", False)]


@responses.activate
def test_expired_session(client):
    responses.get(f"{API}/projects/ce-1/machines", status=401)
    with pytest.raises(SessionExpiredError):
        client.list_machines("ce-1")


@responses.activate
def test_error_status_carries_reason(client):
    responses.get(f"{API}/projects/ce-1/machines", status=500, json={"message": "boom"})
    with pytest.raises(TransportError, match="Status: 500"):
        client.list_machines("ce-1")


@responses.activate
def test_connection_error_is_transport_error(client):
    responses.get(f"{API}/projects/ce-1/machines", body=requests.ConnectionError("refused"))
    with pytest.raises(TransportError):
        client.list_machines("ce-1")


@responses.activate
def test_unparseable_body_is_transport_error(client):
    responses.get(f"{API}/projects/ce-1/machines", body="<html>not json</html>")
    with pytest.raises(TransportError, match="parse"):
        client.list_machines("ce-1")


# ── Re-authentication ───────────────────────────────────────────────────────

@responses.activate
def test_reauthenticates_once_then_retries(client):
    responses.get(f"{API}/projects/ce-1/machines", status=401)
    responses.get(f"{API}/projects/ce-1/machines", json={"items": [_machine("m-1")]})
    login = responses.post(f"{API}/login", json={})

    machines = ReauthenticatingService(client).list_machines("ce-1")
    assert [m.id for m in machines] == ["m-1"]
    assert login.call_count == 1


@responses.activate
def test_gives_up_after_second_expiry(client):
    responses.get(f"{API}/projects/ce-1/blueprints", status=419)
    login = responses.post(f"{API}/login", json={})

    service = ReauthenticatingService(client)
    with pytest.raises(SessionExpiredError):
        service.list_blueprints("ce-1")
    assert login.call_count == 1


@responses.activate
def test_other_errors_are_not_retried(client):
    responses.get(f"{API}/projects/ce-1/machines", status=503)
    login = responses.post(f"{API}/login", json={})
    with pytest.raises(TransportError):
        ReauthenticatingService(client).list_machines("ce-1")
    assert login.call_count == 0
