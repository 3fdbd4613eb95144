"""HTTP API tests against a fully wired agent on a temporary directory."""

import os

import pytest
from fastapi.testclient import TestClient

from hostvol.config import AgentSettings
from hostvol.service import NodeAgentService

from conftest import NODE, FakeBackend, FakeTransport


@pytest.fixture
def service(tmp_path):
    settings = AgentSettings(
        node_name=NODE,
        state_dir=str(tmp_path / "state"),
        registration_dir=str(tmp_path / "plugins"),
    )
    service = NodeAgentService(settings, transport=FakeTransport())
    yield service
    service.pool.stop()


@pytest.fixture
def client(service):
    return TestClient(service.app)


def _bind(client, workload_id, volumes):
    return client.post("/bindings", json={"workload_id": workload_id, "node": NODE, "volumes": volumes})


def test_root(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["node"] == NODE


def test_bind_creates_directory_and_reports_descriptor(client, service, tmp_path):
    host_path = str(tmp_path / "data" / "a")

    response = _bind(client, "web", [{"path": host_path, "type": "DirectoryOrCreate", "mount_target": "/srv"}])
    assert response.status_code == 202
    assert response.json()["phase"] == "Pending"

    service.loop.run_once()
    body = client.get("/bindings/web").json()

    assert body["phase"] == "Bound"
    assert body["descriptors"] == [{
        "source": host_path,
        "target": "/srv",
        "propagation": "None",
        "read_only": False,
        "options": ["rbind", "rw", "rprivate"],
    }]
    assert os.path.isdir(host_path)


def test_type_mismatch_reported_in_status(client, service, tmp_path):
    host_path = tmp_path / "b"
    host_path.write_text("not a directory")

    _bind(client, "web", [{"path": str(host_path), "type": "DirectoryOrCreate"}])
    service.loop.run_once()
    body = client.get("/bindings/web").json()

    assert body["phase"] == "Failed"
    assert body["reason"] == "TypeMismatch"
    assert host_path.read_text() == "not a directory"


def test_relative_path_rejected(client):
    response = _bind(client, "web", [{"path": "data/a", "type": "Directory"}])

    assert response.status_code == 422
    assert response.json()["detail"]["reason"] == "InvalidVolumeSpec"


def test_octal_mode_string_accepted(client, service, tmp_path):
    host_path = tmp_path / "secret"

    response = _bind(client, "web", [{"path": str(host_path), "type": "DirectoryOrCreate", "mode": "0700"}])
    service.loop.run_once()

    assert response.status_code == 202
    assert oct(host_path.stat().st_mode & 0o7777) == oct(0o700)


def test_duplicate_bind_conflicts(client, service, tmp_path):
    volumes = [{"path": str(tmp_path / "a"), "type": "DirectoryOrCreate"}]
    _bind(client, "web", volumes)

    response = _bind(client, "web", volumes)

    assert response.status_code == 409
    assert response.json()["detail"]["reason"] == "ConflictingBinding"


def test_unknown_workload_is_404(client):
    assert client.get("/bindings/nope").status_code == 404
    assert client.post("/bindings/nope/verify").status_code == 404
    assert client.post("/bindings/nope/cancel").status_code == 404


def test_cancel_without_pending_bind_conflicts(client, service, tmp_path):
    _bind(client, "web", [{"path": str(tmp_path / "a"), "type": "DirectoryOrCreate"}])
    service.loop.run_once()

    assert client.post("/bindings/web/cancel").status_code == 409


def test_cancel_waiting_bind(client, service, tmp_path):
    _bind(client, "web", [{"path": str(tmp_path / "not-yet"), "type": "Directory"}])
    service.loop.run_once()
    assert client.get("/bindings/web").json()["phase"] == "WaitingForVolume"

    response = client.post("/bindings/web/cancel")

    assert response.status_code == 200
    assert response.json()["phase"] == "Cancelled"


def test_teardown_releases_but_keeps_host_path(client, service, tmp_path):
    host_path = str(tmp_path / "a")
    _bind(client, "web", [{"path": host_path, "type": "DirectoryOrCreate"}])
    service.loop.run_once()

    response = client.delete("/bindings/web")
    service.loop.run_once()

    assert response.status_code == 202
    assert client.get("/bindings/web").json()["phase"] == "Released"
    assert client.get("/status/mounts").json() == []
    assert os.path.isdir(host_path)


def test_verify_reports_drift(client, service, tmp_path):
    host_path = tmp_path / "a"
    _bind(client, "web", [{"path": str(host_path), "type": "DirectoryOrCreate"}])
    service.loop.run_once()
    host_path.rmdir()

    assert client.post("/bindings/web/verify").status_code == 202
    service.loop.run_once()

    body = client.get("/bindings/web").json()
    assert body["phase"] == "Bound"
    assert len(body["drift"]) == 1
    assert not host_path.exists()


def test_status_summary(client, service, tmp_path):
    _bind(client, "web", [{"path": str(tmp_path / "a"), "type": "DirectoryOrCreate"}])
    service.loop.run_once()

    body = client.get("/status").json()

    assert body["status"] == "healthy"
    assert body["node"] == NODE
    assert body["mounts"] == 1
    assert body["workloads"] == {"Bound": 1}
    mounts = client.get(f"/status/mounts?node={NODE}").json()
    assert mounts[0]["ref_count"] == 1
    assert client.get("/status/mounts?node=other").json() == []


def test_status_backends_lists_registered(client, service, tmp_path):
    socket_path = str(tmp_path / "plugins" / "ssd.sock")
    service.registrar.transport.add(socket_path, FakeBackend("ssd-1", ["fast-ssd"]))
    service.registrar.scanner = lambda directory: {socket_path: (1, 1)}

    service.registrar.poll_once()
    body = client.get("/status/backends").json()

    assert [b["backend_id"] for b in body["registered"]] == ["ssd-1"]
    assert body["candidates"][0]["state"] == "Registered"
    assert body["rejected"] == []


def test_status_anomalies_empty(client):
    assert client.get("/status/anomalies").json() == {"in_flight": [], "anomalies": [], "busy_paths": []}


def test_validate_dry_run_never_creates(client, tmp_path):
    target = tmp_path / "maybe"

    missing = client.get("/paths/validate", params={"path": str(target), "type": "Directory"}).json()
    creatable = client.get("/paths/validate", params={"path": str(target), "type": "DirectoryOrCreate"}).json()

    assert missing["outcome"] == "MissingAndNotCreatable"
    assert missing["would_create"] is None
    assert creatable["ok"] is True
    assert creatable["would_create"]["mode"] == "0755"
    assert creatable["would_create"]["kind"] == "Directory"
    assert not target.exists()


def test_validate_relative_path_rejected(client):
    response = client.get("/paths/validate", params={"path": "relative/dir", "type": "Directory"})

    assert response.status_code == 422


def test_ownership_adjustment(client, tmp_path):
    target = tmp_path / "shared.txt"
    target.write_text("x")
    os.chmod(target, 0o644)

    response = client.post("/paths/ownership", json={
        "path": str(target),
        "uid": os.geteuid(),
        "gid": os.getegid(),
        "mode": "0600",
    })

    assert response.status_code == 200
    assert response.json()["mode"] == "0600"
    assert target.stat().st_mode & 0o7777 == 0o600


def test_restart_restores_refcounts(tmp_path):
    settings = AgentSettings(
        node_name=NODE,
        state_dir=str(tmp_path / "state"),
        registration_dir=str(tmp_path / "plugins"),
    )
    first = NodeAgentService(settings, transport=FakeTransport())
    try:
        first.loop.submit_bind("w1", NODE, [])
        client = TestClient(first.app)
        _bind(client, "w2", [{"path": str(tmp_path / "a"), "type": "DirectoryOrCreate"}])
        first.loop.run_once()
    finally:
        first.pool.stop()

    second = NodeAgentService(settings, transport=FakeTransport())
    try:
        mounts = TestClient(second.app).get("/status/mounts").json()
    finally:
        second.pool.stop()

    assert [m["host_path"] for m in mounts] == [str(tmp_path / "a")]
    assert mounts[0]["workload_ids"] == ["w2"]
