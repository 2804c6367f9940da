"""HTTP surface: app factory wiring, configs and deployments routes."""

import pytest
from fastapi.testclient import TestClient

from tenant_provisioner.app.inmemory import (
    InMemoryConfigStore,
    InMemoryDeploymentStore,
    InMemorySecretStore,
)
from tenant_provisioner.app.main import create_app
from tenant_provisioner.app.settings import ProvisionerSettings


def _local_settings(**overrides) -> ProvisionerSettings:
    defaults = {
        "environment": "local",
        "control_plane_api_token": "operator-token",
        "access_role_settle_seconds": 0.0,
    }
    defaults.update(overrides)
    return ProvisionerSettings(**defaults)


@pytest.fixture
def app():
    return create_app(_local_settings())


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


def _create_config(client, name="standard") -> str:
    resp = client.post("/api/v1/configs", json={"name": name, "root_ou": "r-123"})
    assert resp.status_code == 201
    return resp.json()["id"]


def _wait(client, app, deployment_id):
    """Block until the background pipeline is done (no-op if it already is)."""
    service = app.state.deps.deployment_service
    return client.portal.call(service.wait, deployment_id)


# ── Factory ──────────────────────────────────────────────────────────


def test_local_mode_uses_inmemory_stores(app):
    deps = app.state.deps
    assert isinstance(deps.config_store, InMemoryConfigStore)
    assert isinstance(deps.secret_store, InMemorySecretStore)
    assert isinstance(deps.deployment_store, InMemoryDeploymentStore)


def test_progress_retention_comes_from_settings():
    app = create_app(_local_settings(progress_retention_seconds=5))

    registry = app.state.deps.deployment_service.registry
    assert registry.retention_seconds == 5


def test_invalid_settings_rejected():
    with pytest.raises(ValueError, match="supabase_url is required"):
        create_app(ProvisionerSettings(environment="staging"))


def test_health(client):
    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {
        "status": "ok",
        "environment": "local",
        "running_deployments": 0,
    }


def test_request_id_generated_and_echoed(client):
    generated = client.get("/health").headers["x-request-id"]
    echoed = client.get("/health", headers={"X-Request-ID": "req-12345678"})
    replaced = client.get("/health", headers={"X-Request-ID": "bad id!"})

    assert len(generated) == 36
    assert echoed.headers["x-request-id"] == "req-12345678"
    assert replaced.headers["x-request-id"] != "bad id!"


# ── Configs ──────────────────────────────────────────────────────────


def test_save_and_list_configs(client):
    first = _create_config(client, "standard")
    again = _create_config(client, "standard")
    _create_config(client, "alpha")

    resp = client.get("/api/v1/configs")

    assert first == again
    assert [c["name"] for c in resp.json()["configs"]] == ["alpha", "standard"]


def test_blank_config_name_rejected(client):
    resp = client.post("/api/v1/configs", json={"name": "   "})

    assert resp.status_code == 422


# ── Deployments ──────────────────────────────────────────────────────


def test_start_deployment_and_follow_progress(client, app):
    config_id = _create_config(client)

    resp = client.post(
        "/api/v1/deployments", json={"config_id": config_id, "account_name": "acme"},
    )
    assert resp.status_code == 202
    deployment_id = resp.json()["deployment_id"]

    _wait(client, app, deployment_id)

    progress = client.get(f"/api/v1/deployments/{deployment_id}/progress").json()
    assert progress["completed"] is True
    assert progress["success"] is True
    assert progress["steps"][-1]["step"] == "complete"

    record = client.get(f"/api/v1/deployments/{deployment_id}").json()
    assert record["status"] == "completed"
    assert record["config_snapshot"]["account_name"] == "acme"
    assert len(record["steps"]) == 19

    listed = client.get("/api/v1/deployments").json()["deployments"]
    assert [d["id"] for d in listed] == [deployment_id]


def test_start_deployment_unknown_config(client):
    resp = client.post(
        "/api/v1/deployments", json={"config_id": "cfg-missing", "account_name": "acme"},
    )

    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "validation_error"
    assert body["field"] == "config_id"


def test_start_deployment_invalid_account_name(client):
    config_id = _create_config(client)

    resp = client.post(
        "/api/v1/deployments", json={"config_id": config_id, "account_name": "bad name"},
    )

    assert resp.status_code == 400
    assert resp.json()["field"] == "account_name"


def test_start_deployment_without_operator_token():
    app = create_app(_local_settings(control_plane_api_token=""))
    with TestClient(app) as client:
        config_id = _create_config(client)
        resp = client.post(
            "/api/v1/deployments", json={"config_id": config_id, "account_name": "acme"},
        )

    assert resp.status_code == 400
    assert resp.json()["field"] == "workspace"


def test_unknown_deployment_is_404(client):
    for path in ("/api/v1/deployments/nope", "/api/v1/deployments/nope/progress"):
        resp = client.get(path)
        assert resp.status_code == 404
        assert resp.json()["error"] == "deployment_not_found"

