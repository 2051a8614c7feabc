"""Tests for the HTTP layer -- routing to StackManager, error mapping, batch and auth."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

import auth
import config
from app import app
from auth import get_current_user
from conftest import SIMPLE_MANIFEST, make_container
from errors import CommandError
from routers.stacks import get_manager
from services.stacks import StackManager


@pytest.fixture
def manager(stacks_root, runtime):
    return StackManager(root=str(stacks_root), runtime=runtime)


@pytest.fixture
def client(manager):
    app.dependency_overrides[get_manager] = lambda: manager
    app.dependency_overrides[get_current_user] = lambda: "admin"
    yield TestClient(app)
    app.dependency_overrides.clear()


def _payload(**kwargs):
    body = {"name": "shop", "manifest": SIMPLE_MANIFEST, "volume_ref": "shop-data", "port": 20001}
    body.update(kwargs)
    return body


class TestStackRoutes:
    """CRUD-ish stack endpoints."""

    def test_create_returns_201_with_status(self, client, runtime):
        """Should create the stack and return its StackInfo."""
        runtime.containers = [make_container("shop_web_1")]
        resp = client.post("/api/stacks", json=_payload())
        assert resp.status_code == 201
        assert resp.json() == {
            "name": "shop",
            "status": "running",
            "services": [{"name": "web", "status": "running", "ready": True}],
        }

    def test_create_validates_input(self, client, runtime):
        """Should reject bad names before doing anything."""
        resp = client.post("/api/stacks", json=_payload(name="../x"))
        assert resp.status_code == 422
        assert runtime.calls == []

    def test_deployment_error_body(self, client, runtime):
        """Should answer 409 with raw output for a port conflict."""
        runtime.up_error = CommandError("up failed", output="port is already allocated")
        resp = client.post("/api/stacks", json=_payload())
        body = resp.json()
        assert resp.status_code == 409
        assert body["success"] is False
        assert body["error"] == "DeploymentError"
        assert body["reason"] == "port_conflict"
        assert "port is already allocated" in body["output"]

    def test_duplicate_create_is_409(self, client, runtime):
        """Should answer 409 and leave the first stack in place."""
        assert client.post("/api/stacks", json=_payload()).status_code == 201
        resp = client.post("/api/stacks", json=_payload())
        assert resp.status_code == 409
        assert resp.json()["error"] == "ConflictError"
        assert not any(call[0] == "down" for call in runtime.calls)

    def test_unknown_stack_is_404(self, client):
        """Should map NotFoundError to 404."""
        resp = client.post("/api/stacks/ghost/start")
        assert resp.status_code == 404
        assert resp.json()["error"] == "NotFoundError"

    def test_service_action_and_remove(self, client, runtime):
        """Should restart one service and then remove the stack."""
        client.post("/api/stacks", json=_payload())

        assert client.post("/api/stacks/shop/services/web/restart").status_code == 200
        assert ("restart", "shop", "web") in runtime.calls

        resp = client.delete("/api/stacks/shop", params={"remove_volumes": "true"})
        assert resp.status_code == 200
        assert ("down", "shop", True) in runtime.calls

    def test_metrics_and_logs(self, client, runtime):
        """Should expose metrics and log lines."""
        client.post("/api/stacks", json=_payload())
        runtime.log_lines = ["line"]

        assert client.get("/api/stacks/shop/metrics").json() == {"name": "shop", "services": []}
        assert client.get("/api/stacks/shop/logs", params={"lines": 5}).json()["lines"] == ["line"]
        assert ("logs", "shop", 5, None) in runtime.calls


class TestBatchRoutes:
    """Bulk lifecycle actions."""

    def test_per_item_results(self, client, runtime):
        """Should report success and failure per stack."""
        client.post("/api/stacks", json=_payload())
        resp = client.post("/api/batch/stacks/stop", json={"names": ["shop", "ghost"]})

        results = {r["name"]: r for r in resp.json()["results"]}
        assert resp.status_code == 200
        assert results["shop"]["success"] is True
        assert results["ghost"]["success"] is False
        assert "not found" in results["ghost"]["error"]

    def test_batch_size_cap(self, client, monkeypatch):
        """Should reject batches above BATCH_MAX_ITEMS."""
        monkeypatch.setattr(config, "BATCH_MAX_ITEMS", 2)
        resp = client.post("/api/batch/stacks/start", json={"names": ["a", "b", "c"]})
        assert resp.status_code == 400


class TestAuth:
    """API key and bearer handling (no override)."""

    def test_missing_credentials(self):
        """Should answer 401 without any header."""
        resp = TestClient(app).get("/api/stacks")
        assert resp.status_code == 401

    def test_wrong_api_key(self, monkeypatch):
        """Should answer 403 for a bad API key."""
        monkeypatch.setattr(auth, "API_KEY", "right")
        resp = TestClient(app).get("/api/stacks", headers={"X-API-Key": "wrong"})
        assert resp.status_code == 403

    def test_valid_api_key(self, monkeypatch, manager):
        """Should let the platform through with the shared key."""
        monkeypatch.setattr(auth, "API_KEY", "right")
        app.dependency_overrides[get_manager] = lambda: manager
        try:
            resp = TestClient(app).get("/api/stacks", headers={"X-API-Key": "right"})
        finally:
            app.dependency_overrides.clear()
        assert resp.status_code == 200
        assert resp.json() == {"stacks": []}

    def test_healthz_is_public(self):
        """Should not require credentials."""
        assert TestClient(app).get("/healthz").json() == {"status": "ok"}
