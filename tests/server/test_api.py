"""Tests for FastAPI server endpoints."""

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from offlinesync.core.config import BreakerConfig
from offlinesync.core.errors import NetworkError

from offlinesync.server.app import create_app
from offlinesync.service import SyncService
from offlinesync.sync.breaker import CircuitState
from offlinesync.sync.target import TargetEvent, TargetEventKind


def _refused() -> None:
    raise NetworkError("connection refused")


@pytest.fixture
def client(service: SyncService) -> TestClient:
    """Test client around a service the app does not start."""
    return TestClient(create_app(service, manage_service=False))


def _attach(service: SyncService) -> None:
    service.manager.handle_event(TargetEvent(TargetEventKind.ATTACH, Path("/"), "sd"))


class TestHealthEndpoint:
    """Tests for the health endpoint."""

    def test_stopped_service_is_unhealthy(self, client: TestClient) -> None:
        """Health should report the service as not running."""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "unhealthy"
        assert data["issues"] == ["service not running"]


class TestStatusEndpoints:
    """Tests for the status feed."""

    def test_status(self, client: TestClient) -> None:
        """Status should list every target with its lifecycle."""
        data = client.get("/status").json()
        assert data["running"] is False
        assert data["state"] == "idle"
        assert [t["target_id"] for t in data["targets"]] == ["sd"]
        assert data["targets"][0]["target"]["state"] == "absent"

    def test_target_status(self, client: TestClient, service: SyncService) -> None:
        _attach(service)
        data = client.get("/status/sd").json()
        assert data["target"]["state"] == "ready"
        assert data["jobs"] == ["movies"]

    def test_unknown_target(self, client: TestClient) -> None:
        response = client.get("/status/usb")
        assert response.status_code == 404
        assert response.json()["detail"] == "Unknown target: usb"

    def test_manifest_not_planned(self, client: TestClient) -> None:
        response = client.get("/manifest/sd")
        assert response.status_code == 404

    def test_manifest_after_cycle(self, client: TestClient, service: SyncService) -> None:
        """The last manifest should be served with its entries."""
        _attach(service)
        service.run_once("sd")

        data = client.get("/manifest/sd", params={"job": "movies"}).json()

        assert data["job"] == "movies"
        assert data["budget"] == 700
        assert data["planned_size"] == 700
        assert len(data["entries"]) == 2
        assert len(data["skipped"]) == 1


class TestControlEndpoints:
    """Tests for the control endpoints."""

    def test_start_without_ready_target(self, client: TestClient) -> None:
        response = client.post("/control/start")
        assert response.status_code == 200
        assert response.json() == {"action": "start", "targets": []}

    def test_start_unknown_target(self, client: TestClient) -> None:
        response = client.post("/control/start", json={"target": "usb"})
        assert response.status_code == 404

    def test_stop_when_idle(self, client: TestClient) -> None:
        response = client.post("/control/stop", json={"target": "sd"})
        assert response.json() == {"action": "stop", "targets": []}

    def test_refresh(self, client: TestClient) -> None:
        response = client.post("/control/refresh")
        assert response.json() == {"action": "refresh", "targets": ["sd"]}

    def test_disable_and_enable(self, client: TestClient, service: SyncService) -> None:
        response = client.post("/targets/sd/disable")
        assert response.json() == {"target_id": "sd", "enabled": False}
        assert not service.orchestrator("sd").enabled

        response = client.post("/targets/sd/enable")
        assert response.json() == {"target_id": "sd", "enabled": True}

    def test_toggle_unknown_target(self, client: TestClient) -> None:
        assert client.post("/targets/usb/disable").status_code == 404

    def test_reset_breaker(self, client: TestClient, service: SyncService) -> None:
        """An open circuit can be closed by hand instead of waiting for its cooldown."""
        breaker = service.registry.get(
            "catalog:library", BreakerConfig(failure_threshold=1, cooldown=600)
        )
        with pytest.raises(NetworkError):
            breaker.call(_refused)
        assert breaker.state == CircuitState.OPEN

        response = client.post("/control/breakers/reset", json={"name": "catalog:library"})

        assert response.status_code == 200
        assert response.json() == {"breakers": ["catalog:library"]}
        assert breaker.state == CircuitState.CLOSED

    def test_reset_all_breakers(self, client: TestClient, service: SyncService) -> None:
        response = client.post("/control/breakers/reset")
        assert response.status_code == 200
        assert response.json()["breakers"] == service.registry.names()

    def test_reset_unknown_breaker(self, client: TestClient) -> None:
        response = client.post("/control/breakers/reset", json={"name": "catalog:nope"})
        assert response.status_code == 404
        assert "catalog:nope" in response.json()["detail"]
