"""Tests for the health endpoint and app wiring."""

from pathlib import Path

from fastapi.testclient import TestClient

import labguard
from labguard.common.clock import ManualClock
from labguard.common.config import Config
from labguard.services import build_services
from labguard.web.main import create_app
from labguard.web.settings import APISettings


class TestHealth:
    """Tests for GET /health."""

    def test_health(self, client: TestClient):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "version": labguard.__version__,
            "https": False,
        }

    def test_openapi_lists_backup_routes(self, client: TestClient):
        paths = client.get("/openapi.json").json()["paths"]

        assert "/api/backup/status" in paths
        assert "post" in paths["/api/backup/trigger"]
        assert "post" in paths["/api/backup/integrity/check"]


class TestLifespan:
    """Tests for service ownership by the app lifespan."""

    def test_managed_services_stopped_on_exit(
        self, test_config: Config, live_db: Path, manual_clock: ManualClock
    ):
        services = build_services(test_config, clock=manual_clock)
        app = create_app(services, APISettings(log_requests=False), manage_services=True)

        with TestClient(app) as client:
            assert client.get("/health").status_code == 200
            assert services.backup_scheduler.timer.running
            assert services.database.is_connected

        assert not services.backup_scheduler.timer.running
        assert not services.integrity_checker.timer.running
        assert not services.database.is_connected

    def test_unmanaged_services_left_alone(
        self, test_config: Config, live_db: Path, manual_clock: ManualClock
    ):
        services = build_services(test_config, clock=manual_clock)
        app = create_app(services, APISettings(log_requests=True), manage_services=False)

        with TestClient(app) as client:
            assert client.get("/health").status_code == 200
            assert client.get("/api/backup/history").json()["data"] == []

        assert not services.backup_scheduler.timer.running
        assert not services.database.is_connected
