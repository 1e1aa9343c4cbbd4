"""Fixtures for API tests."""

from pathlib import Path
from typing import Generator

import pytest
from fastapi.testclient import TestClient

from labguard.common.clock import ManualClock
from labguard.common.config import Config
from labguard.services import SafetyServices, build_services
from labguard.web.main import create_app
from labguard.web.settings import APISettings


@pytest.fixture
def api_settings() -> APISettings:
    return APISettings(environment="test", log_requests=False)


@pytest.fixture
def api_services(test_config: Config, live_db: Path, manual_clock: ManualClock) -> SafetyServices:
    """Services for the app; the app's lifespan starts and stops them."""
    return build_services(test_config, clock=manual_clock)


@pytest.fixture
def client(
    api_services: SafetyServices, api_settings: APISettings
) -> Generator[TestClient, None, None]:
    """Test client whose lifespan runs the startup check and arms the timers."""
    app = create_app(api_services, api_settings, manage_services=True)
    with TestClient(app) as test_client:
        yield test_client
