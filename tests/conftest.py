"""
Pytest Configuration and Shared Fixtures

Provides common fixtures and configuration for all test modules.
"""

import pytest
from typing import Any, Dict, List

from metrics_collector.auth import RefreshTokenStore
from metrics_collector.database import PersistenceGateway
from metrics_collector.database.models import CORE_TABLES
from metrics_collector.utils import Settings


# ============================================================================
# Time Fixtures
# ============================================================================

class SleepRecorder:
    """Async stand-in for asyncio.sleep that records requested waits."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings isolated from the process environment and .env file."""
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite:///{tmp_path / 'metrics.db'}",
        TOPVISOR_API_URL="https://api.topvisor.test/v2/json/get/positions_2/history",
        TOPVISOR_API_KEY="test-key",
        TOPVISOR_USER_ID="42",
        GOOGLE_CLIENT_ID="client-id",
        GOOGLE_CLIENT_SECRET="client-secret",
        GOOGLE_REFRESH_TOKEN_PATH=str(tmp_path / "tokens" / "google.json"),
        GSC_SITE_URL="sc-domain:example.com",
        SERVICES_CONFIG_PATH=str(tmp_path / "services.json"),
        SERVICE_PAUSE_SECONDS=0,
        MANUAL_MODE=False,
        MANUAL_START_DATE=None,
        MANUAL_END_DATE=None,
        FORCE_OVERRIDE=False,
    )


@pytest.fixture
def token_store(tmp_path) -> RefreshTokenStore:
    """Store pre-populated with a refresh token."""
    store = RefreshTokenStore(str(tmp_path / "tokens" / "google.json"))
    store.save("stored-refresh-token")
    return store


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'metrics.db'}"


@pytest.fixture
def gateway(db_url) -> PersistenceGateway:
    """Unconnected gateway on a throwaway SQLite file."""
    gw = PersistenceGateway(db_url)
    yield gw
    gw.disconnect()


@pytest.fixture
def connected_gateway(gateway) -> PersistenceGateway:
    """Connected gateway with the core dimension tables created."""
    gateway.connect()
    gateway.ensure_tables(CORE_TABLES)
    return gateway


# ============================================================================
# Mock Data Fixtures
# ============================================================================

@pytest.fixture
def topvisor_payload() -> Dict[str, Any]:
    """One keyword with a single position entry."""
    return {
        "result": {
            "keywords": [
                {
                    "name": "buy shoes",
                    "positionsData": {
                        "2025-09-15:111:5": {
                            "position": "3",
                            "relevant_url": "https://shop.example/shoes",
                            "snippet": "Best shoes in town",
                        },
                    },
                },
            ],
        },
    }


@pytest.fixture
def gsc_payload() -> Dict[str, Any]:
    return {
        "rows": [
            {
                "keys": ["2025-09-15", "running shoes", "https://example.com/running"],
                "clicks": 12,
                "impressions": 340,
                "ctr": 0.035,
                "position": 4.2,
            },
            {
                "keys": ["2025-09-15", "trail shoes", "https://example.com/trail"],
                "clicks": 3,
                "impressions": 80,
                "ctr": 0.0375,
                "position": 9.1,
            },
        ],
    }


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
