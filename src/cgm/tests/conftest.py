"""Shared fixtures for sync engine tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from src.cgm.base import (
    CGMProvider,
    GlucoseSample,
    ProviderCredentials,
    ProviderSession,
    ReadingWindow,
)
from src.cgm.config_loader import SyncConfig, load_sync_config
from src.cgm.store import InMemoryStore
from src.cgm.vault import CredentialVault
from src.config import Settings
from src.models.campers import CamperRecord, ProviderKind
from src.models.readings import TrendDirection

# Bundled config next to the package
CONFIG_PATH = Path(__file__).resolve().parent.parent / "sync_config.yaml"

# Fixed instant all time-dependent tests start from
NOW = datetime(2026, 7, 14, 15, 0, tzinfo=timezone.utc)

TEST_ENCRYPTION_KEY = "0f1e2d3c4b5a69788796a5b4c3d2e1f000112233445566778899aabbccddeeff"
TEST_CAMPER_ID = 101


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeProvider(CGMProvider):
    """Provider whose network calls are AsyncMocks.

    ``authenticate`` issues ``token-1``, ``token-2``, ... valid for one hour.
    ``fetch_readings`` returns an empty list unless reconfigured.
    """

    KINDS = (ProviderKind.dexcom_publisher,)
    DISPLAY_NAME = "Fake CGM"

    def __init__(self, clock: FakeClock, persists: bool = True) -> None:
        super().__init__()
        self.PERSISTS_SESSION = persists
        self._clock = clock
        self.issued = 0
        self.authenticate = AsyncMock(side_effect=self._issue)
        self.fetch_readings = AsyncMock(return_value=[])

    async def _issue(self, credentials: ProviderCredentials) -> ProviderSession:
        self.issued += 1
        return ProviderSession(
            token=f"token-{self.issued}",
            expires_at=self._clock() + timedelta(hours=1),
        )

    async def authenticate(self, credentials: ProviderCredentials) -> ProviderSession:
        raise NotImplementedError

    async def fetch_readings(
        self,
        session: ProviderSession,
        window: ReadingWindow,
        target_id: str | None = None,
    ) -> list[GlucoseSample]:
        raise NotImplementedError


def make_camper(camper_id: int = TEST_CAMPER_ID, **overrides: Any) -> CamperRecord:
    """A Dexcom publisher camper with encrypted credentials."""
    vault = CredentialVault(TEST_ENCRYPTION_KEY)
    fields: dict[str, Any] = {
        "id": camper_id,
        "name": f"Camper {camper_id}",
        "cgm_provider": "dexcom",
        "cgm_auth_mode": "publisher",
        "cgm_username": f"camper{camper_id}@example.com",
        "cgm_password_enc": vault.encrypt("dexcom-password"),
        "target_low": 70,
        "target_high": 180,
    }
    fields.update(overrides)
    return CamperRecord(**fields)


def sample(value: int, minutes_ago: float = 0, at: datetime = NOW) -> GlucoseSample:
    return GlucoseSample(
        value=value,
        trend=TrendDirection.flat,
        reading_time=at - timedelta(minutes=minutes_ago),
    )


def http_response(status_code: int = 200, json: Any = None, text: str | None = None) -> httpx.Response:
    """A real httpx.Response with the given body."""
    if text is not None:
        return httpx.Response(status_code, text=text)
    return httpx.Response(status_code, json=json)


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """Load the real sync config for tests."""
    return load_sync_config(CONFIG_PATH)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        encryption_key=TEST_ENCRYPTION_KEY,
        dexcom_follower_username="camp-follower",
        dexcom_follower_password="follower-password",
    )


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(TEST_ENCRYPTION_KEY)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def fake_provider(clock: FakeClock) -> FakeProvider:
    return FakeProvider(clock)


@pytest.fixture
def mock_httpx_client() -> MagicMock:
    """Mock httpx.AsyncClient for testing providers without real API calls."""
    client = MagicMock()
    client.get = AsyncMock(return_value=http_response(200, json={}))
    client.post = AsyncMock(return_value=http_response(200, json={}))
    return client
