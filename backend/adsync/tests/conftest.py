"""Pytest configuration for adsync tests

WHAT: Shared fixtures: throwaway SQLite database, cipher, frozen clock,
      stores, and a mock HTTP transport builder.
WHY: Every service takes its session factory, clock and HTTP client as
     constructor arguments, so tests wire real objects against a temp file
     instead of patching module globals.
REFERENCES:
    - adsync/database.py: build_engine / init_db
    - adsync/services/integration_service.py: production wiring
"""

import os
from datetime import datetime, timezone
from typing import Callable, List

import httpx
import pytest

os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")

from adsync.database import build_engine, build_session_factory, init_db  # noqa: E402
from adsync.deps import Settings  # noqa: E402
from adsync.models import Base  # noqa: E402
from adsync.schemas import ProviderAccount, TokenBundle  # noqa: E402
from adsync.security import TokenCipher  # noqa: E402
from adsync.services.credential_store import CredentialStore  # noqa: E402
from adsync.services.metrics_writer import MetricsWriter  # noqa: E402
from adsync.services.sync_queue import SyncJobQueue  # noqa: E402

TEST_KEY = "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA="


class FrozenClock:
    """Callable clock tests can move forward."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta) -> None:
        self.now = self.now + delta


class RecordingSleep:
    """Async sleep stand-in that records requested delays and returns at once."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# ============================================================================
# Async backend
# ============================================================================

@pytest.fixture
def anyio_backend():
    return "asyncio"


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so several sessions and threads see the same data."""
    db_engine = build_engine(f"sqlite:///{tmp_path / 'adsync_test.db'}")
    init_db(db_engine)
    yield db_engine
    Base.metadata.drop_all(bind=db_engine)
    db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def cipher():
    return TokenCipher(TEST_KEY)


@pytest.fixture
def store(session_factory, cipher, clock):
    return CredentialStore(session_factory, cipher, clock)


@pytest.fixture
def queue(session_factory, clock):
    return SyncJobQueue(session_factory, clock)


@pytest.fixture
def writer(session_factory):
    return MetricsWriter(session_factory)


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite:///:memory:",
        TOKEN_ENCRYPTION_KEY=TEST_KEY,
        META_APP_ID="meta-app",
        META_APP_SECRET="meta-secret",
        GOOGLE_CLIENT_ID="google-client",
        GOOGLE_CLIENT_SECRET="google-secret",
        GOOGLE_DEVELOPER_TOKEN="dev-token",
        TIKTOK_APP_ID="tiktok-app",
        TIKTOK_APP_SECRET="tiktok-secret",
        LINKEDIN_CLIENT_ID="li-client",
        LINKEDIN_CLIENT_SECRET="li-secret",
        INTEGRATIONS_CRON_SECRET="cron-secret",
    )


@pytest.fixture
def sleeper():
    return RecordingSleep()


# ============================================================================
# Helpers
# ============================================================================

def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    """AsyncClient whose every request is answered by `handler`."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def link_integration(
    store: CredentialStore,
    workspace_id: str = "w1",
    provider="meta",
    *,
    client_id=None,
    access_token: str = "tok",
    refresh_token=None,
    expires_in=5184000,
    account_id: str = "act_1",
):
    """Create an Integration the way a completed OAuth flow would."""
    return store.upsert_integration(
        workspace_id,
        provider,
        tokens=TokenBundle(access_token=access_token, refresh_token=refresh_token, expires_in=expires_in),
        account=ProviderAccount(id=account_id, name="Test account", is_active=True),
        client_id=client_id,
    )
