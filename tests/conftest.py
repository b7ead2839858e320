"""
Fixtures: a file-backed SQLite database per test and deterministic settings.
"""

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from config.settings import config
from connectors.credential_store import CredentialStore
from connectors.encryption import reset_cipher
from database.models import Base
from sync.queue import JobQueue

TEST_SETTINGS = {
    "oauth_state_secret": "test-state-secret",
    "jwt_secret": "test-jwt-secret",
    "cron_secret": "test-cron-secret",
    "public_base_url": "https://sync.example.com",
    "oauth_status_redirect": "https://app.example.com/integrations",
    "fireflies_client_id": "ff-client",
    "fireflies_client_secret": "ff-secret",
    "fireflies_webhook_secret": "ff-hook",
    "linear_client_id": "lin-client",
    "linear_client_secret": "lin-secret",
    "linear_webhook_secret": "lin-hook",
    "slack_client_id": "slack-client",
    "slack_client_secret": "slack-secret",
    "slack_signing_secret": "slack-signing",
    "google_client_id": "google-client",
    "google_client_secret": "google-secret",
    "google_webhook_secret": "google-hook",
    "max_job_attempts": 3,
    "backoff_base_seconds": 60,
    "backoff_max_seconds": 3600,
    "job_timeout_seconds": 120,
    "max_pages_per_job": 20,
    "sync_page_size": 2,
    "token_refresh_margin_seconds": 60,
}


@pytest.fixture(autouse=True)
def settings(monkeypatch):
    for name, value in TEST_SETTINGS.items():
        monkeypatch.setattr(config, name, value)
    monkeypatch.setattr(config, "token_encryption_key", Fernet.generate_key().decode())
    reset_cipher()
    yield config
    reset_cipher()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sync.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store(session_factory):
    return CredentialStore(session_factory)


@pytest.fixture
def queue(session_factory):
    return JobQueue(session_factory)
