"""Shared fixtures for the publishing pipeline test suite."""

import uuid

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from sns_publisher.config import PLATFORM_CREDENTIAL_ENV, Settings
from sns_publisher.infrastructure.database import init_db, make_session_factory
from sns_publisher.infrastructure.vault import CredentialVault
from sns_publisher.platforms.registry import build_platforms
from sns_publisher.platforms.retry import RetryPolicy

from helpers import TEST_KEY_HEX, SleepRecorder


# ---------------------------------------------------------------------------
# Ensure we don't pick up real credentials
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _block_env_keys(monkeypatch):
    for id_env, secret_env in PLATFORM_CREDENTIAL_ENV.values():
        monkeypatch.delenv(id_env, raising=False)
        monkeypatch.delenv(secret_env, raising=False)
    for key in ("CREDENTIAL_ENCRYPTION_KEY", "CRON_SECRET", "WORKER_SECRET", "SESSION_SECRET"):
        monkeypatch.delenv(key, raising=False)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------
@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Configuration and crypto
# ---------------------------------------------------------------------------
@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+aiosqlite://",
        app_url="https://app.example.com",
        connect_return_path="/sns",
        credential_key=TEST_KEY_HEX,
        cron_secret="cron-secret",
        worker_secret="worker-secret",
        session_secret="session-secret",
        platform_credentials={p: (f"{p}-client-id", f"{p}-client-secret") for p in PLATFORM_CREDENTIAL_ENV},
    )


@pytest.fixture
def vault():
    return CredentialVault.from_hex(TEST_KEY_HEX)


@pytest.fixture
def owner_id():
    return uuid.uuid4()


# ---------------------------------------------------------------------------
# Platforms and outbound HTTP
# ---------------------------------------------------------------------------
@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def platforms(sleeper):
    return build_platforms(RetryPolicy(max_attempts=3, base_delay=1.0), sleep=sleeper)
