"""Shared test fixtures for vaultsync."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from vaultsync.auth import TokenAuthenticator
from vaultsync.config import Settings
from vaultsync.coordinator import PullHandler, SyncCoordinator
from vaultsync.main import create_app
from vaultsync.policy import TimestampPolicy, VersionCounterPolicy
from vaultsync.store import VaultStore

TEST_KEY = b"k" * 32


def ts(seconds: int) -> datetime:
    """A fixed UTC instant ``seconds`` after the epoch."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'vaults.db'}"


@pytest.fixture
def store(database_url: str):
    vault_store = VaultStore.from_url(database_url, lock_timeout=2.0).open()
    yield vault_store
    vault_store.close()


@pytest.fixture
def version_coordinator(store: VaultStore) -> SyncCoordinator:
    return SyncCoordinator(store, VersionCounterPolicy(), max_blob_bytes=1024)


@pytest.fixture
def timestamp_coordinator(store: VaultStore) -> SyncCoordinator:
    return SyncCoordinator(store, TimestampPolicy(), max_blob_bytes=1024)


@pytest.fixture
def version_puller(store: VaultStore) -> PullHandler:
    return PullHandler(store, VersionCounterPolicy())


@pytest.fixture
def timestamp_puller(store: VaultStore) -> PullHandler:
    return PullHandler(store, TimestampPolicy())


@pytest.fixture
def authenticator() -> TokenAuthenticator:
    return TokenAuthenticator(TEST_KEY)


def _client(tmp_path: Path, policy: str, authenticator: TokenAuthenticator):
    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'api.db'}",
        sync_policy=policy,
        max_blob_bytes=1024,
        lock_timeout_seconds=2.0,
        secret_key_file=str(tmp_path / ".key_db"),
    )
    app = create_app(settings, authenticator=authenticator)
    return TestClient(app)


@pytest.fixture
def version_client(tmp_path: Path, authenticator: TokenAuthenticator):
    with _client(tmp_path, "version", authenticator) as client:
        yield client


@pytest.fixture
def timestamp_client(tmp_path: Path, authenticator: TokenAuthenticator):
    with _client(tmp_path, "timestamp", authenticator) as client:
        yield client


@pytest.fixture
def auth_headers(authenticator: TokenAuthenticator):
    def make(user_id: str = "user-1", device_id: str = "laptop") -> dict:
        return {"Authorization": f"Bearer {authenticator.issue_token(user_id, device_id)}"}

    return make
