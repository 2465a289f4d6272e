"""Shared pytest fixtures for vault-sync tests."""

import pytest

from vault_sync.config_schema import SyncConfig
from vault_sync.sync.engine import ReconciliationCoordinator
from vault_sync.sync.host import MemoryReplica
from vault_sync.sync.state import JsonVersionStore, MemoryVersionStore


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    """Keep config discovery and env overrides away from the real machine."""
    for name in (
        "VAULT_SYNC_CONFIG",
        "VAULT_SYNC_REPLICA_ID",
        "VAULT_SYNC_REMOTE_REPLICA_ID",
        "VAULT_SYNC_STATE_DIR",
        "VAULT_SYNC_MAX_WORKERS",
        "LOG_LEVEL",
        "LOG_FILE",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))


@pytest.fixture
def sync_config():
    """Default sync settings with two workers."""
    return SyncConfig(max_workers=2)


@pytest.fixture
def memory_store():
    return MemoryVersionStore()


@pytest.fixture
def json_store(tmp_path):
    return JsonVersionStore(tmp_path / ".vault_sync")


@pytest.fixture
def local_vault():
    return MemoryReplica()


@pytest.fixture
def remote_vault():
    return MemoryReplica()


@pytest.fixture
def coordinator(memory_store, local_vault, remote_vault, sync_config):
    """Coordinator over in-memory store and replicas."""
    return ReconciliationCoordinator(
        memory_store, local_vault, sync_config, remote_vault
    )
