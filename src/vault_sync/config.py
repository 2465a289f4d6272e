"""Runtime configuration for the sync engine.

Resolves the effective ``UnifiedConfig`` from explicit overrides,
environment variables, .env files, and YAML config files.

Precedence (highest to lowest):
    Overrides > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    VAULT_SYNC_REPLICA_ID: Replica ID of this vault (optional, default: local)
    VAULT_SYNC_REMOTE_REPLICA_ID: Replica ID of the peer (optional, default: remote)
    VAULT_SYNC_STATE_DIR: Version Store directory (optional, default: .vault_sync)
    VAULT_SYNC_MAX_WORKERS: Documents processed concurrently (optional, default: 4)
"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import find_dotenv, load_dotenv

from vault_sync.config_loader import load_hierarchical_config
from vault_sync.config_schema import UnifiedConfig, build_config
from vault_sync.exceptions import ConfigError

logger = logging.getLogger(__name__)

_ENV_FIELDS = {
    "VAULT_SYNC_REPLICA_ID": "local_replica_id",
    "VAULT_SYNC_REMOTE_REPLICA_ID": "remote_replica_id",
    "VAULT_SYNC_STATE_DIR": "state_dir",
}


def _env_overrides() -> dict[str, Any]:
    """Collect ``sync`` section values from the environment."""
    values: dict[str, Any] = {}
    for env_name, field_name in _ENV_FIELDS.items():
        value = os.getenv(env_name)
        if value:
            values[field_name] = value.strip()

    max_workers_raw = os.getenv("VAULT_SYNC_MAX_WORKERS")
    if max_workers_raw is not None:
        try:
            max_workers = int(max_workers_raw)
        except ValueError:
            raise ConfigError(
                f"Invalid VAULT_SYNC_MAX_WORKERS '{max_workers_raw}': must be a number between 1 and 64"
            ) from None
        if not (1 <= max_workers <= 64):
            raise ConfigError(
                f"Invalid VAULT_SYNC_MAX_WORKERS '{max_workers_raw}': must be a number between 1 and 64"
            )
        values["max_workers"] = max_workers
    return values


def load_config(
    overrides: dict[str, Any] | None = None,
    *,
    use_dotenv: bool = True,
    use_files: bool = True,
    vault_root: Path | None = None,
) -> UnifiedConfig:
    """Load configuration with unified precedence.

    Resolution order for each ``sync`` field (highest to lowest):
        override > env var / .env > YAML config > built-in default

    Args:
        overrides: Values for the ``sync`` section supplied by the host,
            e.g. ``{"local_replica_id": "laptop"}``.
        use_dotenv: Load a ``.env`` file from the working directory first.
        use_files: Read YAML config files (disable for tests and hosts that
            configure the engine purely in code).
        vault_root: Directory whose ``.vault_sync/`` holds the vault-level
            config file; defaults to the working directory.

    Returns:
        Validated ``UnifiedConfig`` instance.

    Raises:
        ConfigError: If a config file cannot be loaded or a value is invalid.
    """
    if use_dotenv:
        load_dotenv(find_dotenv(usecwd=True))

    raw: dict[str, Any] = {}
    if use_files:
        try:
            raw = load_hierarchical_config(vault_root)
        except (OSError, ValueError, yaml.YAMLError) as exc:
            raise ConfigError(f"Could not load configuration: {exc}") from exc

    sync_section = raw.get("sync") or {}
    if not isinstance(sync_section, dict):
        raise ConfigError(
            f"'sync' section must be a mapping, got {type(sync_section).__name__}"
        )

    raw = {
        **raw,
        "sync": {**sync_section, **_env_overrides(), **(overrides or {})},
    }
    config = build_config(raw)
    logger.debug(
        "Loaded config: local=%s remote=%s state_dir=%s workers=%d",
        config.sync.local_replica_id,
        config.sync.remote_replica_id,
        config.sync.state_dir,
        config.sync.max_workers,
    )
    return config
