"""Unified configuration schema for vault_sync.

Frozen pydantic models for the `sync` (with its nested `merge` policy) and
`logging` sections of a config file.

Usage:
    from vault_sync.config_schema import UnifiedConfig, build_config

    config = build_config({"sync": {"local_replica_id": "laptop"}})
    config.sync.merge.block_match_threshold  # 0.5
"""

from __future__ import annotations

from pydantic import BaseModel, Field, ValidationError, model_validator

from vault_sync.exceptions import ConfigError

DEFAULT_MAX_DOCUMENT_BYTES = 32 * 1024 * 1024


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class MergePolicyConfig(BaseModel):
    """Merge heuristics.

    Attributes:
        block_match_threshold: Minimum similarity for a base block in a
            replaced region to pair with its best match, skipping the side
            blocks before that match.  Blocks left unpaired between two
            pairs are rewrites of each other, so a low-similarity edit is
            still an edit.
        substantial_edit_threshold: Change ratio above which an edit
            survives a deletion on the other side.  Similarity-paired
            edits change at most ``1 - block_match_threshold`` of a block,
            so at or above that value only rewrites beat a deletion.
        merge_frontmatter_lines: Merge conflicting front matter line by line
            before reporting a conflict.
    """

    block_match_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    substantial_edit_threshold: float = Field(default=0.25, ge=0.0, le=1.0)
    merge_frontmatter_lines: bool = True

    model_config = {"frozen": True}


class SyncConfig(BaseModel):
    """Reconciliation settings."""

    local_replica_id: str = Field(
        default="local", min_length=1, description="Replica ID of this vault"
    )
    remote_replica_id: str = Field(
        default="remote", min_length=1, description="Replica ID of the peer"
    )
    state_dir: str = Field(
        default=".vault_sync", description="Version Store directory"
    )
    max_workers: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Documents processed concurrently (1-64)",
    )
    max_document_bytes: int = Field(
        default=DEFAULT_MAX_DOCUMENT_BYTES,
        ge=1,
        description="Documents larger than this fail fingerprinting",
    )
    exclude: list[str] = Field(
        default_factory=lambda: [".obsidian/**", ".vault_sync/**", ".trash/**"],
        description="Glob patterns of document IDs never synchronized",
    )
    merge: MergePolicyConfig = Field(default_factory=MergePolicyConfig)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _distinct_replicas(self) -> SyncConfig:
        if self.local_replica_id == self.remote_replica_id:
            raise ValueError(
                "local_replica_id and remote_replica_id must differ "
                f"(both are {self.local_replica_id!r})"
            )
        return self


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Level name such as DEBUG or WARNING; unset defers to
            LOG_LEVEL or the mode default.
        file: File to write records to, if any.
        format: "text" or "json".
    """

    level: str | None = Field(default=None, description="Log level")
    file: str | None = Field(default=None, description="Log file path")
    format: str = Field(default="text", pattern="^(text|json)$")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Complete engine configuration; ``UnifiedConfig()`` is all defaults."""

    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Validate a raw config mapping (missing sections get defaults).

    Args:
        raw_data: Mapping as produced by ``load_hierarchical_config()`` with
            environment and host overrides applied.

    Returns:
        The validated ``UnifiedConfig``.

    Raises:
        ConfigError: If a value is malformed or out of range.
    """
    if not raw_data:
        return UnifiedConfig()

    try:
        return UnifiedConfig(**raw_data)
    except (TypeError, ValidationError) as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
