"""
YAML configuration discovery and loading for vault_sync.

Config files are looked up by convention (explicit path, the vault's own
``.vault_sync/`` directory, then the user's XDG config), may pull in other
files with ``!include``, and may reference environment variables as
``${VAR}`` or ``${VAR:-default}``.

Usage:
    from vault_sync.config_loader import load_hierarchical_config

    raw = load_hierarchical_config(vault_root=Path("~/vault").expanduser())
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "VAULT_SYNC_CONFIG"
VAULT_CONFIG_NAMES = ("config.yml", "config.yaml")

# ---------------------------------------------------------------------------
# Environment references
# ---------------------------------------------------------------------------

# ${NAME} or ${NAME:-fallback}
_ENV_REF = re.compile(r"\$\{(?P<name>[^}:]+?)(?::-(?P<fallback>.*?))?\}")


def interpolate_env_vars(value: str) -> str:
    """Expand ``${VAR}`` / ``${VAR:-default}`` references in *value*.

    An unset or empty variable expands to its fallback, or to ``""`` when
    there is none.  An unterminated ``${`` is kept as written.
    """
    return _ENV_REF.sub(
        lambda m: os.environ.get(m["name"]) or m["fallback"] or "", value
    )


def _interpolate_recursive(obj: Any) -> Any:
    """Apply ``interpolate_env_vars`` to every string inside *obj*."""
    match obj:
        case str():
            return interpolate_env_vars(obj)
        case dict():
            return {key: _interpolate_recursive(val) for key, val in obj.items()}
        case list():
            return [_interpolate_recursive(item) for item in obj]
        case _:
            return obj


# ---------------------------------------------------------------------------
# !include
# ---------------------------------------------------------------------------


class ConfigLoader(yaml.SafeLoader):
    """``SafeLoader`` that understands ``!include other.yml``.

    ``_include_chain`` holds the files currently being loaded, outermost
    first, so an include cycle is reported instead of recursing forever.
    """

    _include_chain: tuple[Path, ...] = ()


def _include_constructor(loader: ConfigLoader, node: yaml.ScalarNode) -> Any:
    including = Path(loader.name).resolve()
    target = Path(loader.construct_scalar(node))
    if not target.is_absolute():
        target = including.parent / target
    target = target.resolve()

    if target in loader._include_chain:
        cycle = " -> ".join(str(p) for p in (*loader._include_chain, target))
        raise ValueError(f"Circular include detected: {cycle}")
    if not target.is_file():
        raise FileNotFoundError(
            f"Include file not found: {target} (referenced from {including})"
        )
    return _load_yaml_with_includes(target, _chain=loader._include_chain)


ConfigLoader.add_constructor("!include", _include_constructor)


def _load_yaml_with_includes(
    path: Path, *, _chain: tuple[Path, ...] = ()
) -> Any:
    """Parse one YAML file, resolving ``!include`` relative to it."""
    path = path.resolve()
    with open(path, encoding="utf-8") as fh:
        loader = ConfigLoader(fh)
        loader._include_chain = (*_chain, path)
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# ---------------------------------------------------------------------------
# Discovery and merge
# ---------------------------------------------------------------------------


def discover_config_files(vault_root: Path | None = None) -> list[Path]:
    """Return the config files that exist, highest precedence first.

    Candidates:
        1. the file named by ``VAULT_SYNC_CONFIG``
        2. ``<vault_root>/.vault_sync/config.yml`` (or ``.yaml``)
        3. ``~/.config/vault_sync/config.yml``

    Args:
        vault_root: Vault directory; defaults to the working directory.
    """
    root = Path.cwd() if vault_root is None else Path(vault_root)
    candidates: list[Path] = []

    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        candidates.append(Path(explicit).expanduser().resolve())
    candidates.extend(root / ".vault_sync" / name for name in VAULT_CONFIG_NAMES)
    candidates.append(Path.home() / ".config" / "vault_sync" / "config.yml")

    return [path for path in candidates if path.exists()]


def load_hierarchical_config(vault_root: Path | None = None) -> dict[str, Any]:
    """Merge every discovered config file into one raw dict.

    Files are applied from lowest to highest precedence and each replaces
    whole top-level sections of the ones before it ("project wins", no deep
    merge).  Environment references are expanded afterwards.  With no
    config files the result is ``{}``.

    Raises:
        yaml.YAMLError: A file is not valid YAML.
        ValueError: Includes form a cycle.
        FileNotFoundError: An included file is missing.
    """
    paths = discover_config_files(vault_root)
    if not paths:
        logger.debug("No config files found, using built-in defaults")
        return {}

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        data = _load_yaml_with_includes(path)
        if isinstance(data, dict):
            merged.update(data)
        elif data is not None:
            logger.warning(
                "Ignoring config file %s: top level is %s, not a mapping",
                path,
                type(data).__name__,
            )
    return _interpolate_recursive(merged)
