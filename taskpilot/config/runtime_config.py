"""Runtime configuration for the tool-flow engine.

Provides centralized configuration for store locations and cache behavior.
Environment variables take precedence over the YAML config file.

Usage:
    from taskpilot.config.runtime_config import get_runtime_config

    config = get_runtime_config()
    config.global_db_path     # Path, or None for an in-memory store
    config.workspace_db_path("ws-1")

Environment variables:
    TASKPILOT_CONFIG          Path to a YAML config file
    TASKPILOT_HOME            Base directory (default ~/.taskpilot)
    TASKPILOT_GLOBAL_DB       Global store path, or ":memory:"
    TASKPILOT_WORKSPACES_DIR  Directory for per-workspace stores, or ":memory:"
    TASKPILOT_CACHE_ENABLED   "true"/"false"
    TASKPILOT_END_SENTINEL    next_tool value meaning "no hand-off" (default "end")
    TASKPILOT_LOG_LEVEL       Logging level for entry points (default INFO)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

IN_MEMORY = ":memory:"
CONFIG_FILENAME = "taskpilot.yaml"

_cached_config: Optional["RuntimeConfig"] = None


@dataclass
class RuntimeConfig:
    """Resolved runtime settings.

    A None store path means the store lives in memory for the life of the
    process.
    """

    home_dir: Path
    global_db_path: Optional[Path]
    workspaces_dir: Optional[Path]
    cache_enabled: bool = True
    end_sentinel: str = "end"
    log_level: str = "INFO"

    def workspace_db_path(self, workspace_id: str) -> Optional[Path]:
        if self.workspaces_dir is None:
            return None
        return self.workspaces_dir / f"{workspace_id}.duckdb"

    @classmethod
    def in_memory(cls, **overrides: Any) -> "RuntimeConfig":
        """Config with every store in memory (tests, previews)."""
        values: Dict[str, Any] = {
            "home_dir": Path.cwd(),
            "global_db_path": None,
            "workspaces_dir": None,
        }
        values.update(overrides)
        return cls(**values)


def _parse_bool(value: Any, name: str, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    lowered = str(value).strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    logger.warning("Invalid boolean for %s: %r. Using %s.", name, value, default)
    return default


def _parse_path(value: Any, base: Path) -> Optional[Path]:
    if value is None:
        return None
    text = str(value)
    if text == IN_MEMORY:
        return None
    path = Path(text).expanduser()
    return path if path.is_absolute() else base / path


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with path.open(encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: top level must be a mapping", path)
        return {}
    return data


def load_config(config_path: Optional[Path] = None) -> RuntimeConfig:
    """Load configuration from YAML and environment.

    Precedence (highest to lowest):
    1. TASKPILOT_* environment variables
    2. The YAML file (``config_path``, TASKPILOT_CONFIG, or <home>/taskpilot.yaml)
    3. Defaults: stores under ~/.taskpilot, cache enabled
    """
    home_dir = Path(os.environ.get("TASKPILOT_HOME", "~/.taskpilot")).expanduser()

    if config_path is None:
        env_path = os.environ.get("TASKPILOT_CONFIG")
        config_path = Path(env_path).expanduser() if env_path else home_dir / CONFIG_FILENAME
    data = _load_yaml(config_path)

    storage = data.get("storage", {}) or {}
    cache = data.get("cache", {}) or {}
    flows = data.get("flows", {}) or {}

    global_db = os.environ.get("TASKPILOT_GLOBAL_DB", storage.get("global_db", "global.duckdb"))
    workspaces_dir = os.environ.get(
        "TASKPILOT_WORKSPACES_DIR", storage.get("workspaces_dir", "workspaces")
    )
    cache_enabled = _parse_bool(
        os.environ.get("TASKPILOT_CACHE_ENABLED", cache.get("enabled")),
        "cache_enabled",
        True,
    )
    end_sentinel = os.environ.get("TASKPILOT_END_SENTINEL", flows.get("end_sentinel", "end"))
    log_level = os.environ.get("TASKPILOT_LOG_LEVEL", data.get("log_level", "INFO"))

    config = RuntimeConfig(
        home_dir=home_dir,
        global_db_path=_parse_path(global_db, home_dir),
        workspaces_dir=_parse_path(workspaces_dir, home_dir),
        cache_enabled=cache_enabled,
        end_sentinel=str(end_sentinel),
        log_level=str(log_level).upper(),
    )
    logger.debug(
        "Runtime config loaded from %s: global_db=%s workspaces_dir=%s cache=%s",
        config_path,
        config.global_db_path or IN_MEMORY,
        config.workspaces_dir or IN_MEMORY,
        config.cache_enabled,
    )
    return config


def get_runtime_config() -> RuntimeConfig:
    """Return the process-wide config, loading it on first use."""
    global _cached_config
    if _cached_config is None:
        _cached_config = load_config()
    return _cached_config


def reset_config() -> None:
    """Reset cached config (for testing)."""
    global _cached_config
    _cached_config = None
