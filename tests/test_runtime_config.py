"""
Tests for runtime configuration loading.
"""

from pathlib import Path

import yaml

from taskpilot.config.runtime_config import (
    RuntimeConfig,
    get_runtime_config,
    load_config,
    reset_config,
)


class TestDefaults:
    def test_defaults_under_home(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TASKPILOT_HOME", str(tmp_path))

        config = load_config()

        assert config.home_dir == tmp_path
        assert config.global_db_path == tmp_path / "global.duckdb"
        assert config.workspaces_dir == tmp_path / "workspaces"
        assert config.cache_enabled is True
        assert config.end_sentinel == "end"
        assert config.log_level == "INFO"

    def test_workspace_db_path(self, tmp_path):
        config = RuntimeConfig(home_dir=tmp_path, global_db_path=None, workspaces_dir=tmp_path / "ws")
        assert config.workspace_db_path("abc") == tmp_path / "ws" / "abc.duckdb"

    def test_in_memory(self):
        config = RuntimeConfig.in_memory(cache_enabled=False)
        assert config.global_db_path is None
        assert config.workspace_db_path("abc") is None
        assert config.cache_enabled is False


class TestYamlFile:
    def test_values_from_yaml(self, tmp_path):
        config_path = tmp_path / "taskpilot.yaml"
        config_path.write_text(
            yaml.safe_dump(
                {
                    "storage": {"global_db": "/data/g.duckdb", "workspaces_dir": "ws"},
                    "cache": {"enabled": False},
                    "flows": {"end_sentinel": "done"},
                    "log_level": "debug",
                }
            )
        )

        config = load_config(config_path)

        assert config.global_db_path == Path("/data/g.duckdb")
        assert config.workspaces_dir == config.home_dir / "ws"
        assert config.cache_enabled is False
        assert config.end_sentinel == "done"
        assert config.log_level == "DEBUG"

    def test_memory_marker(self, tmp_path):
        config_path = tmp_path / "c.yaml"
        config_path.write_text("storage:\n  global_db: ':memory:'\n  workspaces_dir: ':memory:'\n")

        config = load_config(config_path)

        assert config.global_db_path is None
        assert config.workspaces_dir is None

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(tmp_path / "absent.yaml")
        assert config.cache_enabled is True

    def test_non_mapping_ignored(self, tmp_path):
        config_path = tmp_path / "c.yaml"
        config_path.write_text("- just\n- a list\n")
        assert load_config(config_path).end_sentinel == "end"

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        config_path = tmp_path / "elsewhere.yaml"
        config_path.write_text("flows:\n  end_sentinel: stop\n")
        monkeypatch.setenv("TASKPILOT_CONFIG", str(config_path))

        assert load_config().end_sentinel == "stop"


class TestEnvironmentOverrides:
    def test_env_beats_yaml(self, tmp_path, monkeypatch):
        config_path = tmp_path / "c.yaml"
        config_path.write_text("cache:\n  enabled: true\nflows:\n  end_sentinel: done\n")
        monkeypatch.setenv("TASKPILOT_CACHE_ENABLED", "false")
        monkeypatch.setenv("TASKPILOT_END_SENTINEL", "finish")
        monkeypatch.setenv("TASKPILOT_GLOBAL_DB", ":memory:")
        monkeypatch.setenv("TASKPILOT_LOG_LEVEL", "warning")

        config = load_config(config_path)

        assert config.cache_enabled is False
        assert config.end_sentinel == "finish"
        assert config.global_db_path is None
        assert config.log_level == "WARNING"

    def test_invalid_bool_falls_back_to_default(self, monkeypatch):
        monkeypatch.setenv("TASKPILOT_CACHE_ENABLED", "maybe")
        assert load_config().cache_enabled is True


class TestCachedConfig:
    def test_cached_until_reset(self, monkeypatch):
        first = get_runtime_config()
        assert get_runtime_config() is first

        monkeypatch.setenv("TASKPILOT_END_SENTINEL", "later")
        assert get_runtime_config().end_sentinel == "end"

        reset_config()
        assert get_runtime_config().end_sentinel == "later"
