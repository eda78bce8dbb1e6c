"""Tests for AgentOS configuration loading."""

from pathlib import Path

import pytest
import yaml

from agentos.config import DEFAULT_CONFIG_YAML, AgentOSConfig, load_config

ENV_VARS = ("AGENTOS_CONFIG", "AGENTOS_DB_PATH", "REDIS_URL", "AGENTOS_ROLE")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "agentos.yaml"
    path.write_text(
        "service:\n"
        "  role: control\n"
        "store:\n"
        "  path: /var/lib/agentos/state.db\n"
        "runtime:\n"
        "  default_runner: http\n"
        "  runners:\n"
        "    custom: echo\n"
        "webhooks:\n"
        "  max_concurrent_deliveries: 8\n"
    )
    return path


class TestLoadConfig:
    def test_missing_file_uses_defaults(self, tmp_path: Path):
        config = load_config(tmp_path / "nope.yaml")
        assert config == AgentOSConfig()
        assert config.service.role == "all"
        assert config.bus.backend == "local"
        assert config.webhooks.max_concurrent_deliveries == 32

    def test_loads_file(self, config_file: Path):
        config = load_config(config_file)
        assert config.service.role == "control"
        assert config.store.path == "/var/lib/agentos/state.db"
        assert config.runtime.runner_for("custom") == "echo"
        assert config.runtime.runner_for("langgraph") == "http"
        assert config.webhooks.max_concurrent_deliveries == 8
        assert config.runs_control_plane
        assert not config.runs_runtime_plane

    def test_config_path_from_env(self, config_file: Path, monkeypatch):
        monkeypatch.setenv("AGENTOS_CONFIG", str(config_file))
        assert load_config().service.role == "control"

    def test_empty_file(self, tmp_path: Path):
        path = tmp_path / "agentos.yaml"
        path.write_text("")
        assert load_config(path) == AgentOSConfig()

    def test_non_mapping_rejected(self, tmp_path: Path):
        path = tmp_path / "agentos.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ValueError, match="must be a mapping"):
            load_config(path)

    def test_unknown_framework_rejected(self, tmp_path: Path):
        path = tmp_path / "agentos.yaml"
        path.write_text("runtime:\n  runners:\n    cobol: echo\n")
        with pytest.raises(ValueError, match="cobol"):
            load_config(path)

    def test_invalid_role_rejected(self, tmp_path: Path):
        path = tmp_path / "agentos.yaml"
        path.write_text("service:\n  role: everything\n")
        with pytest.raises(ValueError):
            load_config(path)

    def test_default_yaml_is_valid(self, tmp_path: Path):
        path = tmp_path / "agentos.yaml"
        path.write_text(DEFAULT_CONFIG_YAML)
        assert load_config(path) == AgentOSConfig(**yaml.safe_load(DEFAULT_CONFIG_YAML))


class TestEnvOverrides:
    def test_db_path(self, config_file: Path, monkeypatch):
        monkeypatch.setenv("AGENTOS_DB_PATH", "/tmp/override.db")
        assert load_config(config_file).store.path == "/tmp/override.db"

    def test_redis_url_switches_backend(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "redis://cache:6379/2")
        config = load_config(tmp_path / "nope.yaml")
        assert config.bus.backend == "redis"
        assert config.bus.redis_url == "redis://cache:6379/2"

    def test_role(self, config_file: Path, monkeypatch):
        monkeypatch.setenv("AGENTOS_ROLE", "runtime")
        config = load_config(config_file)
        assert config.service.role == "runtime"
        assert config.runs_runtime_plane
        assert not config.runs_control_plane

    def test_invalid_role(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("AGENTOS_ROLE", "supervisor")
        with pytest.raises(ValueError, match="AGENTOS_ROLE"):
            load_config(tmp_path / "nope.yaml")
