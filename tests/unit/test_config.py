"""Unit tests for configuration management."""

import pytest
import yaml

from pve_orchestrator.config import AppConfig, ConfigLoader, config_loader
from pve_orchestrator.exceptions import ConfigurationError


ENV_VARS = [
    "PVE_ORCH_API_BASE_URL",
    "PVE_ORCH_API_TOKEN",
    "PVE_ORCH_VERIFY_SSL",
    "PVE_ORCH_TIMEOUT",
    "PVE_ORCH_DEFAULT_STORAGE",
    "PVE_ORCH_LOG_LEVEL",
    "PVE_ORCH_TASK_RETENTION_COUNT",
    "PVE_ORCH_TASK_RETENTION_DAYS",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestAppConfig:
    """Test AppConfig Pydantic model."""

    def test_defaults(self):
        config = AppConfig()
        assert config.api_base_url == "https://localhost:8006/api2/json"
        assert config.api_token is None
        assert config.verify_ssl is True
        assert config.default_storage == "NFS"
        assert config.primary_disk == "scsi0"
        assert config.long_poll_attempts == 120
        assert config.long_poll_interval == 5.0
        assert config.short_poll_attempts == 300
        assert config.short_poll_interval == 1.0
        assert config.disk_ready_attempts == 20
        assert config.disk_ready_interval == 10.0
        assert config.task_retention_count == 20
        assert config.task_retention_days == 30

    def test_log_level_normalized(self):
        assert AppConfig(log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level(self):
        with pytest.raises(ValueError, match="log_level must be one of"):
            AppConfig(log_level="LOUD")

    def test_trailing_slash_stripped(self):
        config = AppConfig(api_base_url="https://pve.example:8006/api2/json/")
        assert config.api_base_url == "https://pve.example:8006/api2/json"

    def test_url_scheme_required(self):
        with pytest.raises(ValueError):
            AppConfig(api_base_url="pve.example:8006")

    def test_unknown_field_rejected(self):
        with pytest.raises(ValueError):
            AppConfig(unknown_option=True)

    def test_primary_disk_pattern(self):
        assert AppConfig(primary_disk="virtio0").primary_disk == "virtio0"
        with pytest.raises(ValueError):
            AppConfig(primary_disk="efidisk0")

    def test_token_not_in_repr(self):
        config = AppConfig(api_token="root@pam!ci=abcdef")
        assert "abcdef" not in repr(config)


class TestConfigLoader:
    """Test ConfigLoader."""

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"default_storage": "local-lvm", "request_timeout": 10}))
        config = ConfigLoader().load_config(str(path))
        assert config.default_storage == "local-lvm"
        assert config.request_timeout == 10

    def test_empty_file_uses_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert ConfigLoader().load_config(str(path)).default_storage == "NFS"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            ConfigLoader().load_config(str(tmp_path / "missing.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("key: [unclosed")
        with pytest.raises(ConfigurationError, match="parse"):
            ConfigLoader().load_config(str(path))

    def test_non_mapping_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError, match="Invalid configuration format"):
            ConfigLoader().load_config(str(path))

    def test_invalid_values(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"long_poll_attempts": 0}))
        with pytest.raises(ConfigurationError, match="Invalid configuration"):
            ConfigLoader().load_config(str(path))

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"default_storage": "local-lvm"}))
        monkeypatch.setenv("PVE_ORCH_DEFAULT_STORAGE", "ceph")
        monkeypatch.setenv("PVE_ORCH_API_TOKEN", "root@pam!ci=secret")
        monkeypatch.setenv("PVE_ORCH_VERIFY_SSL", "false")
        monkeypatch.setenv("PVE_ORCH_TIMEOUT", "12.5")
        monkeypatch.setenv("PVE_ORCH_TASK_RETENTION_COUNT", "5")
        config = ConfigLoader().load_config(str(path))
        assert config.default_storage == "ceph"
        assert config.api_token == "root@pam!ci=secret"
        assert config.verify_ssl is False
        assert config.request_timeout == 12.5
        assert config.task_retention_count == 5

    def test_bad_env_value_ignored(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("")
        monkeypatch.setenv("PVE_ORCH_VERIFY_SSL", "maybe")
        monkeypatch.setenv("PVE_ORCH_TASK_RETENTION_DAYS", "soon")
        config = ConfigLoader().load_config(str(path))
        assert config.verify_ssl is True
        assert config.task_retention_days == 30

    def test_global_loader(self):
        assert isinstance(config_loader, ConfigLoader)
