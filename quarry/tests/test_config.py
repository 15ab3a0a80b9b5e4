"""Tests for configuration management"""

import json
from pathlib import Path

import toml
import yaml
from watchdog.events import FileModifiedEvent

from quarry.core.config import ConfigFileHandler, ConfigManager


class TestConfigManager:
    """Test ConfigManager class"""

    def test_default_config_creation(self, temp_dir):
        """Test creation with default configuration"""
        config = ConfigManager(temp_dir / "missing.yaml", auto_reload=False, load_env=False)

        assert config.get("quarry.version") == "0.1.0"
        assert config.get("plugins.public_access") is False
        assert config.get("plugins.auto_disable_threshold") == 0
        assert "application/zip" in config.get("plugins.allowed_content_types")

    def test_config_loading_yaml(self, temp_dir):
        """Test loading configuration from YAML file"""
        config_path = temp_dir / "test_config.yaml"
        with open(config_path, 'w') as f:
            yaml.dump({"quarry": {"debug": True}, "plugins": {"fetch_timeout": 5}}, f)

        config = ConfigManager(config_path, auto_reload=False, load_env=False)

        assert config.get("quarry.debug") is True
        assert config.get("plugins.fetch_timeout") == 5
        # Should merge with defaults
        assert config.get("plugins.max_archive_entries") == 500

    def test_config_loading_json(self, temp_dir):
        """Test loading configuration from JSON file"""
        config_path = temp_dir / "test_config.json"
        with open(config_path, 'w') as f:
            json.dump({"plugins": {"registry_cache_ttl": 60}}, f)

        config = ConfigManager(config_path, auto_reload=False, load_env=False)

        assert config.get("plugins.registry_cache_ttl") == 60

    def test_config_loading_toml(self, temp_dir):
        config_path = temp_dir / "quarry.toml"
        with open(config_path, 'w') as f:
            toml.dump({"plugins": {"public_access": True}}, f)

        config = ConfigManager(config_path, auto_reload=False, load_env=False)

        assert config.public_access

    def test_unreadable_config_falls_back_to_defaults(self, temp_dir):
        config_path = temp_dir / "broken.yaml"
        config_path.write_text("plugins: [unclosed")

        config = ConfigManager(config_path, auto_reload=False, load_env=False)

        assert config.get("plugins.fetch_timeout") == 30.0

    def test_config_get_set(self, config_manager):
        """Test getting and setting configuration values"""
        assert config_manager.get("nonexistent.key", "default") == "default"

        config_manager.set("plugins.public_access", True)
        assert config_manager.public_access

        config_manager.set("nested.deep.key", 42)
        assert config_manager.get("nested.deep.key") == 42

    def test_config_save_load(self, temp_dir, config_manager):
        """Test saving and loading configuration"""
        config_manager.set("plugins.auto_disable_threshold", 3)

        save_path = temp_dir / "saved_config.yaml"
        config_manager.save(save_path)

        new_config = ConfigManager(save_path, auto_reload=False, load_env=False)
        assert new_config.get("plugins.auto_disable_threshold") == 3

    def test_config_validation(self, config_manager):
        """Test configuration validation"""
        valid, errors = config_manager.validate()
        assert valid
        assert errors == []

        config_manager.set("plugins.fetch_timeout", -1)
        config_manager.set("plugins.registry_url", "ftp://registry.quarry.test")
        valid, errors = config_manager.validate()

        assert not valid
        assert "plugins.fetch_timeout must be a positive number" in errors
        assert "plugins.registry_url must be an http(s) URL" in errors

    def test_public_access_from_environment(self, config_manager, monkeypatch):
        monkeypatch.setenv("QUARRY_PUBLIC_ACCESS", "true")

        config_manager.load_from_env()

        assert config_manager.public_access

    def test_environment_variable_loading(self, config_manager, monkeypatch):
        """Test loading from environment variables"""
        monkeypatch.setenv("QUARRY_PLUGINS_FETCH_TIMEOUT", "12.5")
        monkeypatch.setenv("QUARRY_PLUGINS_FETCH_WORKERS", "8")
        monkeypatch.setenv("QUARRY_UNKNOWN_SECTION", "ignored")

        config_manager.load_from_env()

        assert config_manager.get("plugins.fetch_timeout") == 12.5
        assert config_manager.get("plugins.fetch_workers") == 8
        assert config_manager.get("unknown.section") is None

    def test_export_env_vars(self, config_manager):
        """Test exporting configuration as environment variables"""
        env_vars = config_manager.export_env_vars()

        assert env_vars["QUARRY_PLUGINS_PUBLIC_ACCESS"] == "False"

    def test_get_path_expands_home(self, config_manager):
        config_manager.set("plugins.store_dir", "~/quarry-store")

        path = config_manager.get_path("plugins.store_dir")

        assert path == Path.home() / "quarry-store"
        assert config_manager.get_path("plugins.missing") is None


class TestConfigFileHandler:

    def test_modification_reloads(self, temp_dir):
        config_path = temp_dir / "config.yaml"
        config_path.write_text("plugins:\n  public_access: false\n")
        config = ConfigManager(config_path, auto_reload=False, load_env=False)

        config_path.write_text("plugins:\n  public_access: true\n")
        ConfigFileHandler(config).on_modified(FileModifiedEvent(str(config_path)))

        assert config.public_access
