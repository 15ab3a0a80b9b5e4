import os
import copy
from pathlib import Path
from typing import Any, Dict, Optional, Union, Tuple, List
import yaml
import toml
import json
from dotenv import load_dotenv
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler, FileModifiedEvent

from quarry.core.logger import get_logger

logger = get_logger("quarry.config")

ENV_PREFIX = "QUARRY_"


class ConfigFileHandler(FileSystemEventHandler):

    def __init__(self, config_manager: "ConfigManager"):
        self.config_manager = config_manager

    def on_modified(self, event: FileModifiedEvent):
        if event.is_directory:
            return

        path = Path(event.src_path)
        if self.config_manager.config_path and path.name == self.config_manager.config_path.name:
            logger.info(f"Config file modified: {path}")
            self.config_manager.reload()


class ConfigManager:

    DEFAULT_CONFIG = {
        "quarry": {
            "version": "0.1.0",
            "debug": False,
            "data_dir": "~/.quarry",
        },
        "plugins": {
            "store_dir": "~/.quarry/plugins",
            "bundled_dirs": ["plugins"],
            "registry_url": "https://raw.githubusercontent.com/framersai/quarry-plugins/main/registry.json",
            "registry_cache_ttl": 300,
            "fetch_timeout": 30.0,
            "max_package_bytes": 10 * 1024 * 1024,
            "max_unpacked_bytes": 50 * 1024 * 1024,
            "max_archive_entries": 500,
            "allowed_content_types": [
                "application/zip",
                "application/x-zip-compressed",
                "application/octet-stream",
                "application/json",
                "application/x-yaml",
                "text/yaml",
                "text/plain",
            ],
            "public_access": False,
            "auto_disable_threshold": 0,
            "fetch_workers": 4,
        },
        "logging": {
            "level": "INFO",
            "format": "json",
            "file": None,
            "console": True,
        },
    }

    def __init__(self, config_path: Optional[Union[str, Path]] = None, auto_reload: bool = False,
                 load_env: bool = True):
        self.config_path = Path(config_path) if config_path else self._find_config_file()
        self.auto_reload = auto_reload
        self._config: Dict[str, Any] = {}
        self._observer: Optional[Observer] = None

        self.load()

        if load_env:
            self.load_from_env()

        if self.auto_reload and self.config_path and self.config_path.exists():
            self._setup_file_watcher()

    def _find_config_file(self) -> Optional[Path]:
        search_paths = [
            Path.cwd(),
            Path.home() / ".quarry",
            Path("/etc/quarry") if os.name != 'nt' else Path.home() / "AppData" / "Roaming" / "quarry",
        ]

        config_names = ["config.yaml", "config.yml", "config.toml", "config.json", "quarry.yaml", "quarry.toml"]

        for path in search_paths:
            for name in config_names:
                config_file = path / name
                if config_file.exists():
                    logger.info(f"Found config file: {config_file}")
                    return config_file

        return None

    def _setup_file_watcher(self):
        self._observer = Observer()
        handler = ConfigFileHandler(self)

        watch_dir = self.config_path.parent
        self._observer.schedule(handler, str(watch_dir), recursive=False)
        self._observer.start()

        logger.info(f"Config auto-reload enabled for {watch_dir}")

    def load(self) -> None:
        if not self.config_path or not self.config_path.exists():
            logger.debug("No config file found, using defaults")
            self._config = copy.deepcopy(self.DEFAULT_CONFIG)
            return

        try:
            suffix = self.config_path.suffix.lower()

            with open(self.config_path, 'r', encoding='utf-8') as f:
                if suffix in ['.yaml', '.yml']:
                    loaded = yaml.safe_load(f)
                elif suffix == '.toml':
                    loaded = toml.load(f)
                elif suffix == '.json':
                    loaded = json.load(f)
                else:
                    raise ValueError(f"Unsupported config format: {suffix}")

            self._config = self._merge_with_defaults(loaded or {})

            logger.info(f"Config loaded from {self.config_path}")

        except (OSError, ValueError, yaml.YAMLError, toml.TomlDecodeError) as e:
            logger.error(f"Failed to load config: {e}")
            self._config = copy.deepcopy(self.DEFAULT_CONFIG)

    def reload(self) -> None:
        logger.info("Reloading configuration...")
        old_config = copy.deepcopy(self._config)

        try:
            self.load()
            logger.info("Configuration reloaded successfully")
        except Exception as e:
            logger.error(f"Failed to reload config, keeping old config: {e}")
            self._config = old_config

    def _merge_with_defaults(self, config: Dict[str, Any]) -> Dict[str, Any]:
        def deep_merge(default: Dict, override: Dict) -> Dict:
            result = copy.deepcopy(default)

            for key, value in override.items():
                if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                    result[key] = deep_merge(result[key], value)
                else:
                    result[key] = value

            return result

        return deep_merge(self.DEFAULT_CONFIG, config)

    def get(self, key: str, default: Any = None) -> Any:
        keys = key.split('.')
        value = self._config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any) -> None:
        keys = key.split('.')
        config = self._config

        for k in keys[:-1]:
            if k not in config or not isinstance(config[k], dict):
                config[k] = {}
            config = config[k]

        config[keys[-1]] = value

        logger.debug(f"Config updated: {key} = {value}")

    def save(self, path: Optional[Union[str, Path]] = None) -> None:
        save_path = Path(path) if path else self.config_path

        if not save_path:
            save_path = Path.cwd() / "config.yaml"

        try:
            suffix = save_path.suffix.lower()

            with open(save_path, 'w', encoding='utf-8') as f:
                if suffix in ['.yaml', '.yml']:
                    yaml.dump(self._config, f, default_flow_style=False, sort_keys=False)
                elif suffix == '.toml':
                    toml.dump(self._config, f)
                elif suffix == '.json':
                    json.dump(self._config, f, indent=2)
                else:
                    raise ValueError(f"Unsupported config format: {suffix}")

            logger.info(f"Config saved to {save_path}")

        except Exception as e:
            logger.error(f"Failed to save config: {e}")
            raise

    def get_path(self, key: str, default: Optional[str] = None) -> Optional[Path]:
        """Resolve a configured path, expanding ``~``"""
        value = self.get(key, default)
        if value is None:
            return None
        return Path(str(value)).expanduser()

    @property
    def public_access(self) -> bool:
        return bool(self.get("plugins.public_access", False))

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._config)

    def validate(self) -> Tuple[bool, List[str]]:
        """Validate configuration values"""
        errors = []

        timeout = self.get("plugins.fetch_timeout", 30.0)
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            errors.append("plugins.fetch_timeout must be a positive number")

        max_bytes = self.get("plugins.max_package_bytes", 0)
        if not isinstance(max_bytes, int) or max_bytes < 1:
            errors.append("plugins.max_package_bytes must be at least 1")

        if self.get("plugins.max_archive_entries", 500) < 1:
            errors.append("plugins.max_archive_entries must be at least 1")

        if self.get("plugins.registry_cache_ttl", 300) < 0:
            errors.append("plugins.registry_cache_ttl must not be negative")

        if self.get("plugins.auto_disable_threshold", 0) < 0:
            errors.append("plugins.auto_disable_threshold must not be negative")

        if self.get("plugins.fetch_workers", 4) < 1:
            errors.append("plugins.fetch_workers must be at least 1")

        registry_url = self.get("plugins.registry_url")
        if registry_url and not str(registry_url).startswith(("http://", "https://")):
            errors.append("plugins.registry_url must be an http(s) URL")

        if not isinstance(self.get("plugins.bundled_dirs", []), list):
            errors.append("plugins.bundled_dirs must be a list")

        valid = len(errors) == 0

        if not valid:
            for error in errors:
                logger.error(f"Config validation error: {error}")

        return valid, errors

    def export_env_vars(self) -> Dict[str, str]:
        """Export configuration as environment variables"""
        env_vars = {}

        def flatten_dict(d: Dict[str, Any], prefix: str = "QUARRY") -> None:
            for key, value in d.items():
                env_key = f"{prefix}_{key.upper()}"
                if isinstance(value, dict):
                    flatten_dict(value, env_key)
                else:
                    env_vars[env_key] = str(value)

        flatten_dict(self._config)
        return env_vars

    def load_from_env(self, dotenv_path: Optional[Union[str, Path]] = None) -> None:
        """Load configuration values from environment variables.

        ``QUARRY_PUBLIC_ACCESS`` is a shorthand for ``plugins.public_access``;
        every other ``QUARRY_SECTION_KEY`` maps onto ``section.key``.
        """
        load_dotenv(dotenv_path, override=False)

        for key, value in os.environ.items():
            if not key.startswith(ENV_PREFIX):
                continue

            if key == "QUARRY_PUBLIC_ACCESS":
                config_key = "plugins.public_access"
            else:
                section, _, rest = key[len(ENV_PREFIX):].lower().partition("_")
                if not rest or section not in self._config:
                    continue
                config_key = f"{section}.{rest}"

            self.set(config_key, self._coerce_env_value(value))

    @staticmethod
    def _coerce_env_value(value: str) -> Any:
        if value.lower() in ["true", "false"]:
            return value.lower() == "true"
        if value.isdigit():
            return int(value)
        if "." in value and value.replace(".", "", 1).isdigit():
            return float(value)
        return value

    def cleanup(self) -> None:
        """Clean up resources"""
        if self._observer:
            self._observer.stop()
            self._observer.join()
            self._observer = None
            logger.info("Config file watcher stopped")


_global_config: Optional[ConfigManager] = None


def get_config() -> ConfigManager:
    """Get the global configuration manager instance"""
    global _global_config
    if _global_config is None:
        _global_config = ConfigManager()
    return _global_config


def set_config(config: ConfigManager) -> None:
    """Set the global configuration manager instance"""
    global _global_config
    _global_config = config
