"""
Configuration management for bt.

This module handles loading and saving configuration settings, including
API defaults, OAuth application settings and the credential store backend.
Values from ``config.yaml`` can be overridden with ``BT_*`` environment
variables.
"""

import copy
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from bt.core.exceptions import ConfigurationError

DEFAULT_BASE_URL = "https://api.bitbucket.org/2.0"

# Environment variable -> (config key, converter)
ENV_OVERRIDES: dict[str, tuple[str, Any]] = {
    "BT_API_BASE_URL": ("api.base_url", str),
    "BT_API_TIMEOUT": ("api.timeout", float),
    "BT_API_MAX_RETRIES": ("api.max_retries", int),
    "BT_API_MAX_ELAPSED": ("api.max_elapsed", float),
    "BT_OAUTH_CLIENT_ID": ("auth.oauth.client_id", str),
    "BT_OAUTH_CLIENT_SECRET": ("auth.oauth.client_secret", str),
    "BT_OAUTH_CALLBACK_PORT": ("auth.oauth.callback_port", int),
    "BT_CREDENTIALS_BACKEND": ("credentials.backend", str),
}


def default_config_dir() -> Path:
    """Return ``$BT_CONFIG_DIR`` or ``~/.config/bt``."""
    env_dir = os.getenv("BT_CONFIG_DIR")
    if env_dir:
        return Path(env_dir).expanduser()
    return Path.home() / ".config" / "bt"


class SingletonMeta(type):
    """
    Thread-safe singleton metaclass.

    This metaclass ensures that only one instance of a class can exist,
    even in multi-threaded environments.
    """

    _instances: dict[type, Any] = {}
    _lock: threading.Lock = threading.Lock()

    def __call__(cls, *args, **kwargs) -> Any:
        """Create or return the singleton instance."""
        with cls._lock:
            if cls not in cls._instances:
                instance = super().__call__(*args, **kwargs)
                cls._instances[cls] = instance
        return cls._instances[cls]


def _get_nested(data: dict[str, Any], key: str) -> Any:
    value: Any = data
    for k in key.split("."):
        value = value[k]
    return value


def _set_nested(data: dict[str, Any], key: str, value: Any) -> None:
    keys = key.split(".")
    for k in keys[:-1]:
        if not isinstance(data.get(k), dict):
            data[k] = {}
        data = data[k]
    data[keys[-1]] = value


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class Config(metaclass=SingletonMeta):
    """Configuration manager for bt."""

    def __init__(self, config_dir: Path | None = None, environ: dict[str, str] | None = None) -> None:
        """
        Initialize the configuration manager.

        Args:
            config_dir: Custom configuration directory path.
                       Defaults to $BT_CONFIG_DIR or ~/.config/bt/
            environ: Environment to read overrides from. Defaults to os.environ.

        Note: Due to singleton pattern, this will only be called once.
              Subsequent calls will return the existing instance.
        """
        # Prevent re-initialization of singleton
        if hasattr(self, "_initialized"):
            return

        self.config_dir = Path(config_dir) if config_dir is not None else default_config_dir()
        self.config_file = self.config_dir / "config.yaml"
        self._config: dict[str, Any] = {}
        self._overrides: dict[str, Any] = {}

        self.config_dir.mkdir(mode=0o700, parents=True, exist_ok=True)

        self._load_config()
        self._load_environment(os.environ if environ is None else environ)

        self._initialized = True

    def _load_config(self) -> None:
        """Load configuration from file, layered over the defaults."""
        defaults = self._get_default_config()
        if not self.config_file.exists():
            self._config = defaults
            return

        try:
            with open(self.config_file, encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            raise ConfigurationError(
                f"Failed to load configuration file: {e}",
                suggestion=f"Check that {self.config_file} is valid YAML",
            ) from e

        if not isinstance(loaded, dict):
            raise ConfigurationError(
                "Configuration file must contain a mapping",
                suggestion=f"Check the contents of {self.config_file}",
            )
        self._config = _merge(defaults, loaded)

    def _load_environment(self, environ: dict[str, str]) -> None:
        """Apply BT_* environment overrides. They are never written back to disk."""
        for env_name, (key, convert) in ENV_OVERRIDES.items():
            raw = environ.get(env_name)
            if not raw:
                continue
            try:
                self._overrides[key] = convert(raw)
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid value for {env_name}: {raw!r}",
                    suggestion=f"Unset {env_name} or give it a valid value",
                ) from e

    def _save_config(self) -> None:
        """Save configuration to file."""
        try:
            with open(self.config_file, "w", encoding="utf-8") as f:
                yaml.safe_dump(self._config, f, default_flow_style=False)

            # Ensure config file has secure permissions
            os.chmod(self.config_file, 0o600)
        except OSError as e:
            raise ConfigurationError(
                f"Failed to save configuration file: {e}",
                suggestion=f"Check that {self.config_dir} is writable",
            ) from e

    def _get_default_config(self) -> dict[str, Any]:
        """Get default configuration values."""
        return {
            "default_workspace": None,
            "api": {
                "base_url": DEFAULT_BASE_URL,
                "timeout": 30,
                "max_retries": 3,
                "max_elapsed": 120,
            },
            "auth": {
                "oauth": {
                    "client_id": None,
                    "client_secret": None,
                    "callback_port": 8080,
                },
            },
            "credentials": {
                "backend": "file",
            },
        }

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value.

        Args:
            key: Configuration key (supports dot notation, e.g., 'api.timeout')
            default: Default value if key is not found

        Returns:
            Configuration value or default
        """
        if key in self._overrides:
            return self._overrides[key]
        try:
            value = _get_nested(self._config, key)
        except (KeyError, TypeError):
            return default
        return default if value is None else value

    def set(self, key: str, value: Any) -> None:
        """
        Set a configuration value and persist it.

        Args:
            key: Configuration key (supports dot notation)
            value: Value to set
        """
        _set_nested(self._config, key, value)
        self._save_config()

    def delete(self, key: str) -> bool:
        """
        Delete a configuration value.

        Args:
            key: Configuration key to delete

        Returns:
            True if key was deleted, False if it didn't exist
        """
        keys = key.split(".")
        config = self._config

        try:
            for k in keys[:-1]:
                config = config[k]

            if keys[-1] in config:
                del config[keys[-1]]
                self._save_config()
                return True
            return False
        except (KeyError, TypeError):
            return False

    def get_all(self) -> dict[str, Any]:
        """Get all configuration values, environment overrides applied."""
        merged = copy.deepcopy(self._config)
        for key, value in self._overrides.items():
            _set_nested(merged, key, value)
        return merged

    def reset(self) -> None:
        """Reset configuration to defaults."""
        self._config = self._get_default_config()
        self._save_config()

    @classmethod
    def reset_singleton(cls) -> None:
        """
        Reset the singleton instance.

        This is primarily useful for testing purposes.
        """
        with SingletonMeta._lock:
            if cls in SingletonMeta._instances:
                del SingletonMeta._instances[cls]

    @classmethod
    def is_initialized(cls) -> bool:
        """
        Check if the singleton instance has been created.

        Returns:
            True if the singleton instance exists, False otherwise
        """
        return cls in SingletonMeta._instances


def get_config() -> Config:
    """
    Get the singleton configuration instance.

    Returns:
        The singleton Config instance
    """
    return Config()
