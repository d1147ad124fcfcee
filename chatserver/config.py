"""
Echo Chat - Configuration Manager
===================================
Loads server settings from two sources:

1. config.yaml  - Server, auth, storage and logging settings
2. .env         - Environment overrides (PORT)

Precedence (highest first): command-line flags, PORT environment variable,
config.yaml, DEFAULTS.

Usage:
    config = ConfigManager(project_dir="/path/to/echo-chat")
    settings = config.load()                # Returns merged config dict
    data_dir = config.resolve(settings["storage"]["data_dir"])
"""

import os
import yaml
from dotenv import dotenv_values
from typing import Any


# Default configuration values used when config.yaml is missing or incomplete.
DEFAULTS = {
    "server": {
        "host": "0.0.0.0",
        "port": 8080,
        "send_timeout": 5,
        "shutdown_grace": 5,
    },
    "auth": {
        "auto_register": True,
        "bcrypt_rounds": 12,
        "timeout": 30,
        "store_timeout": 5,
    },
    "storage": {
        "data_dir": "data",
    },
    "logging": {
        "log_dir": "data/logs",
        "echo": True,
    },
}

# Environment variable that overrides server.port.
PORT_ENV = "PORT"


class ConfigManager:
    """
    Configuration loader for the chat server.

    Attributes:
        project_dir: Root directory of the project.
        config_path: Full path to config.yaml.
        env_path:    Full path to .env file.
    """

    def __init__(self, project_dir: str, environ: dict[str, str] | None = None):
        """
        Initialize the config manager.

        Args:
            project_dir: Absolute path to the project root directory.
            environ:     Environment mapping to read overrides from.
                         Defaults to os.environ.
        """
        self.project_dir = project_dir
        self.config_path = os.path.join(project_dir, "config.yaml")
        self.env_path = os.path.join(project_dir, ".env")
        self._environ = environ if environ is not None else os.environ

    def load(self, overrides: dict[str, Any] | None = None) -> dict:
        """
        Load and merge configuration from config.yaml with defaults.

        Missing values are filled from DEFAULTS, then the PORT variable
        (from the process environment or .env) overrides server.port, then
        `overrides` (command-line flags, tests) are merged on top.

        Args:
            overrides: Nested dict merged last.

        Returns:
            A dictionary containing the full configuration.
        """
        config = _deep_copy(DEFAULTS)

        if os.path.exists(self.config_path):
            try:
                with open(self.config_path, "r", encoding="utf-8") as f:
                    user_config = yaml.safe_load(f) or {}
                if isinstance(user_config, dict):
                    _deep_merge(config, user_config)
                else:
                    config["_config_error"] = (
                        f"config.yaml must be a mapping, got {type(user_config).__name__}"
                    )
            except (yaml.YAMLError, OSError) as e:
                # Corrupted config falls back to defaults; caller logs it
                config["_config_error"] = str(e)

        port = self._port_override()
        if port is not None:
            config["server"]["port"] = port

        if overrides:
            _deep_merge(config, overrides)

        return config

    def resolve(self, path: str) -> str:
        """Resolve a config path relative to the project directory."""
        if os.path.isabs(path):
            return path
        return os.path.join(self.project_dir, path)

    def _port_override(self) -> int | None:
        """
        Read the PORT override.

        The process environment wins over .env. Non-numeric values are
        ignored.
        """
        value = self._environ.get(PORT_ENV)
        if not value and os.path.exists(self.env_path):
            value = dotenv_values(self.env_path).get(PORT_ENV)
        if not value:
            return None
        try:
            return int(value)
        except ValueError:
            return None


# -- Helper Functions ---------------------------------------------------------

def _deep_copy(d: dict) -> dict:
    """Create a deep copy of a nested dictionary."""
    result = {}
    for key, value in d.items():
        if isinstance(value, dict):
            result[key] = _deep_copy(value)
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _deep_merge(base: dict, override: dict[str, Any]) -> None:
    """
    Recursively merge 'override' into 'base' (in-place).

    For nested dicts, values are merged recursively.
    For all other types, override replaces base.
    """
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
