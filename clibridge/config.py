import os
import shlex
import yaml
from pathlib import Path
from typing import Any, Dict, List

class BridgeConfigError(Exception):
    """Custom exception for clibridge configuration errors."""
    pass

class Config:
    _instance = None

    def __new__(cls):
        if not cls._instance:
            cls._instance = super(Config, cls).__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return
        self.load()
        self._initialized = True

    def load(self):
        """Loads configuration from available sources and applies overrides."""
        self.data = self._load_from_files()
        self._apply_env_overrides()

    def reload(self):
        """Reloads the configuration."""
        self.load()

    def _default_config(self) -> Dict[str, Any]:
        """Returns the default baseline configuration."""
        return {
            "server": {
                "name": "clibridge",
                "version": "0.1.0",
                "transport": "http",
                "host": "127.0.0.1",
                "port": 8765,
                "path": "/mcp",
                "session_idle_timeout": 3600
            },
            "cli": {
                "command": [],
                "descriptor": None,
                "parser": None,
                "cwd": None
            },
            "security": {
                "sensitive_prefixes": [
                    "profile",
                    "cloud token",
                    "cloud account grant"
                ]
            },
            "execution": {
                "timeout": 60,
                "max_output_chars": 1000000
            },
            "protocol": {
                "supported_versions": [
                    "2024-11-05",
                    "2025-03-26",
                    "2025-06-18"
                ]
            },
            "logging": {
                "level": "INFO",
                "log_file": None
            }
        }

    def _load_from_files(self) -> Dict[str, Any]:
        """Resolves configuration from tiered file paths: defaults < user < local < CLIBRIDGE_CONFIG."""
        merged_config = self._default_config()

        paths_to_load = [
            Path.home() / ".clibridge" / "config.yaml",
            Path.cwd() / "clibridge.config.yaml"
        ]
        if os.getenv("CLIBRIDGE_CONFIG"):
            paths_to_load.append(Path(os.getenv("CLIBRIDGE_CONFIG")))

        for path in paths_to_load:
            if path and Path(path).is_file():
                try:
                    with open(path, "r", encoding="utf-8") as f:
                        file_data = yaml.safe_load(f)
                except (OSError, yaml.YAMLError) as e:
                    raise BridgeConfigError(f"Failed to load config from {path}: {e}")
                if isinstance(file_data, dict):
                    self._deep_update(merged_config, file_data)
                elif file_data is not None:
                    raise BridgeConfigError(f"Configuration file {path} must be a dictionary.")

        return merged_config

    def _deep_update(self, base_dict: Dict[str, Any], update_dict: Dict[str, Any]):
        """Recursively updates a dictionary."""
        for key, value in update_dict.items():
            if isinstance(value, dict) and key in base_dict and isinstance(base_dict[key], dict):
                self._deep_update(base_dict[key], value)
            else:
                base_dict[key] = value

    def _apply_env_overrides(self):
        """Applies environment variable overrides."""
        mapping = {
            "CLIBRIDGE_HOST": "server.host",
            "CLIBRIDGE_PORT": "server.port",
            "CLIBRIDGE_TIMEOUT": "execution.timeout",
            "CLIBRIDGE_LOG_LEVEL": "logging.level",
            "CLIBRIDGE_COMMAND": "cli.command",
            "CLIBRIDGE_DESCRIPTOR": "cli.descriptor"
        }

        for env_var, config_key in mapping.items():
            value = os.getenv(env_var)
            if value is not None:
                if config_key == "server.port":
                    try:
                        value = int(value)
                    except ValueError:
                        raise BridgeConfigError(f"{env_var} must be an integer, got {value!r}")
                elif config_key == "execution.timeout":
                    try:
                        value = float(value)
                    except ValueError:
                        raise BridgeConfigError(f"{env_var} must be a number, got {value!r}")
                elif config_key == "cli.command":
                    value = shlex.split(value)

                self.set(config_key, value)

    def get(self, key: str, default: Any = None) -> Any:
        """Gets a configuration value using dot-notation."""
        parts = key.split(".")
        value = self.data
        for part in parts:
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default
        return value

    def set(self, key: str, value: Any):
        """Sets a configuration value using dot-notation."""
        parts = key.split(".")
        target = self.data
        for part in parts[:-1]:
            if part not in target or not isinstance(target[part], dict):
                target[part] = {}
            target = target[part]
        target[parts[-1]] = value

    def command(self) -> List[str]:
        """The host CLI executable prefix, always as an argument list."""
        cmd = self.get("cli.command") or []
        if isinstance(cmd, str):
            cmd = shlex.split(cmd)
        if not isinstance(cmd, list) or not all(isinstance(c, str) for c in cmd):
            raise BridgeConfigError("cli.command must be a string or a list of strings.")
        return cmd

    def validate(self, require_command: bool = True):
        """Checks the values the bridge cannot start without."""
        if require_command and not self.command():
            raise BridgeConfigError("cli.command is not set: nothing to execute.")
        if not (self.get("cli.descriptor") or self.get("cli.parser")):
            raise BridgeConfigError("Either cli.descriptor or cli.parser must be set.")
        timeout = self.get("execution.timeout")
        if not isinstance(timeout, (int, float)) or isinstance(timeout, bool) or timeout <= 0:
            raise BridgeConfigError("execution.timeout must be a positive number.")
        idle = self.get("server.session_idle_timeout")
        if idle is not None and (not isinstance(idle, (int, float)) or isinstance(idle, bool) or idle <= 0):
            raise BridgeConfigError("server.session_idle_timeout must be a positive number or null.")
        versions = self.get("protocol.supported_versions")
        if not isinstance(versions, list) or not versions:
            raise BridgeConfigError("protocol.supported_versions must be a non-empty list.")
        prefixes = self.get("security.sensitive_prefixes")
        if not isinstance(prefixes, list):
            raise BridgeConfigError("security.sensitive_prefixes must be a list.")

    def to_yaml(self) -> str:
        """Returns the configuration as a YAML string."""
        return yaml.dump(self.data, default_flow_style=False)

# Singleton instance
config = Config()
