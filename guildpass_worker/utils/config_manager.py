"""Configuration Management for CLI Settings"""

import os
from pathlib import Path
from typing import Any

import yaml
from rich.console import Console

console = Console()

SECRET_KEYS = ("operator_token", "worker_token", "replay_token")


class ConfigManager:
    """Manage CLI configuration settings stored in ~/.guildpass/config.yaml"""

    def __init__(self, config_dir: Path | None = None):
        self.config_dir = config_dir or Path.home() / ".guildpass"
        self.config_file = self.config_dir / "config.yaml"

    def ensure_config_dir(self):
        """Ensure config directory exists"""
        self.config_dir.mkdir(parents=True, exist_ok=True)

    def load_config(self) -> dict[str, Any]:
        """Load configuration from file, layered over the defaults"""
        default_config = self.get_default_config()
        if not self.config_file.exists():
            return default_config

        try:
            with open(self.config_file) as f:
                config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            console.print(f"[red]Error loading config: {e}[/red]")
            return default_config

        for section, values in config.items():
            if isinstance(values, dict) and isinstance(default_config.get(section), dict):
                default_config[section].update(values)
            else:
                default_config[section] = values
        return default_config

    def save_config(self, config: dict[str, Any]):
        """Save configuration to file"""
        self.ensure_config_dir()
        with open(self.config_file, "w") as f:
            yaml.safe_dump(config, f, default_flow_style=False)

    def get_default_config(self) -> dict[str, Any]:
        """Get default configuration"""
        return {
            "api": {
                "base_url": os.getenv("GUILDPASS_API_URL", "http://localhost:8000"),
                "timeout": 30,
                "operator_token": os.getenv("GUILDPASS_OPERATOR_TOKEN", ""),
                "worker_token": os.getenv("GUILDPASS_WORKER_API_TOKEN", ""),
                "replay_token": os.getenv("GUILDPASS_REPLAY_TOKEN", ""),
            },
            "display": {"page_size": 20},
        }

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation (e.g., 'api.base_url')"""
        config: Any = self.load_config()
        for k in key.split("."):
            if isinstance(config, dict) and k in config:
                config = config[k]
            else:
                return default
        return config

    def set(self, key: str, value: Any):
        """Set configuration value using dot notation"""
        config = self.load_config()
        keys = key.split(".")

        current = config
        for k in keys[:-1]:
            if not isinstance(current.get(k), dict):
                current[k] = {}
            current = current[k]
        current[keys[-1]] = value

        self.save_config(config)

    def reset(self):
        """Reset configuration to defaults"""
        self.save_config(self.get_default_config())

    def redacted(self) -> dict[str, Any]:
        """Configuration with token values masked for display"""
        config = self.load_config()
        api = dict(config.get("api", {}))
        for key in SECRET_KEYS:
            if api.get(key):
                api[key] = "****"
        config["api"] = api
        return config


# Global config manager instance
config = ConfigManager()
