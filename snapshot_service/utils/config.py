"""
Configuration loader for the Stream Snapshot Service.

Loads YAML configuration with environment variable substitution. Every key
has a default, so an empty file (or ``Config({})``) is a valid configuration.
"""

import os
import re
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .exceptions import ConfigurationError


# Load .env file if present
load_dotenv()


DEFAULTS = {
    'snapshots': {
        'dir': './data/snapshots',
    },
    'capture': {
        'ffmpeg_path': 'ffmpeg',
        'interval': 30,
        'width': 320,
        'quality': 5,
        'loglevel': 'error',
    },
    'source': {
        'base_url': 'http://localhost:8080',
        'force_https': False,
        'use_hint_host': True,
    },
    'workers': {
        'max_restarts': 5,
        'ttl': 120,
        'backoff_base': 1.0,
        'backoff_max': 30.0,
        'stop_timeout': 5,
    },
    'health': {
        'check_interval': 30,
        'stale_threshold': 90,
    },
    'server': {
        'enabled': True,
        'host': '0.0.0.0',
        'port': 5000,
        'cors_enabled': True,
        'cors_origins': '*',
    },
}


class Config:
    """
    Configuration manager with environment variable substitution.

    Usage:
        config = Config.load('config.yaml')
        ttl = config.get('workers.ttl')
        snapshot_dir = config.get_snapshot_dir()
    """

    _env_pattern = re.compile(r'\$\{([^}]+)\}')

    def __init__(self, config_data: dict):
        self._data = config_data

    @classmethod
    def load(cls, config_path: str = 'config.yaml') -> 'Config':
        """
        Load configuration from YAML file.

        Raises:
            ConfigurationError: If file not found, invalid YAML or invalid values
        """
        path = Path(config_path)

        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(path, 'r') as f:
                raw_content = f.read()

            content = cls._substitute_env_vars(raw_content)
            data = yaml.safe_load(content)

            # An empty file means "all defaults"
            if data is None:
                data = {}

            if not isinstance(data, dict):
                raise ConfigurationError("Configuration must be a YAML dictionary")

            instance = cls(data)
            instance.validate()

            return instance

        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in configuration: {e}")

    @classmethod
    def _substitute_env_vars(cls, content: str) -> str:
        """Substitute ${VAR} patterns with environment variable values."""
        def replace(match):
            value = os.environ.get(match.group(1))
            if value is None:
                # Keep original if not found (might be optional)
                return match.group(0)
            return value

        return cls._env_pattern.sub(replace, content)

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigurationError: If a value is out of range
        """
        positive_fields = [
            'capture.interval',
            'capture.width',
            'workers.max_restarts',
            'workers.ttl',
            'workers.backoff_base',
            'workers.backoff_max',
            'workers.stop_timeout',
            'health.check_interval',
            'health.stale_threshold',
        ]

        for field in positive_fields:
            value = self.get(field)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                raise ConfigurationError(f"{field} must be a positive number, got {value!r}")

        quality = self.get('capture.quality')
        if not isinstance(quality, int) or not 2 <= quality <= 31:
            raise ConfigurationError(f"capture.quality must be an integer in 2..31, got {quality!r}")

        if self.get('health.stale_threshold') <= self.get('capture.interval'):
            raise ConfigurationError(
                "health.stale_threshold must be longer than capture.interval"
            )

        base_url = self.get('source.base_url')
        if not isinstance(base_url, str) or not re.match(r'^https?://', base_url):
            raise ConfigurationError(f"source.base_url must be an http(s) URL, got {base_url!r}")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by dot-separated key.

        Falls back to the built-in default for the key, then to ``default``.
        """
        value = self._lookup(self._data, key)
        if value is None:
            value = self._lookup(DEFAULTS, key)
        return default if value is None else value

    @staticmethod
    def _lookup(data: dict, key: str) -> Any:
        value = data
        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return None
        return value

    def _section(self, name: str) -> dict:
        return {**DEFAULTS.get(name, {}), **(self._data.get(name) or {})}

    def get_capture_config(self) -> dict:
        """Get capture configuration section."""
        return self._section('capture')

    def get_source_config(self) -> dict:
        """Get source URL configuration section."""
        return self._section('source')

    def get_workers_config(self) -> dict:
        """Get worker lifecycle configuration section."""
        return self._section('workers')

    def get_health_config(self) -> dict:
        """Get health monitoring configuration section."""
        return self._section('health')

    def get_server_config(self) -> dict:
        """Get server configuration section."""
        return self._section('server')

    def get_logging_config(self) -> dict:
        """Get logging configuration section."""
        return self._section('logging')

    def get_snapshot_dir(self) -> Path:
        """Get snapshot directory as Path object."""
        return Path(self.get('snapshots.dir'))


def load_config(config_path: str = 'config.yaml') -> Config:
    """Convenience function to load configuration."""
    return Config.load(config_path)
