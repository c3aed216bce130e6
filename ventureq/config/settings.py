"""Configuration management"""

import json
import os
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Any

from ventureq.exceptions import ConfigurationException


DEFAULT_REDIS_URL = "redis://localhost:6379/0"


@dataclass
class Config:
    """Application configuration"""
    redis_url: str = DEFAULT_REDIS_URL
    key_prefix: str = "ventureq"
    worker_poll_interval: float = 1.0
    scheduler_tick_interval: float = 5.0
    job_timeout: int = 300  # lease on an Active job before the stall detector reclaims it
    max_stalled_count: int = 1
    reconnect_base_delay: float = 0.5
    reconnect_max_delay: float = 30.0
    command_retries: int = 3
    event_stream_maxlen: int = 10000

    CONFIG_FILE = Path.home() / ".ventureq" / "config.json"

    @classmethod
    def load(cls) -> 'Config':
        """Load configuration from file (or defaults), then apply REDIS_URL"""
        config = cls()
        if cls.CONFIG_FILE.exists():
            try:
                with open(cls.CONFIG_FILE, 'r') as f:
                    data = json.load(f)
                config = cls(**data)
            except (json.JSONDecodeError, TypeError) as e:
                raise ConfigurationException(
                    f"Invalid configuration file {cls.CONFIG_FILE}: {e}"
                ) from e

        env_url = os.environ.get("REDIS_URL")
        if env_url:
            config.redis_url = env_url
        return config

    def save(self) -> None:
        """Save configuration to file"""
        self.CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
        with open(self.CONFIG_FILE, 'w') as f:
            json.dump(asdict(self), f, indent=2)

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value (coerced to the field's type) and save"""
        field_types = {f.name: f.type for f in fields(self)}
        if key not in field_types:
            raise ValueError(f"Unknown configuration key: {key}")
        setattr(self, key, self._coerce(field_types[key], value))
        self.save()

    def get(self, key: str) -> Any:
        """Get a configuration value"""
        if hasattr(self, key):
            return getattr(self, key)
        raise ValueError(f"Unknown configuration key: {key}")

    @staticmethod
    def _coerce(field_type: Any, value: Any) -> Any:
        if field_type in (int, 'int'):
            return int(value)
        if field_type in (float, 'float'):
            return float(value)
        return str(value)
