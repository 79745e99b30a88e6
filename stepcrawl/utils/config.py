"""
Configuration management for the step-budgeted crawler.
"""

import os
import yaml
import logging
from pathlib import Path
from typing import Dict, Any, Optional
from dataclasses import dataclass, field, replace


@dataclass(frozen=True)
class CrawlerConfig:
    """Configuration for crawler behavior."""
    state_machine_url_threshold: int = 1000
    parallel_urls_to_sync: int = 10
    max_execution_steps: int = 25000
    max_executions: int = 0
    step_retry_attempts: int = 3
    step_retry_backoff: float = 1.0
    user_agent: str = "stepcrawl/1.0"
    request_timeout: int = 30
    navigation_timeout: int = 60
    headless: bool = True


@dataclass(frozen=True)
class RedisConfig:
    """Configuration for Redis."""
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    frontier_key_prefix: str = "stepcrawl:frontier:"
    history_key_prefix: str = "stepcrawl:history:"


@dataclass(frozen=True)
class StorageConfig:
    """Configuration for page content storage."""
    data_directory: str = "data"


@dataclass(frozen=True)
class LoggingConfig:
    """Configuration for logging."""
    level: str = "INFO"
    file: str = "logs/crawler.log"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    json: bool = False


@dataclass(frozen=True)
class MonitoringConfig:
    """Configuration for monitoring."""
    prometheus_port: int = 8000
    metrics_enabled: bool = False


@dataclass(frozen=True)
class Config:
    """Main configuration class."""
    crawler: CrawlerConfig = field(default_factory=CrawlerConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)


# Environment variable -> (section, field, type)
ENV_OVERRIDES = {
    'STATE_MACHINE_URL_THRESHOLD': ('crawler', 'state_machine_url_threshold', int),
    'PARALLEL_URLS_TO_SYNC': ('crawler', 'parallel_urls_to_sync', int),
    'STEPCRAWL_DATA_DIRECTORY': ('storage', 'data_directory', str),
    'REDIS_HOST': ('redis', 'host', str),
    'REDIS_PORT': ('redis', 'port', int),
}


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_path: str = "config.yaml", environ: Optional[Dict[str, str]] = None):
        self.config_path = Path(config_path)
        self.environ = os.environ if environ is None else environ
        self._config: Optional[Config] = None

    def load_config(self) -> Config:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, 'r') as file:
            config_data = yaml.safe_load(file) or {}

        self._config = self._apply_env_overrides(config_from_dict(config_data))
        validate_config(self._config)
        return self._config

    def _apply_env_overrides(self, config: Config) -> Config:
        """Apply environment variable overrides on top of the file values."""
        for env_name, (section, name, cast) in ENV_OVERRIDES.items():
            raw = self.environ.get(env_name)
            if raw is None or raw == "":
                continue
            try:
                value = cast(raw)
            except ValueError:
                raise ValueError(f"Invalid value for {env_name}: {raw!r}")
            config = replace(config, **{section: replace(getattr(config, section), **{name: value})})
        return config

    @property
    def config(self) -> Config:
        """Get the loaded configuration."""
        if not self._config:
            raise ValueError("Configuration not loaded. Call load_config() first.")
        return self._config


def config_from_dict(config_data: Dict[str, Any]) -> Config:
    """Build a Config from a parsed YAML mapping, using defaults for missing sections."""
    return Config(
        crawler=CrawlerConfig(**config_data.get('crawler', {})),
        redis=RedisConfig(**config_data.get('redis', {})),
        storage=StorageConfig(**config_data.get('storage', {})),
        logging=LoggingConfig(**config_data.get('logging', {})),
        monitoring=MonitoringConfig(**config_data.get('monitoring', {})),
    )


def validate_config(config: Config):
    """Validate configuration values."""
    crawler = config.crawler

    if crawler.parallel_urls_to_sync < 1:
        raise ValueError("parallel_urls_to_sync must be at least 1")

    if crawler.state_machine_url_threshold < crawler.parallel_urls_to_sync:
        # A fresh execution must be able to run at least one full batch
        raise ValueError("state_machine_url_threshold must be >= parallel_urls_to_sync")

    if crawler.max_execution_steps < crawler.state_machine_url_threshold:
        raise ValueError("max_execution_steps must be >= state_machine_url_threshold")

    if crawler.max_executions < 0:
        raise ValueError("max_executions must be non-negative")

    if crawler.step_retry_attempts < 1:
        raise ValueError("step_retry_attempts must be at least 1")

    if crawler.step_retry_backoff < 0:
        raise ValueError("step_retry_backoff must be non-negative")

    if crawler.request_timeout <= 0 or crawler.navigation_timeout <= 0:
        raise ValueError("timeouts must be positive")

    logging.getLogger(__name__).debug("Configuration validation passed")


def load_config(config_path: str = "config.yaml") -> Config:
    """Load configuration from file."""
    return ConfigManager(config_path).load_config()
