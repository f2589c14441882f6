"""
Configuration management for the search engine.
"""

import yaml
import logging
from pathlib import Path
from typing import Dict, Any, Optional
from dataclasses import dataclass, field


@dataclass
class CrawlerConfig:
    """Configuration for crawler behavior."""
    user_agent: str = "sitesearch-bot/1.0"
    request_timeout: float = 30.0
    max_concurrent_requests: int = 1
    max_concurrent_per_host: int = 1
    max_content_size: int = 10 * 1024 * 1024
    max_nodes: int = 200_000


@dataclass
class DatabaseConfig:
    """Configuration for the storage backend."""
    type: str = "sqlite"
    sqlite: Dict[str, Any] = field(default_factory=lambda: {'path': 'data/sitesearch.db'})
    redis: Dict[str, Any] = field(default_factory=lambda: {
        'host': 'localhost',
        'port': 6379,
        'db': 0,
        'password': None,
        'key_prefix': 'sitesearch',
    })


@dataclass
class SearchConfig:
    """Defaults written to the settings row the first time storage is initialized."""
    amount: int = 100
    search_on: bool = True
    add_new: bool = True


@dataclass
class SchedulerConfig:
    """Intervals used by the long-running serve loop."""
    crawl_interval: float = 3600.0
    index_interval: float = 3600.0


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = "INFO"
    file: str = "logs/sitesearch.log"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    json: bool = False
    max_bytes: int = 50 * 1024 * 1024
    backup_count: int = 5


@dataclass
class MonitoringConfig:
    """Configuration for monitoring."""
    prometheus_port: int = 8000
    metrics_enabled: bool = False


@dataclass
class Config:
    """Main configuration class."""
    crawler: CrawlerConfig = field(default_factory=CrawlerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_path: str = "config.yaml"):
        self.config_path = Path(config_path)
        self._config: Optional[Config] = None

    def load_config(self) -> Config:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, 'r') as file:
            config_data = yaml.safe_load(file) or {}

        self._config = self.from_dict(config_data)
        self._validate_config()
        return self._config

    @staticmethod
    def from_dict(config_data: Dict[str, Any]) -> Config:
        """Build a Config from parsed YAML; missing sections fall back to defaults."""
        database_data = dict(config_data.get('database') or {})
        database_config = DatabaseConfig()
        database_config.type = database_data.get('type', database_config.type)
        database_config.sqlite.update(database_data.get('sqlite') or {})
        database_config.redis.update(database_data.get('redis') or {})

        return Config(
            crawler=CrawlerConfig(**(config_data.get('crawler') or {})),
            database=database_config,
            search=SearchConfig(**(config_data.get('search') or {})),
            scheduler=SchedulerConfig(**(config_data.get('scheduler') or {})),
            logging=LoggingConfig(**(config_data.get('logging') or {})),
            monitoring=MonitoringConfig(**(config_data.get('monitoring') or {})),
        )

    def _validate_config(self):
        """Validate configuration values."""
        if not self._config:
            raise ValueError("Configuration not loaded")
        validate_config(self._config)
        logging.info("Configuration validation passed")

    @property
    def config(self) -> Config:
        """Get the loaded configuration."""
        if not self._config:
            raise ValueError("Configuration not loaded. Call load_config() first.")
        return self._config


def validate_config(config: Config):
    """Raise ValueError on any out-of-range setting."""
    # A fetch without a finite timeout can stall a whole batch
    if config.crawler.request_timeout <= 0:
        raise ValueError("request_timeout must be positive")

    if config.crawler.max_concurrent_requests < 1:
        raise ValueError("max_concurrent_requests must be at least 1")

    if config.crawler.max_concurrent_per_host < 1:
        raise ValueError("max_concurrent_per_host must be at least 1")

    if config.crawler.max_content_size < 1:
        raise ValueError("max_content_size must be at least 1")

    if config.crawler.max_nodes < 1:
        raise ValueError("max_nodes must be at least 1")

    if config.search.amount < 0:
        raise ValueError("search.amount must be non-negative")

    if config.scheduler.crawl_interval <= 0 or config.scheduler.index_interval <= 0:
        raise ValueError("scheduler intervals must be positive")

    if config.database.type not in ['sqlite', 'redis']:
        raise ValueError("Database type must be 'sqlite' or 'redis'")


def load_config(config_path: str = "config.yaml") -> Config:
    """Load configuration from file."""
    return ConfigManager(config_path).load_config()
