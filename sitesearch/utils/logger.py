"""
Logging utilities for the crawl and index jobs.
"""

import logging
import logging.handlers
import json
import sys
from pathlib import Path
from typing import Dict, Any, Optional
from datetime import datetime, timezone

from .config import LoggingConfig


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_entry.update(record.extra_fields)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class CrawlerLogAdapter(logging.LoggerAdapter):
    """Logger adapter that adds crawl/index context to every record."""

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        """Merge adapter context into the record's extra fields."""
        extra = dict(kwargs.get('extra') or {})
        fields = dict(self.extra)
        fields.update(extra.pop('extra_fields', {}))
        fields.update(extra)
        extra.update(self.extra)
        extra['extra_fields'] = fields
        kwargs['extra'] = extra
        return msg, kwargs

    def log_url_event(self, level: int, url: str, message: str, **kwargs):
        """Log URL-specific events."""
        extra = kwargs.get('extra', {})
        extra['url'] = url
        extra['event_type'] = 'url_event'
        kwargs['extra'] = extra
        self.log(level, message, **kwargs)

    def log_run_stat(self, stat_name: str, value: Any, **kwargs):
        """Log a crawl or index run statistic."""
        extra = kwargs.get('extra', {})
        extra['stat_name'] = stat_name
        extra['stat_value'] = value
        extra['event_type'] = 'run_stat'
        kwargs['extra'] = extra
        self.info(f"Stat: {stat_name} = {value}", **kwargs)


class PerformanceFilter(logging.Filter):
    """Filter to suppress noisy transport-level logs."""

    def __init__(self, suppress_modules: Optional[list] = None):
        super().__init__()
        self.suppress_modules = suppress_modules or [
            'aiohttp.access',
            'aiosqlite',
        ]

    def filter(self, record: logging.LogRecord) -> bool:
        """Filter out noisy log records."""
        if any(record.name.startswith(module) for module in self.suppress_modules):
            return False

        if record.levelno == logging.DEBUG:
            if 'connection pool' in record.getMessage().lower():
                return False

        return True


def _rotating_handler(path: Path, level: int, max_bytes: int, backup_count: int,
                      formatter: logging.Formatter) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(config: LoggingConfig,
                  enable_json: Optional[bool] = None,
                  enable_performance_filtering: bool = True) -> logging.Logger:
    """
    Setup logging for the crawl and index jobs.

    Console output goes to stderr so command results printed on stdout stay
    machine-readable. The log file rotates; errors are also copied to
    ``errors.log`` beside it.

    Args:
        config: The ``logging`` section of the loaded Config
        enable_json: Force JSON formatted logging on or off; defaults to ``config.json``
        enable_performance_filtering: Enable filtering of noisy logs

    Returns:
        Configured root logger
    """
    if enable_json is None:
        enable_json = config.json

    formatter = JSONFormatter() if enable_json else logging.Formatter(config.format)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, config.level.upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)
    handlers = [console_handler]

    if config.file:
        log_file = Path(config.file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(_rotating_handler(log_file, logging.DEBUG, config.max_bytes,
                                          config.backup_count, formatter))
        handlers.append(_rotating_handler(log_file.parent / 'errors.log', logging.ERROR,
                                          config.max_bytes, config.backup_count, formatter))

    for handler in handlers:
        if enable_performance_filtering:
            handler.addFilter(PerformanceFilter())
        root_logger.addHandler(handler)

    # Driver chatter stays out of crawl logs unless it is a warning
    for logger_name in ('aiohttp', 'aiosqlite', 'redis', 'asyncio', 'nltk'):
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    root_logger.info(f"Logging initialized at {config.level}"
                     + (f", writing to {config.file}" if config.file else ""))
    return root_logger


def get_crawler_logger(name: str, **extra_context) -> CrawlerLogAdapter:
    """
    Get a logger carrying extra context on every message.

    Args:
        name: Logger name
        **extra_context: Additional context fields to include in all log messages

    Returns:
        CrawlerLogAdapter instance
    """
    logger = logging.getLogger(name)
    return CrawlerLogAdapter(logger, extra_context)


class LoggingContext:
    """Context manager for adding temporary logging context."""

    def __init__(self, logger: CrawlerLogAdapter, **context):
        self.logger = logger
        self.context = context
        self.original_extra = None

    def __enter__(self):
        self.original_extra = self.logger.extra.copy()
        self.logger.extra.update(self.context)
        return self.logger

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.logger.extra = self.original_extra
