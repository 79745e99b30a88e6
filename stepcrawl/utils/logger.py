"""
Logging setup for the crawler.

Records of one crawl carry its crawl_id and crawl_name so the output of
several executions, and of several crawls sharing a log file, can be told apart.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from .config import LoggingConfig


# Extra record attributes carried into structured output
CONTEXT_FIELDS = ('crawl_id', 'crawl_name', 'path', 'url', 'event_type')

# Library loggers that are only interesting when something goes wrong
QUIET_LOGGERS = ('aiohttp', 'urllib3', 'redis', 'asyncio', 'playwright')

MB = 1024 * 1024


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with the crawl context fields of the record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'source': f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update({name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)})
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class CrawlerLogAdapter(logging.LoggerAdapter):
    """Prefixes messages with the crawl id and attaches the crawl context as record extras."""

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg, kwargs):
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        crawl_id = self.extra.get('crawl_id')
        return (f"[{crawl_id}] {msg}" if crawl_id else msg), kwargs

    def log_path_event(self, level: int, path: str, message: str, **kwargs):
        """Log something that happened to one frontier path."""
        kwargs['extra'] = {**kwargs.get('extra', {}), 'path': path, 'event_type': 'path_event'}
        self.log(level, message, **kwargs)


class NoiseFilter(logging.Filter):
    """Drops records of chatty library loggers, such as per-request access logs."""

    def __init__(self, suppressed: Iterable[str] = ('aiohttp.access', 'urllib3.connectionpool')):
        super().__init__()
        self.suppressed = tuple(suppressed)

    def filter(self, record: logging.LogRecord) -> bool:
        return not record.name.startswith(self.suppressed)


def _rotating_handler(path: Path, level: int, max_bytes: int, backups: int,
                      formatter: logging.Formatter) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backups, encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(config: LoggingConfig, filter_noise: bool = True) -> logging.Logger:
    """
    Configure the root logger: console at INFO, a rotating log file at the
    configured level and a separate errors.log next to it.

    Args:
        config: Logging configuration
        filter_noise: Drop access-log style records from console and log file

    Returns:
        The root logger
    """
    log_file = Path(config.file)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    formatter = JSONFormatter() if config.json else logging.Formatter(config.format)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.INFO)
    console.setFormatter(formatter)

    handlers = [
        console,
        _rotating_handler(log_file, logging.DEBUG, 50 * MB, 5, formatter),
        _rotating_handler(log_file.parent / 'errors.log', logging.ERROR, 10 * MB, 3, formatter),
    ]
    if filter_noise:
        for handler in handlers[:2]:
            handler.addFilter(NoiseFilter())

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.level.upper()))
    root.handlers.clear()
    for handler in handlers:
        root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root.info(f"Logging to {log_file} at level {config.level}")
    return root


def get_crawler_logger(name: str, **extra_context) -> CrawlerLogAdapter:
    """
    Logger for one crawl.

    Args:
        name: Logger name
        **extra_context: Context attached to every record, usually crawl_id and crawl_name
    """
    return CrawlerLogAdapter(logging.getLogger(name), extra_context)
