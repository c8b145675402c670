"""Logging setup: readable console output plus JSON log files.

The scrape runner binds the cycle's run id to ``current_run_id`` for the whole
cycle. ``RunContextFilter`` sits on every handler and stamps that id onto each
record, including records from the stages and from worker pool tasks, so one
cycle can be followed with a single filter on the ``run_id`` JSON field.
"""

import contextvars
import logging
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

from pythonjsonlogger import jsonlogger

from price_tracker.config import settings

# Third-party loggers that drown the pipeline output below WARNING
QUIET_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "apscheduler": logging.WARNING,
    "asyncio": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
}

MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5

current_run_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "current_run_id", default=None
)


class RunContextFilter(logging.Filter):
    """Copies the active cycle's run id onto records that do not carry one."""

    def filter(self, record):
        if getattr(record, "run_id", None) is None:
            run_id = current_run_id.get()
            if run_id is not None:
                record.run_id = run_id
        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter with timestamp, level and source location.

    Context passed through ``extra`` (run_id, stage) is emitted as-is by the
    base formatter.
    """

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.utcnow().isoformat() + 'Z'
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['source'] = f"{record.filename}:{record.lineno}"
        if record.funcName:
            log_record['function'] = record.funcName


class ContextConsoleFormatter(logging.Formatter):
    """Console formatter that prefixes the short run id when a record has one."""

    def format(self, record):
        run_id = getattr(record, "run_id", None)
        record.run_tag = f"[{run_id[:8]}] " if run_id else ""
        try:
            return super().format(record)
        finally:
            del record.run_tag


def setup_logging(base_dir: Optional[Union[str, Path]] = None, level: Optional[str] = None):
    """
    Configure the root logger.

    Args:
        base_dir: Directory that receives the logs/ folder (default: cwd)
        level: Overrides settings.log_level

    Returns:
        The configured root logger
    """
    logs_dir = (Path(base_dir) if base_dir else Path.cwd()) / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, (level or settings.log_level).upper(), logging.INFO))
    root_logger.handlers.clear()
    context_filter = RunContextFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(
        ContextConsoleFormatter("%(asctime)s %(levelname)-7s %(run_tag)s%(name)s: %(message)s")
    )
    console_handler.addFilter(context_filter)
    root_logger.addHandler(console_handler)

    json_formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")

    app_handler = RotatingFileHandler(
        logs_dir / "app.log", maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS
    )
    app_handler.setFormatter(json_formatter)
    app_handler.addFilter(context_filter)
    root_logger.addHandler(app_handler)

    # Item failures and aborted cycles only
    error_handler = RotatingFileHandler(
        logs_dir / "error.log", maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(json_formatter)
    error_handler.addFilter(context_filter)
    root_logger.addHandler(error_handler)

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    return root_logger


class LoggerAdapter(logging.LoggerAdapter):
    """Adapter that merges its context into every record's extra."""

    def process(self, msg, kwargs):
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs


def get_logger(name: str, **context) -> LoggerAdapter:
    """
    Get a logger bound to cycle context.

    Args:
        name: Logger name (usually __name__)
        **context: Context fields, e.g. run_id or stage

    Returns:
        LoggerAdapter with context
    """
    return LoggerAdapter(logging.getLogger(name), context)
