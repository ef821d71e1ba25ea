"""
Logging utilities for the media job worker

Provides structured JSON logging, component tagging and per-job logger
adapters so that concurrently running jobs never share log context.
"""

import logging
import sys
import json
from datetime import datetime
from typing import Dict, Any, Optional, MutableMapping, Tuple
from pathlib import Path


_STANDARD_RECORD_FIELDS = frozenset({
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'message', 'exc_info', 'exc_text',
    'stack_info', 'taskName'
})


class StructuredFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON documents.

    Fields passed through ``extra=`` (job id, stage, unit, attempt...) are
    collected under an ``extra`` key.
    """

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info)
            }

        if self.include_extra:
            extra_fields = {
                key: value for key, value in record.__dict__.items()
                if key not in _STANDARD_RECORD_FIELDS
            }
            if extra_fields:
                log_entry["extra"] = extra_fields

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class ComponentFilter(logging.Filter):
    """Stamps static context (component name, worker id) on every record."""

    def __init__(self):
        super().__init__()
        self.context: Dict[str, Any] = {}

    def set_context(self, **kwargs):
        self.context.update(kwargs)

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in self.context.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class JobLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter carrying one job's context.

    Call-site ``extra`` values are merged over the job context instead of
    replacing it.
    """

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **kwargs) -> "JobLoggerAdapter":
        """Return a new adapter with additional context."""
        context = dict(self.extra or {})
        context.update(kwargs)
        return JobLoggerAdapter(self.logger, context)


def setup_logger(
    name: str,
    level: str = "INFO",
    structured: bool = True,
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Set up a logger with appropriate configuration.

    Args:
        name: Logger name
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        structured: Whether to use structured JSON logging
        log_file: Optional log file path

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(numeric_level)

    # Reconfiguring replaces previous handlers (the CLI may run setup twice)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if structured:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def set_log_context(logger: logging.Logger, **kwargs):
    """
    Attach static context (e.g. ``component="queue_consumer"``) to a logger.

    Args:
        logger: Logger instance
        **kwargs: Context variables to set
    """
    context_filter = getattr(logger, "context_filter", None)
    if context_filter is None:
        context_filter = ComponentFilter()
        logger.addFilter(context_filter)
        logger.context_filter = context_filter
    context_filter.set_context(**kwargs)


def job_logger(logger: logging.Logger, **context) -> JobLoggerAdapter:
    """
    Create a logger adapter bound to one job.

    Args:
        logger: Underlying logger
        **context: Job context (job_id, attempt, media kind...)

    Returns:
        Adapter that adds the context to every record
    """
    return JobLoggerAdapter(logger, context)
