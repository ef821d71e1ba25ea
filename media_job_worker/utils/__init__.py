"""
Utilities package for the media job worker

Logging, configuration, metrics and database access.
"""

from .database import DatabaseManager
from .logger import setup_logger, get_logger, set_log_context, job_logger
from .config import WorkerConfig, load_config

__all__ = [
    "DatabaseManager",
    "setup_logger",
    "get_logger",
    "set_log_context",
    "job_logger",
    "WorkerConfig",
    "load_config"
]
