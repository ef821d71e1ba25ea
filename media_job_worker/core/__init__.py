"""
Core package for the media job worker

Contains the pipeline orchestrator, per-job context, stall watchdog and the
worker bootstrap. Only the exception hierarchy is re-exported here; import
the orchestrator and worker from their modules.
"""

from .exceptions import (
    JobWorkerError,
    ValidationError,
    UnitError,
    StalledError,
    UnitTimeoutError,
    CheckpointWriteError,
    TelemetryError,
    PipelineError,
    PipelineInterrupted,
    ConfigurationError,
    DatabaseError,
    QueueError,
    error_registry
)

__all__ = [
    "JobWorkerError",
    "ValidationError",
    "UnitError",
    "StalledError",
    "UnitTimeoutError",
    "CheckpointWriteError",
    "TelemetryError",
    "PipelineError",
    "PipelineInterrupted",
    "ConfigurationError",
    "DatabaseError",
    "QueueError",
    "error_registry"
]
