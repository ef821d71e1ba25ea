"""
Exception classes for the media job worker

Provides the hierarchy of errors raised while decoding job messages,
running pipeline stages, persisting checkpoints and reporting telemetry.
"""

from typing import Optional, Dict, Any


class JobWorkerError(Exception):
    """Base exception for all media job worker errors."""

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


class ValidationError(JobWorkerError):
    """Raised when an inbound job message fails schema validation."""

    def __init__(self, field: str, message: str, value: Any = None):
        super().__init__(
            f"Validation error for {field}: {message}",
            error_code="VALIDATION_ERROR",
            details={"field": field, "value": str(value) if value is not None else None}
        )


class UnitError(JobWorkerError):
    """Raised when a single stage unit fails."""

    def __init__(
        self,
        stage: str,
        unit: Optional[str],
        message: str,
        retryable: bool = False,
        error_code: str = "UNIT_ERROR"
    ):
        super().__init__(
            f"Unit {unit!r} of stage '{stage}' failed: {message}",
            error_code=error_code,
            details={"stage": stage, "unit": unit, "retryable": retryable}
        )
        self.stage = stage
        self.unit = unit
        self.reason = message
        self.retryable = retryable


class StalledError(UnitError):
    """Raised when a unit reports no progress within its watch window."""

    def __init__(self, stage: str, unit: Optional[str], idle_seconds: float):
        super().__init__(
            stage,
            unit,
            f"no progress for {idle_seconds:.1f} seconds",
            error_code="UNIT_STALLED"
        )
        self.idle_seconds = idle_seconds


class UnitTimeoutError(UnitError):
    """Raised when a unit exceeds its total time budget."""

    def __init__(self, stage: str, unit: Optional[str], timeout_seconds: float):
        super().__init__(
            stage,
            unit,
            f"timed out after {timeout_seconds} seconds",
            error_code="UNIT_TIMEOUT"
        )
        self.timeout_seconds = timeout_seconds


class CheckpointWriteError(UnitError):
    """Raised when a checkpoint could not be persisted after a unit completed."""

    def __init__(self, job_id: str, stage: str, cursor: int, message: str):
        super().__init__(
            stage,
            None,
            f"checkpoint write for job {job_id} (cursor={cursor}) failed: {message}",
            error_code="CHECKPOINT_WRITE_ERROR"
        )
        self.job_id = job_id
        self.cursor = cursor


class TelemetryError(JobWorkerError):
    """Raised by telemetry sinks. Never propagates to a job outcome."""

    def __init__(self, sink: str, message: str):
        super().__init__(
            f"Telemetry sink '{sink}' failed: {message}",
            error_code="TELEMETRY_ERROR",
            details={"sink": sink}
        )


class PipelineError(JobWorkerError):
    """Raised when a job's pipeline fails at a given stage and unit."""

    def __init__(self, job_id: str, stage: str, unit_index: Optional[int], cause: BaseException):
        where = f"stage '{stage}'" if unit_index is None else f"stage '{stage}' unit {unit_index}"
        super().__init__(
            f"Job {job_id} failed at {where}: {cause}",
            error_code="PIPELINE_ERROR",
            details={
                "job_id": job_id,
                "stage": stage,
                "unit_index": unit_index,
                "cause": cause.__class__.__name__
            }
        )
        self.job_id = job_id
        self.stage = stage
        self.unit_index = unit_index
        self.cause = cause

    @property
    def code(self) -> str:
        """Error code of the underlying cause, used in telemetry."""
        return getattr(self.cause, "error_code", None) or "ERRNOCODE"


class PipelineInterrupted(JobWorkerError):
    """Raised at a unit boundary when the worker is shutting down."""

    def __init__(self, job_id: str, stage: str, unit_index: int):
        super().__init__(
            f"Job {job_id} interrupted before stage '{stage}' unit {unit_index}",
            error_code="PIPELINE_INTERRUPTED",
            details={"job_id": job_id, "stage": stage, "unit_index": unit_index}
        )
        self.job_id = job_id
        self.stage = stage
        self.unit_index = unit_index


class ConfigurationError(JobWorkerError):
    """Raised when there's an error in configuration."""

    def __init__(self, config_key: str, message: str):
        super().__init__(
            f"Configuration error for {config_key}: {message}",
            error_code="CONFIGURATION_ERROR",
            details={"config_key": config_key}
        )


class DatabaseError(JobWorkerError):
    """Raised when database operations fail."""

    def __init__(self, operation: str, message: str, table: Optional[str] = None):
        super().__init__(
            f"Database operation '{operation}' failed: {message}",
            error_code="DATABASE_ERROR",
            details={"operation": operation, "table": table}
        )


class QueueError(JobWorkerError):
    """Raised when message transport operations fail."""

    def __init__(self, operation: str, message: str):
        super().__init__(
            f"Queue operation '{operation}' failed: {message}",
            error_code="QUEUE_ERROR",
            details={"operation": operation}
        )


class ErrorRegistry:
    """Counts errors by type for the health report."""

    def __init__(self):
        self.error_counts: Dict[str, int] = {}

    def record_error(self, error: BaseException):
        """Record an error for analysis."""
        error_type = error.__class__.__name__
        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

    def get_error_statistics(self) -> Dict[str, Any]:
        """Get error statistics for monitoring."""
        return {
            "total_errors": sum(self.error_counts.values()),
            "error_counts": dict(self.error_counts),
            "most_common_error": max(self.error_counts.items(), key=lambda x: x[1])[0] if self.error_counts else None
        }

    def reset(self):
        self.error_counts.clear()


# Process-wide error statistics
error_registry = ErrorRegistry()
