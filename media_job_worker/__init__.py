"""
Media Job Worker

A queue-driven worker that takes "new media" jobs through fetch, transform
and publish stages, checkpointing after every file so a crashed or
redelivered job resumes where it stopped instead of starting over.

Usage:
    from media_job_worker import MediaWorker, load_config

    config = load_config("worker.yaml")
    worker = MediaWorker(config)
    exit_code = await worker.run()

Or run the pipeline directly with custom stages:

    from media_job_worker import PipelineOrchestrator, InMemoryCheckpointStore
    from media_job_worker import StatusReporter, LoggingTelemetrySink, decode_job

    orchestrator = PipelineOrchestrator(
        stages,
        InMemoryCheckpointStore(),
        StatusReporter(LoggingTelemetrySink())
    )
    result = await orchestrator.run(decode_job(message_body))
"""

__version__ = "1.0.0"
__license__ = "MIT"

# Exceptions
from .core.exceptions import (
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
    QueueError
)

# Data models
from .models.job import Job, JobMessage, JobStatus, MediaKind, PIPELINE_STAGES, decode_job
from .models.execution import UnitRef, StageRun, JobProgress, PipelineResult

# Core pipeline
from .core.orchestrator import PipelineOrchestrator
from .core.context import JobContext

# Stages
from .stages import StageUnitProvider, FetchStage, TransformStage, PublishStage

# Services
from .services.checkpoint_store import (
    CheckpointStore,
    InMemoryCheckpointStore,
    FileCheckpointStore,
    PostgresCheckpointStore
)
from .services.status_reporter import StatusReporter, LoggingTelemetrySink, RedisTelemetrySink
from .services.fault_tolerance import RetryPolicy, RedeliveryPolicy
from .services.transport import MessageTransport, RedisTransport, Delivery
from .services.queue_consumer import QueueConsumer

# Worker
from .core.worker import MediaWorker

# Utilities
from .utils.config import WorkerConfig, load_config
from .utils.database import DatabaseManager
from .utils.logger import setup_logger, get_logger

__all__ = [
    # Exceptions
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

    # Models
    "Job",
    "JobMessage",
    "JobStatus",
    "MediaKind",
    "PIPELINE_STAGES",
    "decode_job",
    "UnitRef",
    "StageRun",
    "JobProgress",
    "PipelineResult",

    # Core
    "PipelineOrchestrator",
    "JobContext",
    "MediaWorker",

    # Stages
    "StageUnitProvider",
    "FetchStage",
    "TransformStage",
    "PublishStage",

    # Services
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "FileCheckpointStore",
    "PostgresCheckpointStore",
    "StatusReporter",
    "LoggingTelemetrySink",
    "RedisTelemetrySink",
    "RetryPolicy",
    "RedeliveryPolicy",
    "MessageTransport",
    "RedisTransport",
    "Delivery",
    "QueueConsumer",

    # Utilities
    "WorkerConfig",
    "load_config",
    "DatabaseManager",
    "setup_logger",
    "get_logger",

    # Package metadata
    "__version__",
    "__license__"
]

# Package-level configuration
import logging
logging.getLogger(__name__).addHandler(logging.NullHandler())
