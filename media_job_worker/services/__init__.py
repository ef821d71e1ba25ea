"""
Services package for the media job worker

Checkpoint persistence, status reporting, retry policies and the broker
transport. The queue consumer and health app live in their own modules.
"""

from .checkpoint_store import (
    CheckpointStore,
    InMemoryCheckpointStore,
    FileCheckpointStore,
    PostgresCheckpointStore,
    create_checkpoint_store
)
from .status_reporter import (
    StatusReporter,
    TelemetrySink,
    LoggingTelemetrySink,
    RedisTelemetrySink,
    create_telemetry_sink
)
from .fault_tolerance import RetryPolicy, RedeliveryPolicy, execute_with_retry, is_retryable
from .transport import Delivery, MessageTransport, RedisTransport

__all__ = [
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "FileCheckpointStore",
    "PostgresCheckpointStore",
    "create_checkpoint_store",
    "StatusReporter",
    "TelemetrySink",
    "LoggingTelemetrySink",
    "RedisTelemetrySink",
    "create_telemetry_sink",
    "RetryPolicy",
    "RedeliveryPolicy",
    "execute_with_retry",
    "is_retryable",
    "Delivery",
    "MessageTransport",
    "RedisTransport"
]
