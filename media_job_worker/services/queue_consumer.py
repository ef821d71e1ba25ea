"""
QueueConsumer service for the media job worker

Binds the message transport to the pipeline orchestrator and owns the
acknowledgment contract: ack on success, nack with a delay on failure,
dead-letter once the redelivery cap is reached.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..models.job import Job, JobStatus, decode_job
from ..core.context import JobContext
from ..core.orchestrator import PipelineOrchestrator
from ..core.exceptions import (
    ValidationError,
    PipelineError,
    PipelineInterrupted,
    error_registry
)
from .transport import Delivery, MessageTransport
from .status_reporter import StatusReporter
from .checkpoint_store import CheckpointStore
from .fault_tolerance import RedeliveryPolicy
from ..utils.logger import get_logger, set_log_context
from ..utils import metrics


@dataclass
class InFlightJob:
    job: Job
    ctx: JobContext
    delivery: Delivery
    task: Optional[asyncio.Task] = None
    started_at: datetime = field(default_factory=datetime.utcnow)
    settled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job.job_id,
            "attempt": self.job.attempt,
            "stage": self.ctx.current_stage,
            "unit_index": self.ctx.current_unit,
            "percent": self.ctx.progress.last_reported,
            "started_at": self.started_at.isoformat(),
        }


class QueueConsumer:
    """
    Consumes job messages and runs them through the pipeline.

    Provides capabilities for:
    - Decoding and rejecting malformed messages
    - Dispatching jobs to the orchestrator
    - Settling deliveries by outcome
    - Graceful shutdown with redelivery of unfinished jobs
    """

    def __init__(
        self,
        transport: MessageTransport,
        orchestrator: PipelineOrchestrator,
        status_reporter: StatusReporter,
        checkpoint_store: CheckpointStore,
        redelivery: Optional[RedeliveryPolicy] = None,
        prefetch: int = 1,
        shutdown_grace: float = 10.0,
        dead_letter_invalid: bool = False,
        clear_on_success: bool = False
    ):
        """
        Initialize QueueConsumer.

        Args:
            transport: Broker transport
            orchestrator: Pipeline orchestrator
            status_reporter: Telemetry emitter
            checkpoint_store: Checkpoints, cleared after a successful job
            redelivery: Nack delay and dead-letter cap
            prefetch: Maximum jobs in flight
            shutdown_grace: Seconds to wait for in-flight jobs at shutdown
            dead_letter_invalid: Dead-letter malformed messages instead of dropping them
            clear_on_success: Clear a job's checkpoints once it is acked
        """
        self.transport = transport
        self.orchestrator = orchestrator
        self.reporter = status_reporter
        self.checkpoints = checkpoint_store
        self.redelivery = redelivery or RedeliveryPolicy()
        self.prefetch = prefetch
        self.shutdown_grace = shutdown_grace
        self.dead_letter_invalid = dead_letter_invalid
        self.clear_on_success = clear_on_success

        self._in_flight: Dict[str, InFlightJob] = {}
        self._accepting = False
        self._shutting_down = False
        self._abandoned = 0

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="queue_consumer")

    @property
    def accepting(self) -> bool:
        return self._accepting

    @property
    def in_flight(self) -> List[InFlightJob]:
        return list(self._in_flight.values())

    async def start(self):
        """Connect the transport."""
        self.logger.info("Starting QueueConsumer")
        await self.transport.connect()
        self._accepting = True

    async def consume(self):
        """Consume until the transport is cancelled."""
        await self.transport.consume(self.handle_delivery, prefetch=self.prefetch)

    async def handle_delivery(self, delivery: Delivery):
        """
        Process one delivery end to end.

        Args:
            delivery: Message delivered by the transport
        """
        try:
            job = decode_job(delivery.body, attempt=delivery.attempt)
        except ValidationError as e:
            await self._reject(delivery, e)
            return

        if not self._accepting:
            await self.transport.nack(delivery, delay=0)
            return

        entry = InFlightJob(
            job=job,
            ctx=self.orchestrator.new_context(job),
            delivery=delivery,
            task=asyncio.current_task()
        )
        self._in_flight[delivery.tag] = entry
        metrics.JOBS_IN_FLIGHT.inc()

        self.logger.info("Job received", extra={
            "job_id": job.job_id,
            "message_id": delivery.id,
            "attempt": delivery.attempt
        })

        try:
            await self.reporter.emit_status(job.job_id, JobStatus.QUEUED)
            await self.orchestrator.run(job, entry.ctx)
        except PipelineInterrupted:
            await self._abandon(entry)
        except PipelineError as e:
            await self._fail(entry, e)
        else:
            await self._succeed(entry)
        finally:
            self._in_flight.pop(delivery.tag, None)
            metrics.JOBS_IN_FLIGHT.dec()

    async def _reject(self, delivery: Delivery, error: ValidationError):
        error_registry.record_error(error)
        metrics.JOBS_TOTAL.labels(outcome="rejected").inc()
        self.logger.warning("Rejected malformed message", extra={
            "message_id": delivery.id,
            "attempt": delivery.attempt,
            "error": error.message
        })

        if self.dead_letter_invalid:
            await self.transport.dead_letter(delivery, reason=f"invalid message: {error.message}")
        else:
            await self.transport.ack(delivery)

    async def _succeed(self, entry: InFlightJob):
        if entry.settled:
            return
        entry.settled = True
        await self.transport.ack(entry.delivery)
        metrics.JOBS_TOTAL.labels(outcome="acked").inc()

        if self.clear_on_success:
            try:
                await self.checkpoints.clear(entry.job.job_id)
            except Exception as e:
                self.logger.warning("Failed to clear checkpoints", extra={
                    "job_id": entry.job.job_id,
                    "error": str(e)
                })

        self.logger.info("Job acknowledged", extra={"job_id": entry.job.job_id})

    async def _fail(self, entry: InFlightJob, error: PipelineError):
        if entry.settled:
            return
        entry.settled = True
        job_id = entry.job.job_id
        attempt = entry.delivery.attempt

        if self.redelivery.should_dead_letter(attempt):
            await self.transport.dead_letter(entry.delivery, reason=f"{error.code}: {error.cause}")
            metrics.JOBS_TOTAL.labels(outcome="dead_lettered").inc()
            self.logger.error("Job dead-lettered after repeated failures", extra={
                "job_id": job_id,
                "attempt": attempt,
                "stage": error.stage
            })
            return

        await self.transport.nack(entry.delivery, delay=self.redelivery.nack_delay)
        metrics.JOBS_TOTAL.labels(outcome="requeued").inc()
        self.logger.warning("Job failed, requeued", extra={
            "job_id": job_id,
            "attempt": attempt,
            "stage": error.stage,
            "unit_index": error.unit_index,
            "delay_seconds": self.redelivery.nack_delay
        })

    async def _abandon(self, entry: InFlightJob):
        if entry.settled:
            return
        entry.settled = True
        await self.transport.nack(entry.delivery, delay=0)
        metrics.JOBS_TOTAL.labels(outcome="abandoned").inc()
        if self._shutting_down:
            self._abandoned += 1
        self.logger.warning("Job returned to queue unfinished", extra={
            "job_id": entry.job.job_id,
            "stage": entry.ctx.current_stage,
            "unit_index": entry.ctx.current_unit
        })

    async def shutdown(self) -> int:
        """
        Stop consuming and hand unfinished jobs back to the broker.

        In-flight jobs are asked to stop at their next unit boundary and given
        ``shutdown_grace`` seconds; whatever is still running is nacked.

        Returns:
            Number of jobs returned to the queue unfinished
        """
        self.logger.info("Stopping QueueConsumer", extra={"in_flight": len(self._in_flight)})
        self._accepting = False
        self._shutting_down = True
        await self.transport.cancel()

        entries = list(self._in_flight.values())
        for entry in entries:
            entry.ctx.request_stop()

        tasks = [entry.task for entry in entries if entry.task is not None and not entry.task.done()]
        if tasks:
            await asyncio.wait(tasks, timeout=self.shutdown_grace)

        for entry in list(self._in_flight.values()):
            await self._abandon(entry)
            if entry.task is not None and not entry.task.done():
                entry.task.cancel()

        abandoned = self._abandoned
        self.logger.info("QueueConsumer stopped", extra={"abandoned": abandoned})
        return abandoned

    def health_snapshot(self) -> Dict[str, Any]:
        return {
            "accepting": self._accepting,
            "in_flight": len(self._in_flight),
            "jobs": [entry.to_dict() for entry in self._in_flight.values()],
        }
