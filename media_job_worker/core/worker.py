"""
MediaWorker: composes the worker process from configuration

Builds the checkpoint store, telemetry, stage providers, orchestrator,
broker transport and queue consumer, serves the health endpoint and maps
the shutdown outcome to a process exit code.
"""

import asyncio
import contextlib
import signal
from typing import Dict, List, Optional

import uvicorn

from ..stages import StageUnitProvider, FetchStage, TransformStage, PublishStage
from ..services.checkpoint_store import CheckpointStore, create_checkpoint_store
from ..services.status_reporter import StatusReporter, create_telemetry_sink
from ..services.fault_tolerance import RetryPolicy, RedeliveryPolicy, policy_from_stage_config
from ..services.transport import MessageTransport, RedisTransport
from ..services.queue_consumer import QueueConsumer
from ..services.health import create_health_app
from ..utils.config import WorkerConfig
from ..utils.database import DatabaseManager
from ..utils.logger import get_logger, set_log_context
from .orchestrator import PipelineOrchestrator
from .exceptions import ConfigurationError, JobWorkerError


EXIT_OK = 0
EXIT_ABANDONED = 1
EXIT_CONFIG_ERROR = 2


class HealthServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the worker."""

    def install_signal_handlers(self):
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def build_database(config: WorkerConfig) -> Optional[DatabaseManager]:
    if config.checkpoint.backend != "postgres":
        return None
    if not config.database.url:
        raise ConfigurationError("database.url", "required when checkpoint.backend is postgres")
    return DatabaseManager(
        config.database.url,
        min_size=config.database.pool_min_size,
        max_size=config.database.pool_max_size,
        command_timeout=config.database.command_timeout
    )


def build_transport(config: WorkerConfig, recover: bool = True) -> RedisTransport:
    broker = config.broker
    return RedisTransport(
        broker.redis_url,
        queue=broker.queue,
        consumer_id=broker.consumer_id,
        key_prefix=broker.key_prefix,
        poll_timeout=broker.poll_timeout,
        promote_interval=broker.promote_interval,
        recover_on_connect=recover
    )


def build_stages(config: WorkerConfig) -> List[StageUnitProvider]:
    """Stage providers in pipeline order."""
    fetch = config.stage("fetch")
    transform = config.stage("transform")
    publish = config.stage("publish")
    return [
        FetchStage(
            config.storage,
            resumable=fetch.resumable,
            watch_interval=fetch.watch_interval,
            unit_timeout=fetch.unit_timeout
        ),
        TransformStage(
            config.transcode,
            config.storage,
            resumable=transform.resumable,
            watch_interval=transform.watch_interval,
            unit_timeout=transform.unit_timeout
        ),
        PublishStage(
            config.catalog,
            config.transcode,
            resumable=publish.resumable,
            watch_interval=publish.watch_interval,
            unit_timeout=publish.unit_timeout
        ),
    ]


def build_retry_policies(config: WorkerConfig, stages: List[StageUnitProvider]) -> Dict[str, RetryPolicy]:
    return {stage.name: policy_from_stage_config(config.stage(stage.name)) for stage in stages}


class MediaWorker:
    """
    The worker process.

    Provides:
    - Composition of every service from one WorkerConfig
    - Signal-driven graceful shutdown
    - The in-process health server
    """

    def __init__(
        self,
        config: WorkerConfig,
        transport: Optional[MessageTransport] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        stages: Optional[List[StageUnitProvider]] = None
    ):
        """
        Initialize the worker.

        Args:
            config: Worker configuration
            transport: Optional transport (defaults to Redis from config)
            checkpoint_store: Optional checkpoint store (defaults to the configured backend)
            stages: Optional stage providers (defaults to fetch, transform, publish)
        """
        self.config = config
        self.database = None if checkpoint_store is not None else build_database(config)
        self.checkpoints = checkpoint_store or create_checkpoint_store(
            config.checkpoint.backend,
            directory=config.checkpoint.directory,
            database_manager=self.database
        )
        self.reporter = StatusReporter(create_telemetry_sink(
            config.telemetry.backend,
            config.telemetry.redis_url,
            config.telemetry.channel_prefix
        ))
        self.stages = stages if stages is not None else build_stages(config)
        self.orchestrator = PipelineOrchestrator(
            self.stages,
            self.checkpoints,
            self.reporter,
            retry_policies=build_retry_policies(config, self.stages)
        )
        self.transport = transport or build_transport(config)
        self.consumer = QueueConsumer(
            self.transport,
            self.orchestrator,
            self.reporter,
            self.checkpoints,
            redelivery=RedeliveryPolicy(
                nack_delay=config.broker.nack_delay,
                max_deliveries=config.broker.max_deliveries
            ),
            prefetch=config.broker.prefetch,
            shutdown_grace=config.broker.shutdown_grace,
            dead_letter_invalid=config.broker.dead_letter_invalid,
            clear_on_success=config.checkpoint.clear_on_success
        )

        self._shutdown_event = asyncio.Event()
        self._health_server: Optional[HealthServer] = None
        self._health_task: Optional[asyncio.Task] = None
        self._consume_task: Optional[asyncio.Task] = None

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="worker")

    def request_shutdown(self):
        """Signal handler: begin graceful shutdown."""
        if not self._shutdown_event.is_set():
            self.logger.info("Shutdown requested")
            self._shutdown_event.set()

    async def start(self):
        """Start all services."""
        self.logger.info("Starting MediaWorker", extra={
            "queue": self.config.broker.queue,
            "consumer_id": self.config.broker.consumer_id,
            "prefetch": self.config.broker.prefetch,
            "checkpoint_backend": self.config.checkpoint.backend
        })

        if self.database is not None:
            await self.database.initialize()
        await self.consumer.start()

        if self.config.health.enabled:
            app = create_health_app(self.consumer)
            self._health_server = HealthServer(uvicorn.Config(
                app,
                host=self.config.health.host,
                port=self.config.health.port,
                log_level="warning",
                lifespan="off"
            ))
            self._health_task = asyncio.create_task(self._health_server.serve())

    async def run(self) -> int:
        """
        Run until a shutdown signal arrives or the transport fails.

        Returns:
            Process exit code
        """
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_shutdown)

        try:
            await self.start()
        except JobWorkerError as e:
            self.logger.error("Worker failed to start", extra={"error": e.message})
            await self.stop()
            self._remove_signal_handlers(loop)
            return EXIT_ABANDONED

        consume_task = asyncio.create_task(self.consumer.consume())
        self._consume_task = consume_task
        shutdown_task = asyncio.create_task(self._shutdown_event.wait())
        done, _ = await asyncio.wait({consume_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)

        failed = False
        if consume_task in done and consume_task.exception() is not None:
            failed = True
            self.logger.error("Consumer stopped unexpectedly", exc_info=consume_task.exception())

        abandoned = await self.stop()

        shutdown_task.cancel()
        await asyncio.gather(consume_task, shutdown_task, return_exceptions=True)
        self._remove_signal_handlers(loop)

        if abandoned or failed:
            return EXIT_ABANDONED
        return EXIT_OK

    @staticmethod
    def _remove_signal_handlers(loop):
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    async def stop(self) -> int:
        """
        Stop all services.

        Returns:
            Number of jobs returned to the queue unfinished
        """
        self.logger.info("Stopping MediaWorker")

        abandoned = await self.consumer.shutdown()
        if self._consume_task is not None and not self._consume_task.done():
            # the receive loop exits after its current blocking poll
            await asyncio.wait({self._consume_task}, timeout=self.config.broker.poll_timeout + 1.0)
        await self.transport.close()

        for stage in self.stages:
            close = getattr(stage, "close", None)
            if close is not None:
                await close()

        await self.reporter.close()
        await self.checkpoints.close()

        if self._health_server is not None:
            self._health_server.should_exit = True
            await asyncio.gather(self._health_task, return_exceptions=True)
            self._health_server = None

        self.logger.info("MediaWorker stopped", extra={"abandoned_jobs": abandoned})
        return abandoned
