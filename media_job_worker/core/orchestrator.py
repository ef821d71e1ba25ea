"""
Pipeline orchestrator

Drives one job through its ordered stages, resuming each resumable stage
from its checkpoint, processing units strictly one at a time, persisting the
cursor after every unit and reporting status and progress.
"""

import asyncio
import time
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from ..models.job import Job, JobStatus
from ..models.execution import StageRun, StageSummary, PipelineResult, UnitRef
from ..stages.base import StageUnitProvider
from ..services.checkpoint_store import CheckpointStore, PROGRESS_KEY
from ..services.status_reporter import StatusReporter
from ..services.fault_tolerance import RetryPolicy, NO_RETRY, execute_with_retry
from ..utils.logger import get_logger, set_log_context
from ..utils import metrics
from .context import JobContext
from .watchdog import StallWatchdog
from .exceptions import (
    JobWorkerError,
    UnitError,
    UnitTimeoutError,
    CheckpointWriteError,
    PipelineError,
    PipelineInterrupted,
    error_registry
)


class PipelineOrchestrator:
    """
    Runs jobs through a fixed, ordered list of stage providers.

    The orchestrator never retries a job as a whole; a failed run raises
    PipelineError and redelivery is the queue consumer's business. Within a
    unit invocation the stage's RetryPolicy may retry transient errors.
    """

    def __init__(
        self,
        providers: Sequence[StageUnitProvider],
        checkpoint_store: CheckpointStore,
        status_reporter: StatusReporter,
        retry_policies: Optional[Dict[str, RetryPolicy]] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            providers: Stage providers in execution order
            checkpoint_store: Durable per-job cursors
            status_reporter: Telemetry emitter
            retry_policies: Optional per-stage retry policies
        """
        names = [provider.name for provider in providers]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate stage names: {names}")
        if PROGRESS_KEY in names:
            raise ValueError(f"stage name {PROGRESS_KEY!r} is reserved")

        self.providers: List[StageUnitProvider] = list(providers)
        self.checkpoints = checkpoint_store
        self.reporter = status_reporter
        self.retry_policies = dict(retry_policies or {})

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="orchestrator")

    @property
    def stage_names(self):
        return tuple(provider.name for provider in self.providers)

    def new_context(self, job: Job) -> JobContext:
        """Create the per-job context for a run."""
        if tuple(job.stages) != self.stage_names:
            job.stages = self.stage_names
        return JobContext.for_job(job)

    async def run(self, job: Job, ctx: Optional[JobContext] = None) -> PipelineResult:
        """
        Run a job's pipeline to completion.

        Args:
            job: Job to run
            ctx: Optional pre-built context (the consumer keeps a handle on it
                to request a stop at shutdown)

        Returns:
            PipelineResult summary

        Raises:
            PipelineError: If any stage fails; ``errored`` has been emitted
            PipelineInterrupted: If a stop was requested at a unit boundary
        """
        ctx = ctx or self.new_context(job)
        result = PipelineResult(job_id=job.job_id)

        ctx.logger.info("Starting pipeline", extra={
            "stages": list(self.stage_names),
            "media_name": job.media.name
        })
        await self._restore_progress(ctx)

        for provider in self.providers:
            ctx.current_stage = provider.name
            try:
                summary = await self._run_stage(ctx, provider)
            except PipelineInterrupted:
                ctx.logger.warning("Pipeline interrupted by shutdown", extra={
                    "stage": provider.name,
                    "unit_index": ctx.current_unit
                })
                raise
            except PipelineError as e:
                error_registry.record_error(e.cause)
                ctx.logger.error("Pipeline failed", extra={
                    "stage": e.stage,
                    "unit_index": e.unit_index,
                    "error": str(e.cause)
                })
                await self.reporter.emit_status(job.job_id, JobStatus.ERRORED, error=e)
                raise
            result.stages.append(summary)

        result.completed_at = datetime.utcnow()
        await self._report_progress(ctx, self.stage_names[-1] if self.providers else "pipeline", ctx.progress.finish())
        await self.reporter.emit_status(job.job_id, JobStatus.DONE)

        ctx.logger.info("Pipeline completed", extra={
            "processed_units": result.processed_units,
            "skipped_units": result.skipped_units,
            "duration_seconds": result.get_duration()
        })
        return result

    async def _run_stage(self, ctx: JobContext, provider: StageUnitProvider) -> StageSummary:
        """Run one stage from its resume point."""
        job_id = ctx.job_id
        stage = provider.name

        await self.reporter.emit_status(job_id, provider.status)

        try:
            units = await provider.enumerate_units(ctx)
        except Exception as e:
            raise PipelineError(job_id, stage, None, self._as_unit_error(stage, None, e))

        cursor = 0
        if provider.resumable:
            try:
                cursor = await self.checkpoints.get(job_id, stage)
            except Exception as e:
                raise PipelineError(job_id, stage, None, e)
        else:
            # all-or-nothing stages only record completion of the whole stage
            try:
                done = await self.checkpoints.get(job_id, stage)
            except Exception as e:
                raise PipelineError(job_id, stage, None, e)
            if units and done >= len(units):
                cursor = done

        run = StageRun(stage=stage, units=units, cursor=cursor, resumable=provider.resumable)
        ctx.progress.enumerate_stage(stage, run.total, completed=run.cursor)

        ctx.logger.info("Stage started", extra={
            "stage": stage,
            "total_units": run.total,
            "cursor": run.cursor,
            "resumable": provider.resumable
        })

        if run.cursor > 0:
            ctx.logger.info("Resuming stage from checkpoint", extra={
                "stage": stage,
                "cursor": run.cursor,
                "skipped_units": run.skipped
            })
            await self._report_progress(ctx, stage, ctx.progress.percent())

        if not run.is_complete:
            self._check_stop(ctx, stage, run.cursor)
            try:
                await execute_with_retry(
                    lambda: provider.prepare(ctx, run),
                    self.retry_policies.get(stage, NO_RETRY),
                    description=f"{stage} prepare"
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                raise PipelineError(job_id, stage, run.cursor, self._as_unit_error(stage, None, e))

        for index, unit in run.remaining():
            self._check_stop(ctx, stage, index)
            ctx.current_unit = index

            await self._process_unit(ctx, provider, index, unit)

            if provider.resumable:
                try:
                    await self.checkpoints.set(job_id, stage, index + 1)
                except CheckpointWriteError as e:
                    metrics.UNITS_TOTAL.labels(stage=stage, outcome="checkpoint_failed").inc()
                    raise PipelineError(job_id, stage, index, e)
                except Exception as e:
                    metrics.UNITS_TOTAL.labels(stage=stage, outcome="checkpoint_failed").inc()
                    raise PipelineError(job_id, stage, index, CheckpointWriteError(job_id, stage, index + 1, str(e)))

            run.advance(index)
            ctx.progress.complete_unit(stage)
            await self._report_progress(ctx, stage, ctx.progress.percent())

        if not provider.resumable and run.processed > 0:
            try:
                await self.checkpoints.set(job_id, stage, run.total)
            except Exception as e:
                raise PipelineError(job_id, stage, None, e)

        ctx.progress.complete_stage(stage)
        ctx.current_unit = None

        ctx.logger.info("Stage completed", extra={
            "stage": stage,
            "processed_units": run.processed,
            "skipped_units": run.skipped
        })

        return StageSummary(
            stage=stage,
            total_units=run.total,
            processed_units=run.processed,
            skipped_units=run.skipped
        )

    async def _process_unit(self, ctx: JobContext, provider: StageUnitProvider, index: int, unit: UnitRef):
        """Invoke one unit under retry policy, stall watchdog and time budget."""
        stage = provider.name
        policy = self.retry_policies.get(stage, NO_RETRY)
        started = time.monotonic()

        ctx.logger.info("Processing unit", extra={
            "stage": stage,
            "unit_index": index,
            "unit": unit.key
        })

        async def attempt():
            watchdog = None
            if provider.watch_interval:
                watchdog = StallWatchdog(provider.watch_interval, stage, unit.key)
                call = watchdog.watch(provider.process_unit(ctx, unit, watchdog.beat))
            else:
                call = provider.process_unit(ctx, unit, _ignore_progress)

            if provider.unit_timeout:
                try:
                    return await asyncio.wait_for(call, timeout=provider.unit_timeout)
                except asyncio.TimeoutError:
                    raise UnitTimeoutError(stage, unit.key, provider.unit_timeout)
            return await call

        try:
            await execute_with_retry(attempt, policy, description=f"{stage} unit {unit.key}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            metrics.UNITS_TOTAL.labels(stage=stage, outcome="failed").inc()
            raise PipelineError(ctx.job_id, stage, index, self._as_unit_error(stage, unit.key, e))

        elapsed = time.monotonic() - started
        metrics.UNITS_TOTAL.labels(stage=stage, outcome="completed").inc()
        metrics.UNIT_DURATION.labels(stage=stage).observe(elapsed)

        ctx.logger.info("Unit completed", extra={
            "stage": stage,
            "unit_index": index,
            "unit": unit.key,
            "elapsed_seconds": round(elapsed, 3)
        })

    async def _restore_progress(self, ctx: JobContext):
        """Start from the highest percent an earlier attempt reported."""
        try:
            stored = await self.checkpoints.get_progress(ctx.job_id)
        except Exception as e:
            ctx.logger.warning("Could not read stored progress", extra={"error": str(e)})
            return
        ctx.progress.restore(stored)

    async def _report_progress(self, ctx: JobContext, stage: str, percent: int):
        """Persist a new high-water percent, then emit it."""
        if percent > ctx.progress.persisted:
            try:
                await self.checkpoints.set_progress(ctx.job_id, percent)
                ctx.progress.persisted = percent
            except Exception as e:
                ctx.logger.warning("Could not persist progress", extra={
                    "stage": stage,
                    "percent": percent,
                    "error": str(e)
                })
        await self.reporter.emit_progress(ctx.job_id, stage, percent)

    @staticmethod
    def _check_stop(ctx: JobContext, stage: str, index: int):
        if ctx.stop_requested:
            raise PipelineInterrupted(ctx.job_id, stage, index)

    @staticmethod
    def _as_unit_error(stage: str, unit: Optional[str], error: BaseException) -> JobWorkerError:
        if isinstance(error, JobWorkerError):
            return error
        return UnitError(stage, unit, f"{error.__class__.__name__}: {error}")


def _ignore_progress(_value=None):
    pass
