"""
Tests for the pipeline orchestrator: resume, ordering, progress and failure handling
"""

import pytest

from media_job_worker.core.exceptions import (
    CheckpointWriteError,
    PipelineError,
    PipelineInterrupted,
    StalledError,
    UnitError,
    UnitTimeoutError
)
from media_job_worker.core.orchestrator import PipelineOrchestrator
from media_job_worker.models.job import JobStatus, decode_job
from media_job_worker.services.checkpoint_store import PROGRESS_KEY, InMemoryCheckpointStore
from media_job_worker.services.fault_tolerance import RetryPolicy
from media_job_worker.services.status_reporter import StatusReporter

from tests.fakes import FakeStage, RecordingSink, job_message


def make_job(job_id="job-1", attempt=1):
    return decode_job(job_message(job_id), attempt=attempt)


def assert_monotonic(values):
    assert values == sorted(values), f"progress regressed: {values}"


class FailingCheckpointStore(InMemoryCheckpointStore):
    def __init__(self, fail_stage):
        super().__init__()
        self.fail_stage = fail_stage

    async def set(self, job_id, stage, cursor):
        if stage == self.fail_stage:
            raise CheckpointWriteError(job_id, stage, cursor, "disk full")
        await super().set(job_id, stage, cursor)


class TestPipelineHappyPath:
    """Full runs without failures"""

    @pytest.mark.asyncio
    async def test_runs_every_unit_in_order(self, make_stages, checkpoints, reporter, sink):
        stages = make_stages(fetch=("c", "a", "b"))
        orchestrator = PipelineOrchestrator(stages, checkpoints, reporter)

        result = await orchestrator.run(make_job())

        assert stages[0].calls == ["a", "b", "c"]
        assert stages[1].calls == ["a"]
        assert stages[2].calls == ["a"]
        assert result.processed_units == 5
        assert result.skipped_units == 0

    @pytest.mark.asyncio
    async def test_status_sequence_and_final_progress(self, make_stages, checkpoints, reporter, sink):
        orchestrator = PipelineOrchestrator(make_stages(), checkpoints, reporter)

        await orchestrator.run(make_job())

        assert sink.statuses() == ["fetching", "transforming", "publishing", "done"]
        percents = sink.percents()
        assert_monotonic(percents)
        assert percents[-1] == 100
        assert all(0 <= p <= 100 for p in percents)

    @pytest.mark.asyncio
    async def test_prepare_runs_once_per_stage(self, make_stages, checkpoints, reporter):
        stages = make_stages(publish=("a", "b"))
        orchestrator = PipelineOrchestrator(stages, checkpoints, reporter)

        await orchestrator.run(make_job())

        assert [stage.prepare_calls for stage in stages] == [1, 1, 1]

    @pytest.mark.asyncio
    async def test_checkpoints_hold_stage_cursors(self, make_stages, checkpoints, reporter):
        orchestrator = PipelineOrchestrator(make_stages(), checkpoints, reporter)

        await orchestrator.run(make_job())

        assert await checkpoints.get_all("job-1") == {"fetch": 3, "transform": 1, "publish": 1, PROGRESS_KEY: 100}

    @pytest.mark.asyncio
    async def test_empty_stage_still_completes(self, make_stages, checkpoints, reporter, sink):
        stages = make_stages(fetch=(), transform=(), publish=())
        orchestrator = PipelineOrchestrator(stages, checkpoints, reporter)

        result = await orchestrator.run(make_job())

        assert result.processed_units == 0
        assert sink.statuses()[-1] == "done"
        assert sink.percents()[-1] == 100
        assert stages[2].prepare_calls == 0

    @pytest.mark.asyncio
    async def test_telemetry_failure_does_not_fail_job(self, make_stages, checkpoints):
        reporter = StatusReporter(RecordingSink(fail=True))
        orchestrator = PipelineOrchestrator(make_stages(), checkpoints, reporter)

        result = await orchestrator.run(make_job())

        assert result.processed_units == 5

    def test_duplicate_stage_names_rejected(self, checkpoints, reporter):
        stages = [
            FakeStage("fetch", JobStatus.FETCHING, ["a"]),
            FakeStage("fetch", JobStatus.FETCHING, ["b"]),
        ]
        with pytest.raises(ValueError):
            PipelineOrchestrator(stages, checkpoints, reporter)

    def test_reserved_stage_name_rejected(self, checkpoints, reporter):
        with pytest.raises(ValueError):
            PipelineOrchestrator([FakeStage(PROGRESS_KEY, JobStatus.FETCHING, ["a"])], checkpoints, reporter)


class TestResume:
    """Checkpoint-based resume after failures and redeliveries"""

    @pytest.mark.asyncio
    async def test_fetch_failure_then_resume(self, make_stages, checkpoints, reporter, sink):
        stages = make_stages(fetch_options={"failures": {"b": 1}})
        orchestrator = PipelineOrchestrator(stages, checkpoints, reporter)

        with pytest.raises(PipelineError) as exc_info:
            await orchestrator.run(make_job())

        assert exc_info.value.stage == "fetch"
        assert exc_info.value.unit_index == 1
        assert await checkpoints.get("job-1", "fetch") == 1
        assert sink.statuses()[-1] == "errored"
        assert stages[1].calls == []

        await orchestrator.run(make_job(attempt=2))

        assert stages[0].calls == ["a", "b", "b", "c"]
        assert stages[1].calls == ["a"]
        assert stages[2].calls == ["a"]
        assert sink.statuses()[-1] == "done"

        percents = sink.percents()
        assert_monotonic(percents)
        assert percents[-1] == 100

    @pytest.mark.asyncio
    async def test_failed_unit_is_never_skipped(self, make_stages, checkpoints, reporter):
        stages = make_stages(fetch_options={"failures": {"b": 5}})
        orchestrator = PipelineOrchestrator(stages, checkpoints, reporter)

        for attempt in range(1, 4):
            with pytest.raises(PipelineError) as exc_info:
                await orchestrator.run(make_job(attempt=attempt))
            assert exc_info.value.unit_index == 1
            assert await checkpoints.get("job-1", "fetch") == 1

        assert "c" not in stages[0].calls
        assert stages[0].calls == ["a", "b", "b", "b"]

    @pytest.mark.asyncio
    async def test_resumed_run_reports_skipped_units(self, make_stages, checkpoints, reporter, sink):
        await checkpoints.set("job-1", "fetch", 2)
        stages = make_stages()
        orchestrator = PipelineOrchestrator(stages, checkpoints, reporter)

        result = await orchestrator.run(make_job())

        assert stages[0].calls == ["c"]
        assert result.stages[0].skipped_units == 2
        assert result.stages[0].processed_units == 1
        # resume progress is emitted before the first new unit
        assert sink.events[1] == ("progress", "job-1", "fetch", 22)

    @pytest.mark.asyncio
    async def test_cursor_beyond_unit_count_is_clamped(self, make_stages, checkpoints, reporter):
        await checkpoints.set("job-1", "fetch", 10)
        stages = make_stages()
        orchestrator = PipelineOrchestrator(stages, checkpoints, reporter)

        result = await orchestrator.run(make_job())

        assert stages[0].calls == []
        assert result.stages[0].skipped_units == 3
        assert stages[1].calls == ["a"]

    @pytest.mark.asyncio
    async def test_redelivery_after_success_does_no_work(self, make_stages, checkpoints, reporter, sink):
        stages = make_stages()
        orchestrator = PipelineOrchestrator(stages, checkpoints, reporter)

        await orchestrator.run(make_job())
        await orchestrator.run(make_job(attempt=2))

        assert stages[0].calls == ["a", "b", "c"]
        assert stages[1].calls == ["a"]
        assert stages[2].calls == ["a"]
        assert sink.statuses().count("done") == 2

    @pytest.mark.asyncio
    async def test_non_resumable_stage_repeats_from_start(self, make_stages, checkpoints, reporter):
        stages = make_stages(publish=("a", "b"), publish_options={"resumable": False, "failures": {"b": 1}})
        orchestrator = PipelineOrchestrator(stages, checkpoints, reporter)

        with pytest.raises(PipelineError):
            await orchestrator.run(make_job())
        assert await checkpoints.get("job-1", "publish") == 0

        await orchestrator.run(make_job(attempt=2))

        assert stages[2].calls == ["a", "b", "a", "b"]
        assert stages[2].prepare_calls == 2
        assert stages[0].calls == ["a", "b", "c"]
        assert await checkpoints.get("job-1", "publish") == 2

    @pytest.mark.asyncio
    async def test_progress_monotonic_across_transform_failure(self, make_stages, checkpoints, reporter, sink):
        stages = make_stages(transform=("a", "b"), transform_options={"failures": {"b": 1}})
        orchestrator = PipelineOrchestrator(stages, checkpoints, reporter)

        with pytest.raises(PipelineError):
            await orchestrator.run(make_job())
        await orchestrator.run(make_job(attempt=2))

        assert_monotonic(sink.percents())
        assert stages[1].calls == ["a", "b", "b"]

    @pytest.mark.asyncio
    async def test_progress_monotonic_across_publish_failure(self, make_stages, checkpoints, reporter, sink):
        stages = make_stages(publish=("a", "b"), publish_options={"resumable": False, "failures": {"b": 1}})

        with pytest.raises(PipelineError):
            await PipelineOrchestrator(stages, checkpoints, reporter).run(make_job())
        reached = sink.percents()[-1]
        assert await checkpoints.get_progress("job-1") == reached

        # a fresh worker process picks the job up on redelivery
        await PipelineOrchestrator(stages, checkpoints, reporter).run(make_job(attempt=2))

        percents = sink.percents()
        assert_monotonic(percents)
        assert reached == 83
        assert percents[-1] == 100
        assert stages[2].calls == ["a", "b", "a", "b"]

    @pytest.mark.asyncio
    async def test_progress_resumes_from_stored_high_water(self, make_stages, checkpoints, reporter, sink):
        await checkpoints.set("job-1", "fetch", 2)
        await checkpoints.set_progress("job-1", 60)
        orchestrator = PipelineOrchestrator(make_stages(), checkpoints, reporter)

        await orchestrator.run(make_job(attempt=2))

        percents = sink.percents()
        assert percents[0] == 60
        assert min(percents) == 60
        assert_monotonic(percents)

    @pytest.mark.asyncio
    async def test_progress_write_failure_does_not_fail_job(self, make_stages, reporter, sink):
        orchestrator = PipelineOrchestrator(make_stages(), FailingCheckpointStore(PROGRESS_KEY), reporter)

        result = await orchestrator.run(make_job())

        assert result.processed_units == 5
        assert sink.percents()[-1] == 100


class TestFailures:
    """Fail-fast behavior, watchdog and time budget"""

    @pytest.mark.asyncio
    async def test_errored_emitted_with_error_event(self, make_stages, checkpoints, reporter, sink):
        stages = make_stages(transform_options={"failures": {"a": 1}})
        orchestrator = PipelineOrchestrator(stages, checkpoints, reporter)

        with pytest.raises(PipelineError) as exc_info:
            await orchestrator.run(make_job())

        assert isinstance(exc_info.value.cause, UnitError)
        errors = [e for e in sink.events if e[0] == "error"]
        assert len(errors) == 1
        assert errors[0][2] == "transform"
        assert errors[0][3]["code"] == "UNIT_ERROR"
        assert stages[2].calls == []

    @pytest.mark.asyncio
    async def test_checkpoint_write_failure_fails_unit(self, make_stages, reporter, sink):
        stages = make_stages()
        orchestrator = PipelineOrchestrator(stages, FailingCheckpointStore("fetch"), reporter)

        with pytest.raises(PipelineError) as exc_info:
            await orchestrator.run(make_job())

        assert isinstance(exc_info.value.cause, CheckpointWriteError)
        assert exc_info.value.unit_index == 0
        assert stages[0].calls == ["a"]
        assert sink.percents() == []
        assert sink.statuses()[-1] == "errored"

    @pytest.mark.asyncio
    async def test_enumeration_failure(self, checkpoints, reporter):
        class BrokenStage(FakeStage):
            async def enumerate_units(self, ctx):
                raise OSError("bucket unreachable")

        stages = [BrokenStage("fetch", JobStatus.FETCHING, [])]
        orchestrator = PipelineOrchestrator(stages, checkpoints, reporter)

        with pytest.raises(PipelineError) as exc_info:
            await orchestrator.run(make_job())

        assert exc_info.value.unit_index is None
        assert "bucket unreachable" in str(exc_info.value.cause)

    @pytest.mark.asyncio
    async def test_stalled_unit(self, checkpoints, reporter):
        stage = FakeStage("fetch", JobStatus.FETCHING, ["a"], delay=1.0,
                          watch_interval=0.05, report_progress=False)
        orchestrator = PipelineOrchestrator([stage], checkpoints, reporter)

        with pytest.raises(PipelineError) as exc_info:
            await orchestrator.run(make_job())

        assert isinstance(exc_info.value.cause, StalledError)
        assert await checkpoints.get("job-1", "fetch") == 0

    @pytest.mark.asyncio
    async def test_unit_timeout(self, checkpoints, reporter):
        stage = FakeStage("transform", JobStatus.TRANSFORMING, ["a"], delay=1.0, unit_timeout=0.05)
        orchestrator = PipelineOrchestrator([stage], checkpoints, reporter)

        with pytest.raises(PipelineError) as exc_info:
            await orchestrator.run(make_job())

        assert isinstance(exc_info.value.cause, UnitTimeoutError)


class TestRetryPolicy:
    """In-process retry of unit invocations"""

    @pytest.mark.asyncio
    async def test_retryable_unit_retried_until_success(self, make_stages, checkpoints, reporter):
        stages = make_stages(fetch_options={"failures": {"a": 2}, "retryable": True})
        policies = {"fetch": RetryPolicy(max_attempts=3, initial_delay=0, jitter=False)}
        orchestrator = PipelineOrchestrator(stages, checkpoints, reporter, retry_policies=policies)

        await orchestrator.run(make_job())

        assert stages[0].calls == ["a", "a", "a", "b", "c"]

    @pytest.mark.asyncio
    async def test_non_retryable_unit_fails_immediately(self, make_stages, checkpoints, reporter):
        stages = make_stages(fetch_options={"failures": {"a": 1}, "retryable": False})
        policies = {"fetch": RetryPolicy(max_attempts=3, initial_delay=0, jitter=False)}
        orchestrator = PipelineOrchestrator(stages, checkpoints, reporter, retry_policies=policies)

        with pytest.raises(PipelineError):
            await orchestrator.run(make_job())

        assert stages[0].calls == ["a"]

    @pytest.mark.asyncio
    async def test_attempts_exhausted(self, make_stages, checkpoints, reporter):
        stages = make_stages(fetch_options={"failures": {"a": 5}, "retryable": True})
        policies = {"fetch": RetryPolicy(max_attempts=2, initial_delay=0, jitter=False)}
        orchestrator = PipelineOrchestrator(stages, checkpoints, reporter, retry_policies=policies)

        with pytest.raises(PipelineError):
            await orchestrator.run(make_job())

        assert stages[0].calls == ["a", "a"]


class TestInterruption:
    """Stop requests at unit boundaries"""

    @pytest.mark.asyncio
    async def test_stop_between_units(self, checkpoints, reporter, sink):
        class StoppingStage(FakeStage):
            async def process_unit(self, ctx, unit, progress):
                result = await super().process_unit(ctx, unit, progress)
                ctx.request_stop()
                return result

        stage = StoppingStage("fetch", JobStatus.FETCHING, ["a", "b", "c"])
        orchestrator = PipelineOrchestrator([stage], checkpoints, reporter)
        job = make_job()
        ctx = orchestrator.new_context(job)

        with pytest.raises(PipelineInterrupted) as exc_info:
            await orchestrator.run(job, ctx)

        assert exc_info.value.unit_index == 1
        assert stage.calls == ["a"]
        assert await checkpoints.get("job-1", "fetch") == 1
        assert "errored" not in sink.statuses()

    @pytest.mark.asyncio
    async def test_stop_before_start(self, make_stages, checkpoints, reporter):
        stages = make_stages()
        orchestrator = PipelineOrchestrator(stages, checkpoints, reporter)
        job = make_job()
        ctx = orchestrator.new_context(job)
        ctx.request_stop()

        with pytest.raises(PipelineInterrupted):
            await orchestrator.run(job, ctx)

        assert stages[0].calls == []
        assert stages[0].prepare_calls == 0
