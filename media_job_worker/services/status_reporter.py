"""
Status reporting for the media job worker

Emits coarse job status transitions and percent progress to an external
telemetry sink. Reporting is best effort: a failing sink is logged and the
job carries on.
"""

import json
import socket
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Optional, Any

import redis.asyncio as aioredis

from ..models.job import JobStatus, can_transition_to
from ..core.exceptions import TelemetryError, PipelineError
from ..utils.logger import get_logger, set_log_context
from ..utils import metrics


class TelemetrySink(ABC):
    """Destination for status, progress and error events."""

    name = "sink"

    @abstractmethod
    async def send_status(self, job_id: str, status: JobStatus, attributes: Dict[str, Any]) -> None:
        """Deliver a coarse status transition."""

    @abstractmethod
    async def send_progress(self, job_id: str, stage: str, percent: int) -> None:
        """Deliver a percent-complete update."""

    async def send_error(self, job_id: str, stage: Optional[str], data: Dict[str, Any]) -> None:
        """Deliver error details. Optional for sinks."""

    async def close(self) -> None:
        pass


class LoggingTelemetrySink(TelemetrySink):
    """Sink that only writes telemetry to the log."""

    name = "log"

    def __init__(self):
        self.logger = get_logger(__name__)

    async def send_status(self, job_id: str, status: JobStatus, attributes: Dict[str, Any]) -> None:
        self.logger.info("Job status", extra={"job_id": job_id, "status": status.value, **attributes})

    async def send_progress(self, job_id: str, stage: str, percent: int) -> None:
        self.logger.info("Job progress", extra={"job_id": job_id, "stage": stage, "percent": percent})

    async def send_error(self, job_id: str, stage: Optional[str], data: Dict[str, Any]) -> None:
        self.logger.error("Job error", extra={"job_id": job_id, "stage": stage, **data})


class RedisTelemetrySink(TelemetrySink):
    """
    Publishes JSON events on Redis pub/sub channels.

    Channels: ``<prefix>:status``, ``<prefix>:progress`` and ``<prefix>:error``.
    """

    name = "redis"

    def __init__(self, redis_url: str, channel_prefix: str = "media", client: Optional[aioredis.Redis] = None):
        self.redis_url = redis_url
        self.channel_prefix = channel_prefix
        self.client = client or aioredis.from_url(redis_url, decode_responses=True)
        self.host = socket.gethostname()

    def channel(self, kind: str) -> str:
        return f"{self.channel_prefix}:{kind}"

    async def _publish(self, kind: str, event: Dict[str, Any]) -> None:
        event.setdefault("timestamp", datetime.utcnow().isoformat())
        try:
            await self.client.publish(self.channel(kind), json.dumps(event, default=str))
        except Exception as e:
            raise TelemetryError(self.name, f"publish to {self.channel(kind)} failed: {e}")

    async def send_status(self, job_id: str, status: JobStatus, attributes: Dict[str, Any]) -> None:
        await self._publish("status", {"job": job_id, "status": status.value, **attributes})

    async def send_progress(self, job_id: str, stage: str, percent: int) -> None:
        await self._publish("progress", {"job": job_id, "stage": stage, "percent": percent})

    async def send_error(self, job_id: str, stage: Optional[str], data: Dict[str, Any]) -> None:
        await self._publish("error", {"job": job_id, "stage": stage, "host": self.host, "data": data})

    async def close(self) -> None:
        await self.client.aclose()


class StatusReporter:
    """
    Fire-and-forget status and progress emission.

    Keeps the last status per job only to flag unexpected transitions in the
    log; the transition table is advisory and never blocks an emission.
    """

    def __init__(self, sink: TelemetrySink):
        self.sink = sink
        self._last_status: Dict[str, JobStatus] = {}

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="status_reporter")

    async def emit_status(self, job_id: str, status: JobStatus, error: Optional[BaseException] = None) -> None:
        """
        Emit a coarse status transition.

        Args:
            job_id: Job identifier
            status: New status
            error: Failure behind an ``errored`` status, if any
        """
        previous = self._last_status.get(job_id)
        if previous is not None and previous != status and not can_transition_to(previous, status):
            self.logger.warning("Unexpected status transition", extra={
                "job_id": job_id,
                "from_status": previous.value,
                "to_status": status.value
            })

        if status.is_terminal:
            self._last_status.pop(job_id, None)
        else:
            self._last_status[job_id] = status

        metrics.STATUS_EVENTS.labels(status=status.value).inc()

        attributes: Dict[str, Any] = {}
        if error is not None:
            attributes["error"] = str(error)

        try:
            await self.sink.send_status(job_id, status, attributes)
            if error is not None:
                await self.sink.send_error(job_id, getattr(error, "stage", None), self._error_data(error))
        except Exception as e:
            metrics.TELEMETRY_FAILURES.labels(kind="status").inc()
            self.logger.warning("Failed to emit status", extra={
                "job_id": job_id,
                "status": status.value,
                "error": str(e)
            })

    async def emit_progress(self, job_id: str, stage: str, percent: int) -> None:
        """
        Emit percent-complete progress for a job.

        Args:
            job_id: Job identifier
            stage: Stage tag the progress belongs to
            percent: Value in 0..100 (clamped)
        """
        percent = max(0, min(100, int(percent)))
        try:
            await self.sink.send_progress(job_id, stage, percent)
        except Exception as e:
            metrics.TELEMETRY_FAILURES.labels(kind="progress").inc()
            self.logger.warning("Failed to emit progress", extra={
                "job_id": job_id,
                "stage": stage,
                "percent": percent,
                "error": str(e)
            })

    def last_status(self, job_id: str) -> Optional[JobStatus]:
        return self._last_status.get(job_id)

    async def close(self) -> None:
        try:
            await self.sink.close()
        except Exception:
            self.logger.warning("Error closing telemetry sink", exc_info=True)

    @staticmethod
    def _error_data(error: BaseException) -> Dict[str, Any]:
        if isinstance(error, PipelineError):
            return {"message": str(error.cause), "code": error.code}
        return {
            "message": str(error) or "Internal Server Error",
            "code": getattr(error, "error_code", None) or "ERRNOCODE"
        }


def create_telemetry_sink(backend: str, redis_url: str, channel_prefix: str) -> TelemetrySink:
    """Build the telemetry sink named by configuration."""
    if backend == "redis":
        return RedisTelemetrySink(redis_url, channel_prefix)
    if backend == "log":
        return LoggingTelemetrySink()
    raise ValueError(f"unknown telemetry backend: {backend}")
