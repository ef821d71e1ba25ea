"""
Per-job execution context.

Everything a running job needs (its descriptor, logger, progress accounting,
stop flag and scratch space for stage providers) travels in one object owned
by that job's run.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..models.job import Job
from ..models.execution import JobProgress
from ..utils.logger import JobLoggerAdapter, get_logger, job_logger


@dataclass
class JobContext:
    job: Job
    logger: JobLoggerAdapter
    progress: JobProgress
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    scratch: Dict[str, Any] = field(default_factory=dict)
    current_stage: Optional[str] = None
    current_unit: Optional[int] = None

    @classmethod
    def for_job(cls, job: Job, logger_name: str = "media_job_worker.job") -> "JobContext":
        logger = job_logger(
            get_logger(logger_name),
            job_id=job.job_id,
            attempt=job.attempt,
            media_kind=job.media.kind.value
        )
        return cls(job=job, logger=logger, progress=JobProgress(job.stages))

    @property
    def job_id(self) -> str:
        return self.job.job_id

    def request_stop(self):
        """Ask the pipeline to stop at the next unit boundary."""
        self.stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self.stop_event.is_set()
