"""
Data models for the media job worker

Contains the inbound job schema, the job descriptor, coarse statuses and the
execution-tracking structures used by the pipeline.
"""

# Job models
from .job import (
    Job,
    JobMessage,
    JobStatus,
    MediaKind,
    MediaDescriptor,
    SourceLocator,
    PIPELINE_STAGES,
    JOB_STATUS_TRANSITIONS,
    can_transition_to,
    get_valid_transitions,
    decode_job
)

# Execution models
from .execution import (
    UnitRef,
    StageRun,
    JobProgress,
    StageSummary,
    PipelineResult,
    sort_units
)

__all__ = [
    # Job models
    "Job",
    "JobMessage",
    "JobStatus",
    "MediaKind",
    "MediaDescriptor",
    "SourceLocator",
    "PIPELINE_STAGES",
    "JOB_STATUS_TRANSITIONS",
    "can_transition_to",
    "get_valid_transitions",
    "decode_job",

    # Execution models
    "UnitRef",
    "StageRun",
    "JobProgress",
    "StageSummary",
    "PipelineResult",
    "sort_units"
]
