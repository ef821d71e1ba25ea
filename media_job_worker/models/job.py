"""
Job-related data models for the media job worker

Defines the inbound message schema, the immutable job descriptor handed to
the pipeline, and the coarse job status enumeration reported to telemetry.
"""

import json
from enum import Enum
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple, Union
from dataclasses import dataclass, field

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from ..core.exceptions import ValidationError


# Stage order is owned by the worker, never by the message
PIPELINE_STAGES: Tuple[str, ...] = ("fetch", "transform", "publish")


class JobStatus(Enum):
    """Coarse job status reported to the telemetry sink."""
    QUEUED = "queued"
    FETCHING = "fetching"
    TRANSFORMING = "transforming"
    PUBLISHING = "publishing"
    DONE = "done"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.ERRORED)


class MediaKind(Enum):
    """Kind of media a job carries."""
    TV = "tv"
    MOVIE = "movie"


# Expected progression. Advisory only: reporters warn on anything else.
JOB_STATUS_TRANSITIONS = {
    JobStatus.QUEUED: [JobStatus.FETCHING, JobStatus.TRANSFORMING, JobStatus.PUBLISHING, JobStatus.DONE, JobStatus.ERRORED],
    JobStatus.FETCHING: [JobStatus.TRANSFORMING, JobStatus.ERRORED],
    JobStatus.TRANSFORMING: [JobStatus.PUBLISHING, JobStatus.ERRORED],
    JobStatus.PUBLISHING: [JobStatus.DONE, JobStatus.ERRORED],
    JobStatus.DONE: [],  # Terminal state
    JobStatus.ERRORED: []  # Terminal state
}


def can_transition_to(current_status: Optional[JobStatus], target_status: JobStatus) -> bool:
    """Check if a job is expected to move from current status to target status."""
    if current_status is None:
        return True
    return target_status in JOB_STATUS_TRANSITIONS.get(current_status, [])


def get_valid_transitions(current_status: JobStatus) -> List[JobStatus]:
    """Get list of expected status transitions from current status."""
    return list(JOB_STATUS_TRANSITIONS.get(current_status, []))


# Inbound message schema

class SourceLocatorModel(BaseModel):
    bucket: Optional[str] = None
    prefix: str = "original"


class MediaDescriptorModel(BaseModel):
    name: str = Field(min_length=1)
    kind: Optional[MediaKind] = None
    labels: List[str] = Field(default_factory=list)
    source: SourceLocatorModel = Field(default_factory=SourceLocatorModel)


class JobMessage(BaseModel):
    """Schema of an inbound "new media" job message."""

    id: str = Field(min_length=1)
    media: MediaDescriptorModel

    @field_validator("id")
    @classmethod
    def _strip_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("job id must not be blank")
        return value


@dataclass(frozen=True)
class SourceLocator:
    """Where the job's source files live in object storage."""
    bucket: str
    prefix: str = "original"


@dataclass(frozen=True)
class MediaDescriptor:
    """Immutable metadata supplied by the job message."""
    name: str
    kind: MediaKind
    source: SourceLocator


@dataclass
class Job:
    """One unit of inbound work."""

    job_id: str
    media: MediaDescriptor
    attempt: int = 1
    stages: Tuple[str, ...] = PIPELINE_STAGES
    received_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def from_message(cls, message: JobMessage, attempt: int = 1) -> "Job":
        """Build a job from a validated message."""
        media = message.media
        kind = media.kind
        if kind is None:
            kind = MediaKind.MOVIE if "Movie" in media.labels else MediaKind.TV

        return cls(
            job_id=message.id,
            media=MediaDescriptor(
                name=media.name,
                kind=kind,
                source=SourceLocator(
                    bucket=media.source.bucket or message.id,
                    prefix=media.source.prefix
                )
            ),
            attempt=attempt
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for logging and serialization."""
        return {
            "job_id": self.job_id,
            "media": {
                "name": self.media.name,
                "kind": self.media.kind.value,
                "source": {
                    "bucket": self.media.source.bucket,
                    "prefix": self.media.source.prefix
                }
            },
            "attempt": self.attempt,
            "stages": list(self.stages),
            "received_at": self.received_at.isoformat()
        }


def decode_job(payload: Union[bytes, str, Dict[str, Any]], attempt: int = 1) -> Job:
    """
    Decode and validate an inbound message payload.

    Args:
        payload: Raw message body (JSON bytes/str) or an already parsed dict
        attempt: Delivery attempt reported by the transport

    Returns:
        Job built from the message

    Raises:
        ValidationError: If the payload is not valid JSON or fails the schema
    """
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ValidationError("payload", f"not valid UTF-8: {e}")

    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as e:
            raise ValidationError("payload", f"not valid JSON: {e.msg}")

    if not isinstance(payload, dict):
        raise ValidationError("payload", "expected a JSON object", type(payload).__name__)

    try:
        message = JobMessage.model_validate(payload)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ())) or "payload"
        raise ValidationError(location, first.get("msg", "invalid value"), first.get("input"))

    return Job.from_message(message, attempt=attempt)
