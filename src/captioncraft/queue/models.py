"""Pydantic models for job queue data structures.

This module defines the type-safe models shared by producers, the broker and
the stage workers. Payloads are a discriminated union keyed on ``job_type`` so
each queue only ever carries the shape its consumer expects.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class JobStatus(str, Enum):
    """Broker-side job states.

    State transitions:
        pending → running     (worker claims job)
        running → completed   (stage body returned)
        running → pending     (stage failed, attempts remain, backoff applied)
        running → failed      (stage failed, attempts exhausted or permanent error)
        running → pending     (crash recovery via reset_stale_running)
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class BackoffPolicy(BaseModel):
    """Retry delay schedule applied between attempts."""

    type: Literal["exponential", "fixed"] = Field(
        default="exponential", description="Delay growth strategy"
    )
    delay_s: float = Field(default=15.0, ge=0.0, description="Base delay before the first retry")

    def delay_for(self, attempt: int) -> float:
        """Delay before re-running a job that has failed ``attempt`` times."""
        if self.type == "fixed" or attempt <= 1:
            return self.delay_s
        return self.delay_s * (2 ** (attempt - 1))


class JobOptions(BaseModel):
    """Per-enqueue options, defaulted per queue from configuration."""

    model_config = ConfigDict(frozen=True)

    attempts: int = Field(default=2, ge=1, description="Total executions allowed, first run included")
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    remove_on_complete: int = Field(
        default=1, ge=0, description="Completed jobs retained per queue"
    )
    remove_on_fail: int = Field(default=1, ge=0, description="Failed jobs retained per queue")
    delay_s: float = Field(default=0.0, ge=0.0, description="Initial delay before first run")
    repeat_every_s: Optional[float] = Field(
        default=None, gt=0.0, description="Re-schedule interval for recurring jobs"
    )

    def merged(self, overrides: Optional[Dict[str, Any]]) -> "JobOptions":
        """Return a copy with ``overrides`` applied on top of these defaults."""
        if not overrides:
            return self
        data = self.model_dump()
        data.update(overrides)
        return JobOptions(**data)


class TranscribeJob(BaseModel):
    """Payload for the transcription queue."""

    model_config = ConfigDict(populate_by_name=True)

    job_type: Literal["transcribe"] = "transcribe"
    video_id: str = Field(..., alias="videoId")
    file_path: Optional[str] = Field(default=None, alias="filePath")


class BurnInJob(BaseModel):
    """Payload for the burn-in queue."""

    model_config = ConfigDict(populate_by_name=True)

    job_type: Literal["burn-in"] = "burn-in"
    video_id: str = Field(..., alias="videoId")


class CleanupJob(BaseModel):
    """Payload for the recurring temp-file sweep."""

    job_type: Literal["clean-temp-files"] = "clean-temp-files"
    timestamp: str


JobPayload = Annotated[
    Union[TranscribeJob, BurnInJob, CleanupJob], Field(discriminator="job_type")
]

_payload_adapter = TypeAdapter(JobPayload)


def parse_payload(job_type: str, data: Dict[str, Any]) -> Union[TranscribeJob, BurnInJob, CleanupJob]:
    """Validate a raw payload dict against the model registered for ``job_type``."""
    return _payload_adapter.validate_python({**data, "job_type": job_type})


def payload_to_wire(payload: Union[TranscribeJob, BurnInJob, CleanupJob]) -> Dict[str, Any]:
    """Serialize a payload to the camelCase dict stored by the broker."""
    return payload.model_dump(by_alias=True, exclude={"job_type"}, exclude_none=True)


class Job(BaseModel):
    """A job as stored by the broker."""

    job_id: str = Field(..., description="Broker-assigned identifier")
    queue_name: str = Field(..., description="Queue the job belongs to")
    job_type: str = Field(..., description="Discriminator of the payload shape")
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = Field(default=JobStatus.PENDING)
    attempts: int = Field(default=0, ge=0, description="Failed executions so far")
    max_attempts: int = Field(default=2, ge=1)
    options: JobOptions = Field(default_factory=JobOptions)
    enqueued_at: datetime = Field(default_factory=datetime.now)
    available_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    worker_id: Optional[str] = None
    last_error: Optional[str] = None
    repeat_key: Optional[str] = None

    def typed_payload(self) -> Union[TranscribeJob, BurnInJob, CleanupJob]:
        return parse_payload(self.job_type, self.payload)


class JobHandle(BaseModel):
    """What a producer gets back from an enqueue."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    queue_name: str
    job_type: str
    fingerprint: Optional[str] = None


class JobResult(BaseModel):
    """Outcome a stage handler hands back to the worker loop."""

    job_id: str
    status: JobStatus
    duration_s: float = Field(default=0.0, ge=0.0)
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
