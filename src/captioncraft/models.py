"""Pydantic models for configuration and data validation."""

from typing import Literal, Optional

from pydantic import BaseModel, Field

from .queue.models import BackoffPolicy, JobOptions


class BrokerConfig(BaseModel):
    """Broker database and transport settings."""

    db_path: str = Field(default="data/broker.db", description="SQLite file backing the job queue")
    connect_timeout_s: float = Field(
        default=30.0, gt=0.0, description="Time allowed to open the broker database"
    )
    command_timeout_s: float = Field(
        default=30.0, gt=0.0, description="Busy timeout for a single broker command"
    )
    keep_alive_s: float = Field(
        default=120.0, gt=0.0, description="Idle time before the connection is health-checked"
    )
    max_retries_per_request: Optional[int] = Field(
        default=None, ge=0, description="Transport retries on lock contention (None = unlimited)"
    )
    retry_step_s: float = Field(
        default=2.0, gt=0.0, description="Backoff increment per transport retry"
    )
    retry_cap_s: float = Field(default=60.0, gt=0.0, description="Maximum transport backoff")
    poll_interval_s: float = Field(
        default=1.0, gt=0.0, description="Worker sleep between empty dequeues"
    )


class QueueConfig(BaseModel):
    """One named queue and its default job options."""

    name: str
    concurrency: int = Field(default=1, ge=1, le=1, description="Jobs executed at a time")
    job_options: JobOptions = Field(default_factory=JobOptions)


def _queue(name: str, attempts: int = 2, delay_s: float = 15.0, keep_failed: int = 1) -> QueueConfig:
    return QueueConfig(
        name=name,
        job_options=JobOptions(
            attempts=attempts,
            backoff=BackoffPolicy(delay_s=delay_s),
            remove_on_complete=1,
            remove_on_fail=keep_failed,
        ),
    )


class QueuesConfig(BaseModel):
    """The three pipeline queues."""

    transcription: QueueConfig = Field(default_factory=lambda: _queue("transcription-queue"))
    burn_in: QueueConfig = Field(default_factory=lambda: _queue("burn-in-queue"))
    cleanup: QueueConfig = Field(
        default_factory=lambda: _queue("cleanup-queue", delay_s=5.0, keep_failed=5)
    )

    def by_name(self, queue_name: str) -> Optional[QueueConfig]:
        for queue in (self.transcription, self.burn_in, self.cleanup):
            if queue.name == queue_name:
                return queue
        return None


class CacheConfig(BaseModel):
    """Submission dedup cache and batching window."""

    ttl_s: float = Field(default=300.0, gt=0.0, description="Lifetime of a dedup entry")
    max_attempts: int = Field(default=3, ge=1, description="Failed submissions before purge")
    batch_window_s: float = Field(
        default=1.0, ge=0.0, description="Delay collecting submissions into one batch"
    )
    sweep_interval_s: float = Field(default=60.0, gt=0.0, description="Expired entry sweep period")


class RegistryConfig(BaseModel):
    """Lazy queue handle registry."""

    idle_timeout_s: float = Field(
        default=600.0, gt=0.0, description="Unused time after which a handle is closed"
    )
    sweep_interval_s: float = Field(default=300.0, gt=0.0, description="Idle handle sweep period")


class CleanupConfig(BaseModel):
    """Temporary file sweeper."""

    tmp_dir: str = Field(default="tmp", description="Shared temporary directory")
    max_age_s: float = Field(default=300.0, gt=0.0, description="Files older than this are deleted")
    repeat_every_s: float = Field(default=300.0, gt=0.0, description="Sweep interval")


class MediaConfig(BaseModel):
    """FFmpeg toolkit settings."""

    global_timeout_s: int = Field(
        default=1800, gt=0, description="Maximum duration for any FFmpeg operation in seconds"
    )
    kill_grace_period_s: int = Field(
        default=5, gt=0, description="Grace period between SIGTERM and SIGKILL"
    )
    ffmpeg_loglevel: Literal["quiet", "error", "warning", "info", "verbose"] = Field(
        default="error", description="FFmpeg log level"
    )


class StorageConfig(BaseModel):
    """Object storage location."""

    root: str = Field(default="data/media", description="Directory holding stored media")
    base_url: Optional[str] = Field(
        default=None, description="Public URL prefix (None = file:// URLs)"
    )


class RecordsConfig(BaseModel):
    """Relational record store."""

    url: str = Field(default="sqlite:///./captioncraft.db", description="databases connection URL")


class SpeechConfig(BaseModel):
    """Speech-to-text provider."""

    api_base: str = Field(default="https://api.openai.com/v1")
    model: str = Field(default="whisper-1")
    api_key: Optional[str] = Field(default=None, description="Falls back to OPENAI_API_KEY")
    timeout_s: float = Field(default=600.0, gt=0.0)


class CaptionCraftConfig(BaseModel):
    """Complete application configuration with validation."""

    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    queues: QueuesConfig = Field(default_factory=QueuesConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    records: RecordsConfig = Field(default_factory=RecordsConfig)
    speech: SpeechConfig = Field(default_factory=SpeechConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "CaptionCraftConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "CaptionCraftConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("db") is not None:
            config_dict["broker"]["db_path"] = cli_args["db"]
        if cli_args.get("records_url") is not None:
            config_dict["records"]["url"] = cli_args["records_url"]
        if cli_args.get("tmp_dir") is not None:
            config_dict["cleanup"]["tmp_dir"] = cli_args["tmp_dir"]
        if cli_args.get("poll_interval") is not None:
            config_dict["broker"]["poll_interval_s"] = cli_args["poll_interval"]

        return CaptionCraftConfig.from_dict(config_dict)
