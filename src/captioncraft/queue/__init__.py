"""Durable job queue: broker, connection pool, registry, cache and workers.

Only the dependency-free pieces are re-exported here; import the pool,
registry, cache and worker from their modules.
"""

from .hashing import compute_job_fingerprint
from .models import (
    BackoffPolicy,
    BurnInJob,
    CleanupJob,
    Job,
    JobHandle,
    JobOptions,
    JobResult,
    JobStatus,
    TranscribeJob,
    parse_payload,
    payload_to_wire,
)

__all__ = [
    "BackoffPolicy",
    "BurnInJob",
    "CleanupJob",
    "Job",
    "JobHandle",
    "JobOptions",
    "JobResult",
    "JobStatus",
    "TranscribeJob",
    "compute_job_fingerprint",
    "parse_payload",
    "payload_to_wire",
]
