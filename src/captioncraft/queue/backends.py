from __future__ import annotations

"""Abstract base class for the durable job broker.

The broker is the only channel between producer processes and stage worker
processes. This interface is what queue handles and workers code against; the
SQLite implementation lives in ``sqlite_backend``.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from .models import Job, JobHandle, JobOptions, JobStatus


class Broker(ABC):
    """Durable queue interface.

    Implementations must provide:
    - Atomic claim on dequeue (one consumer per job instance)
    - Bounded attempts with backoff between them
    - Retention limits for finished jobs
    - Re-scheduling of recurring jobs
    """

    @abstractmethod
    async def enqueue(
        self,
        queue_name: str,
        job_type: str,
        payload: Dict[str, Any],
        options: "JobOptions",
    ) -> "JobHandle":
        """Add a job to a queue.

        Args:
            queue_name: Target queue
            job_type: Payload discriminator (e.g. ``"transcribe"``)
            payload: JSON-serializable payload
            options: Attempts, backoff, retention and repeat settings

        Returns:
            Handle identifying the stored job

        Implementation notes:
        - Does NOT deduplicate; callers that care go through the job cache
        - Exception: a recurring job whose next run is already scheduled
          returns the existing handle
        """
        pass

    @abstractmethod
    async def dequeue(self, queue_name: str, worker_id: str) -> Optional["Job"]:
        """Atomically claim the next available job and mark it running.

        Args:
            queue_name: Queue to pull from
            worker_id: Identifier of the claiming worker

        Returns:
            Job if one is available now, None otherwise

        Implementation notes:
        - MUST be safe with several worker processes polling concurrently
        - Jobs in backoff (available_at in the future) are skipped
        - FIFO by availability, then enqueue time
        """
        pass

    @abstractmethod
    async def ack_success(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> None:
        """Mark a running job completed, apply retention, schedule next repeat."""
        pass

    @abstractmethod
    async def ack_fail(self, job_id: str, error: str, retry: bool = True) -> "JobStatus":
        """Record a failed execution.

        Args:
            job_id: Job identifier
            error: Error message (truncated to ~500 chars)
            retry: False for permanent errors

        Returns:
            ``pending`` if the job will run again after backoff, ``failed`` otherwise
        """
        pass

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional["Job"]:
        """Fetch a job by id (None once removed by retention)."""
        pass

    @abstractmethod
    async def counts(self, queue_name: Optional[str] = None) -> Dict[str, Dict[str, int]]:
        """Job counts per queue and status (for the status command)."""
        pass

    @abstractmethod
    async def list_jobs(self, queue_name: str, status: Optional[str] = None) -> List["Job"]:
        """All stored jobs of a queue, optionally filtered by status."""
        pass

    @abstractmethod
    async def reset_stale_running(self, timeout_s: int) -> int:
        """Crash recovery: put jobs stuck in ``running`` back to ``pending``.

        Returns:
            Count of reset jobs
        """
        pass
