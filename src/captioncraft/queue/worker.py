"""Per-queue consumer loop.

A ``QueueWorker`` owns exactly one queue and runs one job at a time on it;
workers for different queues run side by side (separate processes in
production, separate tasks in tests). The loop:

- claims the next available job (atomic in the broker)
- runs the stage handler
- acks success, or acks failure with the error classified:
  permanent errors (bad payload, missing record, unusable transcript) are
  not retried; anything else goes back to the broker's bounded retry with
  backoff

Stage errors never escape the loop; they are logged and recorded on the job.
"""

import asyncio
import logging
import os
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from ..errors import PermanentJobError, RecordNotFoundError
from .backends import Broker
from .models import Job, JobResult, JobStatus

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[Optional[Dict[str, Any]]]]

PERMANENT_ERRORS = (PermanentJobError, RecordNotFoundError, ValidationError)


def is_permanent(error: BaseException) -> bool:
    """True if retrying the job cannot change the outcome."""
    return isinstance(error, PERMANENT_ERRORS)


class QueueWorker:
    """Single-concurrency consumer for one named queue."""

    def __init__(
        self,
        broker: Broker,
        queue_name: str,
        handler: JobHandler,
        poll_interval_s: float = 1.0,
        worker_id: Optional[str] = None,
    ):
        self.broker = broker
        self.queue_name = queue_name
        self.handler = handler
        self.poll_interval_s = poll_interval_s
        self.worker_id = worker_id or f"{queue_name}-{os.getpid()}"
        self._stop = asyncio.Event()
        self.processed = 0
        self.failed = 0

    async def run_once(self) -> Optional[JobResult]:
        """Claim and execute at most one job.

        Returns:
            JobResult for the executed job, None if the queue had nothing ready
        """
        job = await self.broker.dequeue(self.queue_name, self.worker_id)
        if job is None:
            return None

        logger.info(
            "Processing %s job %s (attempt %d/%d)",
            job.job_type, job.job_id, job.attempts + 1, job.max_attempts,
        )
        start_time = time.time()

        try:
            metadata = await self.handler(job)
        except Exception as e:
            duration = time.time() - start_time
            permanent = is_permanent(e)
            error_msg = f"{type(e).__name__}: {e}"
            status = await self.broker.ack_fail(job.job_id, error_msg, retry=not permanent)
            self.failed += 1

            if status == JobStatus.PENDING:
                logger.warning("Job %s failed, will retry: %s", job.job_id, error_msg)
            else:
                logger.error("Job %s failed permanently: %s", job.job_id, error_msg)

            return JobResult(
                job_id=job.job_id,
                status=status,
                duration_s=duration,
                error_message=error_msg,
            )

        duration = time.time() - start_time
        await self.broker.ack_success(job.job_id, metadata)
        self.processed += 1
        logger.info("Job %s completed in %.1fs", job.job_id, duration)

        return JobResult(
            job_id=job.job_id,
            status=JobStatus.COMPLETED,
            duration_s=duration,
            metadata=metadata or {},
        )

    async def run(self) -> None:
        """Consume until ``stop()`` is called; an in-flight job always finishes."""
        logger.info("Worker %s listening on %s", self.worker_id, self.queue_name)

        while not self._stop.is_set():
            result = await self.run_once()
            if result is not None:
                continue
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval_s)
            except asyncio.TimeoutError:
                pass

        logger.info(
            "Worker %s stopped (%d processed, %d failed)",
            self.worker_id, self.processed, self.failed,
        )

    def stop(self) -> None:
        self._stop.set()
