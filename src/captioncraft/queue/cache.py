"""Deduplicating, batching submission layer in front of the queue registry.

Broker round trips are the scarce resource on the producing side, so
submissions go through here instead of straight to a queue handle:

1. A submission is fingerprinted from ``(job_type, payload)``.
2. A live entry with the same fingerprint answers the caller directly with
   the handle already produced (or about to be produced) for that job.
3. Otherwise the submission joins an in-memory batch. The first submission
   into an empty batch arms a one-shot timer; when it fires the batch is
   drained, grouped by queue, and enqueued back to back.
4. A failed enqueue only fails the callers waiting on that job.

Entries expire after ``ttl_s`` or after ``max_attempts`` failed submissions.
The cache is advisory: it never answers "did this job run".
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..models import CacheConfig
from .hashing import compute_job_fingerprint, payload_dict
from .models import JobHandle
from .registry import QueueRegistry

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """In-memory record of a recent submission."""

    fingerprint: str
    payload: Dict[str, Any]
    timestamp: float
    attempts: int = 0
    future: Optional[asyncio.Future] = field(default=None, repr=False)

    def is_live(self, now: float, ttl_s: float, max_attempts: int) -> bool:
        return (now - self.timestamp) < ttl_s and self.attempts < max_attempts


@dataclass
class _Submission:
    queue_name: str
    job_type: str
    payload: Dict[str, Any]
    options: Optional[Dict[str, Any]]
    fingerprint: str
    future: asyncio.Future


class JobCache:
    """Fingerprint cache plus time-windowed batch of pending enqueues."""

    def __init__(
        self,
        registry: QueueRegistry,
        config: Optional[CacheConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.config = config or CacheConfig()
        self.clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._batch: List[_Submission] = []
        self._batch_lock = asyncio.Lock()
        self._drain_lock = asyncio.Lock()
        self._timer: Optional[asyncio.Task] = None
        self._sweeper: Optional[asyncio.Task] = None
        self._hits = 0
        self._submitted = 0

    async def submit(
        self,
        queue_name: str,
        job_type: str,
        payload: Any,
        options: Optional[Dict[str, Any]] = None,
    ) -> JobHandle:
        """Submit a job, reusing a live submission with the same fingerprint.

        Args:
            queue_name: Target queue
            job_type: Job name, e.g. ``"burn-in"``
            payload: Payload model or dict
            options: Per-job overrides of the queue's default options

        Returns:
            The broker handle; every caller that shares a fingerprint within
            the validity window gets the same handle

        Raises:
            Exception: Whatever the broker raised for this job's enqueue
        """
        wire = payload_dict(payload)
        fingerprint = compute_job_fingerprint(job_type, wire)
        now = self.clock()

        entry = self._entries.get(fingerprint)
        live = entry is not None and entry.is_live(
            now, self.config.ttl_s, self.config.max_attempts
        )

        if live and entry.future is not None:
            self._hits += 1
            logger.debug("Job %s found in cache, skipping broker add", fingerprint)
            return await asyncio.shield(entry.future)

        future = asyncio.get_running_loop().create_future()
        if live:
            # Earlier submission failed; keep its attempt count
            entry.future = future
        else:
            self._entries[fingerprint] = CacheEntry(
                fingerprint=fingerprint, payload=wire, timestamp=now, future=future
            )

        async with self._batch_lock:
            self._batch.append(
                _Submission(queue_name, job_type, wire, options, fingerprint, future)
            )
            if len(self._batch) == 1:
                self._timer = asyncio.get_running_loop().create_task(self._fire_after_window())

        return await asyncio.shield(future)

    async def _fire_after_window(self) -> None:
        await asyncio.sleep(self.config.batch_window_s)
        # Past this point flush() waits on the drain lock instead of cancelling
        self._timer = None
        await self._drain()

    async def _drain(self) -> None:
        """Enqueue everything collected so far, grouped by queue.

        Drains run one at a time, so a caller of ``flush`` returns only after
        any batch already in flight has been handed to the broker.
        """
        async with self._drain_lock:
            async with self._batch_lock:
                batch, self._batch = self._batch, []
            if batch:
                await self._enqueue_batch(batch)

    async def _enqueue_batch(self, batch: List[_Submission]) -> None:
        logger.debug("Processing job batch of %d jobs", len(batch))

        groups: Dict[str, List[_Submission]] = {}
        for submission in batch:
            groups.setdefault(submission.queue_name, []).append(submission)

        for queue_name, submissions in groups.items():
            try:
                handle = self.registry.get_queue(queue_name)
            except Exception as e:
                logger.error("Could not open queue %s: %s", queue_name, e)
                for submission in submissions:
                    self._reject(submission, e)
                continue

            for submission in submissions:
                try:
                    job_handle = await handle.add(
                        submission.job_type, submission.payload, submission.options
                    )
                except Exception as e:
                    logger.warning(
                        "Enqueue of %s on %s failed: %s", submission.job_type, queue_name, e
                    )
                    self._reject(submission, e)
                    continue

                self._submitted += 1
                if not submission.future.done():
                    submission.future.set_result(
                        job_handle.model_copy(update={"fingerprint": submission.fingerprint})
                    )

    def _reject(self, submission: _Submission, error: Exception) -> None:
        if not submission.future.done():
            submission.future.set_exception(error)
        entry = self._entries.get(submission.fingerprint)
        if entry is not None and entry.future is submission.future:
            entry.future = None
            self.mark_attempted(submission.fingerprint)

    def mark_attempted(self, fingerprint: str) -> None:
        """Count a failed submission; purge the entry at the attempt limit."""
        entry = self._entries.get(fingerprint)
        if entry is None:
            return
        entry.attempts += 1
        if entry.attempts >= self.config.max_attempts:
            del self._entries[fingerprint]
            logger.debug("Job %s removed from cache after max attempts", fingerprint)

    def forget(self, job_type: str, payload: Any) -> bool:
        """Drop the entry for a submission so the next identical one reaches the broker."""
        fingerprint = compute_job_fingerprint(job_type, payload_dict(payload))
        return self._entries.pop(fingerprint, None) is not None

    def sweep(self) -> int:
        """Remove entries past TTL or past the attempt limit."""
        now = self.clock()
        expired = [
            fp
            for fp, entry in self._entries.items()
            if not entry.is_live(now, self.config.ttl_s, self.config.max_attempts)
        ]
        for fp in expired:
            del self._entries[fp]

        if expired:
            logger.debug("Cleaned %d expired job cache entries", len(expired))
        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval_s)
            self.sweep()

    def start(self) -> None:
        """Start the periodic entry sweep on the running loop."""
        if self._sweeper is None:
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def flush(self) -> None:
        """Drain the pending batch now instead of waiting for the timer."""
        timer = self._timer
        if timer is not None and not timer.done():
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass
            if self._timer is timer:
                self._timer = None
        await self._drain()

    def stats(self) -> Dict[str, Any]:
        return {
            "cache_size": len(self._entries),
            "batch_size": len(self._batch),
            "hits": self._hits,
            "submitted": self._submitted,
        }

    async def close(self) -> None:
        """Stop the sweep and push out anything still batched."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        await self.flush()
