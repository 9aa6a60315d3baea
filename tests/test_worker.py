"""Unit tests for the per-queue worker loop."""

import asyncio

import pytest

from captioncraft.errors import PermanentJobError, ProviderError, TranscriptDataError
from captioncraft.queue import BackoffPolicy, JobOptions, JobStatus
from captioncraft.queue.worker import QueueWorker, is_permanent

NO_DELAY = JobOptions(attempts=2, backoff=BackoffPolicy(delay_s=0.0))


class TestErrorClassification:
    @pytest.mark.parametrize(
        "error,permanent",
        [
            (PermanentJobError("no source"), True),
            (TranscriptDataError("no segments"), True),
            (ProviderError("ffmpeg", "exit 1"), False),
            (ConnectionError("reset"), False),
        ],
    )
    def test_is_permanent(self, error, permanent):
        assert is_permanent(error) is permanent


class TestQueueWorker:
    async def test_run_once_empty(self, broker):
        async def handler(job):
            raise AssertionError("should not be called")

        worker = QueueWorker(broker, "burn-in-queue", handler)
        assert await worker.run_once() is None

    async def test_success_acked(self, broker):
        async def handler(job):
            return {"status": "completed", "videoId": job.payload["videoId"]}

        handle = await broker.enqueue("burn-in-queue", "burn-in", {"videoId": "v1"}, NO_DELAY)
        worker = QueueWorker(broker, "burn-in-queue", handler, worker_id="w1")

        result = await worker.run_once()

        assert result.status == JobStatus.COMPLETED
        assert result.metadata == {"status": "completed", "videoId": "v1"}
        assert (await broker.get_job(handle.job_id)).status == JobStatus.COMPLETED
        assert worker.processed == 1

    async def test_transient_failure_retried(self, broker):
        async def handler(job):
            raise ProviderError("ffmpeg", "exit 1")

        handle = await broker.enqueue("burn-in-queue", "burn-in", {"videoId": "v1"}, NO_DELAY)
        worker = QueueWorker(broker, "burn-in-queue", handler)

        result = await worker.run_once()

        assert result.status == JobStatus.PENDING
        assert result.error_message.startswith("ProviderError: ")
        job = await broker.get_job(handle.job_id)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 1

    async def test_attempts_exhausted(self, broker):
        calls = []

        async def handler(job):
            calls.append(job.attempts)
            raise ProviderError("ffmpeg", "exit 1")

        handle = await broker.enqueue("burn-in-queue", "burn-in", {"videoId": "v1"}, NO_DELAY)
        worker = QueueWorker(broker, "burn-in-queue", handler)

        await worker.run_once()
        result = await worker.run_once()

        assert calls == [0, 1]
        assert result.status == JobStatus.FAILED
        assert (await broker.get_job(handle.job_id)).status == JobStatus.FAILED
        assert worker.failed == 2

    async def test_permanent_failure_not_retried(self, broker):
        async def handler(job):
            raise TranscriptDataError("Transcript has no segments")

        handle = await broker.enqueue("burn-in-queue", "burn-in", {"videoId": "v1"}, NO_DELAY)
        worker = QueueWorker(broker, "burn-in-queue", handler)

        result = await worker.run_once()

        assert result.status == JobStatus.FAILED
        job = await broker.get_job(handle.job_id)
        assert job.status == JobStatus.FAILED
        assert job.last_error == "TranscriptDataError: Transcript has no segments"

    async def test_invalid_payload_not_retried(self, broker):
        async def handler(job):
            return job.typed_payload()

        await broker.enqueue("burn-in-queue", "burn-in", {"unexpected": True}, NO_DELAY)
        worker = QueueWorker(broker, "burn-in-queue", handler)

        result = await worker.run_once()

        assert result.status == JobStatus.FAILED
        assert result.error_message.startswith("ValidationError")

    async def test_run_until_stopped(self, broker):
        seen = []

        async def handler(job):
            seen.append(job.payload["videoId"])
            if len(seen) == 3:
                worker.stop()
            return None

        for i in range(3):
            await broker.enqueue("burn-in-queue", "burn-in", {"videoId": f"v{i}"}, NO_DELAY)
        worker = QueueWorker(broker, "burn-in-queue", handler, poll_interval_s=0.01)

        await asyncio.wait_for(worker.run(), timeout=5)

        assert seen == ["v0", "v1", "v2"]
        assert worker.processed == 3

    async def test_stop_while_idle(self, broker):
        async def handler(job):
            return None

        worker = QueueWorker(broker, "burn-in-queue", handler, poll_interval_s=10)
        task = asyncio.create_task(worker.run())
        await asyncio.sleep(0.05)

        worker.stop()

        await asyncio.wait_for(task, timeout=1)


class TestConcurrency:
    async def test_one_job_at_a_time_per_queue(self, broker):
        in_flight = 0
        peak = 0
        done = []

        async def handler(job):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            done.append(job.job_id)
            if len(done) == 4:
                worker.stop()

        for i in range(4):
            await broker.enqueue("burn-in-queue", "burn-in", {"videoId": f"v{i}"}, NO_DELAY)
        worker = QueueWorker(broker, "burn-in-queue", handler, poll_interval_s=0.01)

        await asyncio.wait_for(worker.run(), timeout=5)

        assert peak == 1
        assert len(done) == 4

    async def test_queues_progress_independently(self, broker):
        transcription_started = asyncio.Event()
        burn_in_started = asyncio.Event()

        async def transcribe(job):
            transcription_started.set()
            # Completes only if the burn-in worker runs at the same time
            await asyncio.wait_for(burn_in_started.wait(), timeout=5)
            transcription_worker.stop()

        async def burn_in(job):
            burn_in_started.set()
            await asyncio.wait_for(transcription_started.wait(), timeout=5)
            burn_in_worker.stop()

        await broker.enqueue("transcription-queue", "transcribe", {"videoId": "v1"}, NO_DELAY)
        await broker.enqueue("burn-in-queue", "burn-in", {"videoId": "v2"}, NO_DELAY)
        transcription_worker = QueueWorker(
            broker, "transcription-queue", transcribe, poll_interval_s=0.01
        )
        burn_in_worker = QueueWorker(broker, "burn-in-queue", burn_in, poll_interval_s=0.01)

        await asyncio.wait_for(
            asyncio.gather(transcription_worker.run(), burn_in_worker.run()), timeout=10
        )

        assert transcription_worker.processed == 1
        assert burn_in_worker.processed == 1
