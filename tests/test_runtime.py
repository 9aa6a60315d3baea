"""End-to-end tests: runtime wiring, real broker, faked collaborators."""

import asyncio
from unittest.mock import patch

import pytest

from captioncraft.errors import ProviderError
from captioncraft.models import BrokerConfig, CacheConfig, CaptionCraftConfig, CleanupConfig
from captioncraft.queue import JobStatus
from captioncraft.records.store import VideoStatus
from captioncraft.runtime import Runtime

from conftest import FakeMedia, FakeSpeech, FakeStorage


@pytest.fixture
def config(temp_dir):
    return CaptionCraftConfig(
        broker=BrokerConfig(db_path=str(temp_dir / "broker.db"), poll_interval_s=0.01),
        cache=CacheConfig(batch_window_s=0.01),
        cleanup=CleanupConfig(tmp_dir=str(temp_dir / "tmp")),
    )


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
async def runtime(config, store, storage):
    async with Runtime(
        config, store=store, storage=storage, speech=FakeSpeech(), media=FakeMedia()
    ) as runtime:
        yield runtime


@pytest.fixture
def upload(temp_dir):
    path = temp_dir / "v1.mp4"
    path.write_bytes(b"source")
    return path


async def pending(runtime, queue_name):
    return await runtime.broker.list_jobs(queue_name, JobStatus.PENDING.value)


class TestPipeline:
    async def test_upload_to_complete(self, runtime, store, upload):
        await store.create_video("user-1", video_id="v1")
        await runtime.lifecycle.register_upload("v1", str(upload))

        result = await runtime.worker("transcription").run_once()
        assert result.status == JobStatus.COMPLETED
        assert (await store.get_video("v1")).status == VideoStatus.READY

        await runtime.lifecycle.request_burn_in("v1", "user-1", {"fontColor": "yellow"})
        result = await runtime.worker("burn-in").run_once()
        assert result.status == JobStatus.COMPLETED

        video = await store.get_video("v1")
        assert video.status == VideoStatus.COMPLETE
        assert video.final_artifact_id == "v1_burned"

    async def test_failed_upload_retries_transcription(self, config, store, upload):
        storage = FakeStorage(fail=ProviderError("storage", "quota exceeded"))
        async with Runtime(
            config, store=store, storage=storage, speech=FakeSpeech(), media=FakeMedia()
        ) as runtime:
            await store.create_video("user-1", video_id="v1")
            await runtime.lifecycle.register_upload("v1", str(upload))

            result = await runtime.worker("transcription").run_once()

            assert result.status == JobStatus.PENDING
            video = await store.get_video("v1")
            assert video.status == VideoStatus.FAILED
            assert video.error_message == "storage failed: quota exceeded"
            assert video.original_artifact_id is None

            handle = await runtime.lifecycle.retry("v1", "user-1")

            video = await store.get_video("v1")
            assert video.status == VideoStatus.UPLOADING
            assert video.error_message is None
            assert handle.queue_name == "transcription-queue"
            retried = await runtime.broker.get_job(handle.job_id)
            assert retried.payload == {"videoId": "v1"}
            assert await pending(runtime, "burn-in-queue") == []

    async def test_failed_burn_in_retries_burn_in_only(self, runtime, store, sample_transcript):
        await store.create_video("user-1", video_id="v2")
        await store.update_video(
            "v2",
            status=VideoStatus.FAILED,
            original_artifact_id="v2",
            error_message="ffmpeg failed: exit 1",
        )
        await store.save_transcript("v2", sample_transcript)

        handle = await runtime.lifecycle.retry("v2", "user-1")

        assert handle.queue_name == "burn-in-queue"
        assert await pending(runtime, "transcription-queue") == []

        result = await runtime.worker("burn-in").run_once()
        assert result.status == JobStatus.COMPLETED
        assert (await store.get_video("v2")).status == VideoStatus.COMPLETE


class TestRuntime:
    async def test_start_prepares_broker_schema(self, runtime):
        connection = runtime.pool.get_connection()
        assert connection.status == "ready"

        with patch.object(connection, "run") as mock_run:
            runtime.registry.get_queue("burn-in-queue")
        mock_run.assert_not_called()

    async def test_unknown_stage(self, runtime):
        with pytest.raises(ValueError, match="Unknown stage"):
            runtime.worker("render")

    async def test_worker_queue_names(self, runtime):
        assert runtime.worker("transcription").queue_name == "transcription-queue"
        assert runtime.worker("burn-in").queue_name == "burn-in-queue"
        assert runtime.worker("cleanup").queue_name == "cleanup-queue"

    async def test_schedule_cleanup(self, runtime, config):
        await runtime.schedule_cleanup()
        jobs = await pending(runtime, "cleanup-queue")
        assert len(jobs) == 1
        assert jobs[0].options.repeat_every_s == config.cleanup.repeat_every_s

    async def test_stats(self, runtime, store, upload):
        await store.create_video("user-1", video_id="v1")
        await runtime.lifecycle.register_upload("v1", str(upload))

        stats = runtime.stats()

        assert stats["connection_pool"]["has_connection"] is True
        assert stats["job_cache"]["submitted"] == 1
        assert stats["queues"]["queue_names"] == ["transcription-queue"]
        assert "timestamp" in stats

    async def test_shutdown_flushes_batched_submission(self, config, store):
        runtime = Runtime(
            config.model_copy(update={"cache": CacheConfig(batch_window_s=30.0)}),
            store=store,
            storage=FakeStorage(),
            speech=FakeSpeech(),
            media=FakeMedia(),
        )
        await runtime.start()
        await store.create_video("user-1", video_id="v1")

        task = asyncio.create_task(runtime.lifecycle.register_upload("v1", "/uploads/v1.mp4"))
        await asyncio.sleep(0.01)
        assert runtime.stats()["job_cache"]["batch_size"] == 1

        await runtime.cache.close()
        handle = await task
        await runtime.shutdown()

        assert handle.queue_name == "transcription-queue"
        assert runtime.pool.stats()["has_connection"] is False
