"""Process-level wiring.

A ``Runtime`` is built once at process start from the resolved configuration
and owns every long-lived object: the broker connection pool, the queue
registry, the job cache, the record store and the providers. Everything else
receives what it needs from here; nothing is looked up globally.

Shutdown order matters: the cache flushes its pending batch through the
registry, the registry closes its handles, and only then is the shared broker
connection released.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .lifecycle import VideoLifecycle
from .media import FfmpegToolkit, MediaToolkit
from .models import CaptionCraftConfig, QueueConfig
from .providers import LocalObjectStorage, ObjectStorage, SpeechToText, WhisperClient
from .queue.cache import JobCache
from .queue.connection import ConnectionPool
from .queue.registry import QueueRegistry
from .queue.sqlite_backend import SCHEMA_SQL, SQLiteBroker
from .queue.worker import JobHandler, QueueWorker
from .records.store import SQLVideoStore, VideoStore
from .stages.burn_in import BurnInStage
from .stages.cleanup import CleanupStage, schedule_cleanup
from .stages.transcription import TranscriptionStage

logger = logging.getLogger(__name__)

STAGES = ("transcription", "burn-in", "cleanup")


class Runtime:
    """Dependency container for one worker or producer process."""

    def __init__(
        self,
        config: Optional[CaptionCraftConfig] = None,
        store: Optional[VideoStore] = None,
        storage: Optional[ObjectStorage] = None,
        speech: Optional[SpeechToText] = None,
        media: Optional[MediaToolkit] = None,
    ):
        self.config = config or CaptionCraftConfig()
        self.pool = ConnectionPool(self.config.broker)
        self.registry = QueueRegistry(self.pool, self.config.queues, self.config.registry)
        self.cache = JobCache(self.registry, self.config.cache)

        self.store = store or SQLVideoStore(self.config.records.url)
        self.storage = storage or LocalObjectStorage(self.config.storage)
        self.speech = speech or WhisperClient(self.config.speech)
        self.media = media or FfmpegToolkit(self.config.media)

        self.lifecycle = VideoLifecycle(self.store, self.cache, self.config.queues)
        self._broker: Optional[SQLiteBroker] = None
        self._monitor: Optional[asyncio.Task] = None

    @property
    def broker(self) -> SQLiteBroker:
        if self._broker is None:
            self._broker = SQLiteBroker(self.pool.get_connection())
        return self._broker

    async def start(self) -> None:
        """Open the record store, prepare the broker schema and start the sweeps."""
        if isinstance(self.store, SQLVideoStore):
            await asyncio.to_thread(self.store.create_tables)
            await self.store.connect()
        await self.pool.get_connection().prepare_schema("broker", SCHEMA_SQL)
        self.registry.start()
        self.cache.start()

    def queue_config(self, stage: str) -> QueueConfig:
        queues = self.config.queues
        mapping = {
            "transcription": queues.transcription,
            "burn-in": queues.burn_in,
            "cleanup": queues.cleanup,
        }
        if stage not in mapping:
            raise ValueError(f"Unknown stage '{stage}' (expected one of: {', '.join(STAGES)})")
        return mapping[stage]

    def stage_handler(self, stage: str) -> JobHandler:
        tmp_dir = self.config.cleanup.tmp_dir
        if stage == "transcription":
            return TranscriptionStage(
                self.lifecycle, self.store, self.storage, self.speech, self.media, tmp_dir
            )
        if stage == "burn-in":
            return BurnInStage(self.lifecycle, self.store, self.storage, self.media, tmp_dir)
        if stage == "cleanup":
            return CleanupStage(self.config.cleanup)
        raise ValueError(f"Unknown stage '{stage}' (expected one of: {', '.join(STAGES)})")

    def worker(self, stage: str, worker_id: Optional[str] = None) -> QueueWorker:
        """Consumer for ``stage`` over the shared broker connection."""
        return QueueWorker(
            self.broker,
            self.queue_config(stage).name,
            self.stage_handler(stage),
            poll_interval_s=self.config.broker.poll_interval_s,
            worker_id=worker_id,
        )

    async def schedule_cleanup(self):
        return await schedule_cleanup(
            self.registry,
            self.config.cleanup.repeat_every_s,
            self.config.queues.cleanup.name,
        )

    def stats(self) -> Dict[str, Any]:
        """Connection, cache and queue statistics in one snapshot."""
        return {
            "connection_pool": self.pool.stats(),
            "job_cache": self.cache.stats(),
            "queues": self.registry.stats(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def _monitor_loop(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            logger.info("Broker optimization stats: %s", json.dumps(self.stats(), default=str))

    def start_monitoring(self, interval_s: float = 300.0) -> None:
        """Log ``stats()`` every ``interval_s`` seconds."""
        if self._monitor is None:
            self._monitor = asyncio.get_running_loop().create_task(self._monitor_loop(interval_s))

    async def shutdown(self) -> None:
        if self._monitor is not None:
            self._monitor.cancel()
            try:
                await self._monitor
            except asyncio.CancelledError:
                pass
            self._monitor = None

        await self.cache.close()
        await self.registry.close()

        if isinstance(self.store, SQLVideoStore):
            await self.store.disconnect()
        if isinstance(self.speech, WhisperClient):
            await self.speech.aclose()

        await self.pool.shutdown()
        self._broker = None
        logger.info("Runtime shut down")

    async def __aenter__(self) -> "Runtime":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()
