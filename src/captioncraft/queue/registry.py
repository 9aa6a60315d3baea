"""Lazy queue registry.

Queue handles are created the first time a producer asks for a queue name and
reused afterwards. Handles that nobody has touched for ``idle_timeout_s`` are
closed by a periodic sweep, so producers never have to track handle lifetime.
"""

import asyncio
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from ..models import QueuesConfig, RegistryConfig
from .backends import Broker
from .connection import ConnectionPool, PooledConnection
from .models import JobHandle, JobOptions
from .sqlite_backend import SQLiteBroker

logger = logging.getLogger(__name__)


class QueueHandle:
    """Producer-side handle to one named queue over the pooled connection."""

    def __init__(
        self,
        name: str,
        connection: PooledConnection,
        default_options: Optional[JobOptions] = None,
        broker_factory: Callable[[PooledConnection], Broker] = SQLiteBroker,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.connection = connection
        self.default_options = default_options or JobOptions()
        self.broker = broker_factory(connection)
        self.clock = clock
        self.last_used_at = clock()
        self.closed = False

    def touch(self) -> None:
        self.last_used_at = self.clock()

    async def add(
        self,
        job_type: str,
        payload: Dict[str, Any],
        options: Optional[Dict[str, Any]] = None,
    ) -> JobHandle:
        """Enqueue one job with this queue's default options plus ``options``."""
        if self.closed:
            raise RuntimeError(f"Queue handle '{self.name}' is closed")
        self.touch()
        return await self.broker.enqueue(
            self.name, job_type, payload, self.default_options.merged(options)
        )

    async def close(self) -> None:
        # The pooled connection is shared; closing a handle only retires it
        self.closed = True


class QueueRegistry:
    """Creates queue handles on demand and evicts idle ones."""

    def __init__(
        self,
        pool: ConnectionPool,
        queues: Optional[QueuesConfig] = None,
        config: Optional[RegistryConfig] = None,
        broker_factory: Callable[[PooledConnection], Broker] = SQLiteBroker,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.pool = pool
        self.queues = queues or QueuesConfig()
        self.config = config or RegistryConfig()
        self.broker_factory = broker_factory
        self.clock = clock
        self._handles: Dict[str, QueueHandle] = {}
        self._lock = threading.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    def get_queue(self, name: str) -> QueueHandle:
        """Return the handle for ``name``, creating it if needed."""
        with self._lock:
            handle = self._handles.get(name)
            if handle is not None:
                logger.debug("Reusing existing queue: %s", name)
            else:
                logger.info("Creating new lazy queue: %s", name)
                queue_config = self.queues.by_name(name)
                handle = QueueHandle(
                    name,
                    self.pool.get_connection(),
                    queue_config.job_options if queue_config else None,
                    self.broker_factory,
                    self.clock,
                )
                self._handles[name] = handle
            handle.touch()
            return handle

    async def sweep_idle(self) -> List[str]:
        """Close and remove handles unused beyond the idle threshold."""
        now = self.clock()
        with self._lock:
            idle = [
                name
                for name, handle in self._handles.items()
                if now - handle.last_used_at > self.config.idle_timeout_s
            ]
            retired = [self._handles.pop(name) for name in idle]

        for handle in retired:
            try:
                await handle.close()
                logger.debug("Destroyed idle queue: %s", handle.name)
            except Exception as e:
                logger.error("Error destroying queue %s: %s", handle.name, e)

        if idle:
            logger.info("Cleaned up %d idle queues: %s", len(idle), ", ".join(idle))
        return idle

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval_s)
            await self.sweep_idle()

    def start(self) -> None:
        """Start the periodic idle sweep on the running loop."""
        if self._sweeper is None:
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "active_queues": len(self._handles),
                "queue_names": list(self._handles),
                "last_used": {name: h.last_used_at for name, h in self._handles.items()},
            }

    async def close(self) -> None:
        """Stop the sweep and close every open handle."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()

        for handle in handles:
            try:
                await handle.close()
            except Exception as e:
                logger.error("Error closing queue %s: %s", handle.name, e)

        logger.info("All queues closed")
