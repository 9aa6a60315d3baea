"""Shared broker connection pool.

Every queue handle, broker and worker in a process talks to the broker through
one ``PooledConnection``. The pool builds it on first request (construct-once
under concurrent first access) and tears it down once at process exit.

Transport behaviour mirrors a networked broker client:
- lazy establishment: the SQLite file is opened on the first command
- keep-alive: an idle connection is health-checked before reuse
- connect and command (busy) timeouts
- unlimited retries on lock contention with time-increasing backoff, so
  queue-level retry semantics stay in the broker, not the transport
"""

import asyncio
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TypeVar

from sqlite_utils import Database

from ..errors import BrokerUnavailableError
from ..models import BrokerConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE_MESSAGES = ("database is locked", "database is busy", "database table is locked")


def _is_retryable(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return any(fragment in message for fragment in _RETRYABLE_MESSAGES)


class PooledConnection:
    """Single shared broker connection.

    Commands are serialized on an internal lock so the object is safe to use
    from any thread; callers never lock around it.
    """

    def __init__(self, config: BrokerConfig):
        self.config = config
        self.db_path = Path(config.db_path)
        self._db: Optional[Database] = None
        self._command_lock = threading.RLock()
        self._last_used = 0.0
        self._closed = False
        self._schemas: set = set()

    @property
    def status(self) -> str:
        if self._closed:
            return "closed"
        return "ready" if self._db is not None else "wait"

    def _connect(self) -> Database:
        """Open the database file (first command only)."""
        if self._closed:
            raise BrokerUnavailableError("Broker connection has been shut down")

        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.config.connect_timeout_s,
            check_same_thread=False,
            isolation_level=None,  # transactions are explicit (BEGIN IMMEDIATE)
        )
        conn.execute(f"PRAGMA busy_timeout = {int(self.config.command_timeout_s * 1000)}")
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

        logger.info("Broker connection established: %s", self.db_path)
        return Database(conn)

    def _ensure_alive(self) -> Database:
        if self._db is None:
            self._db = self._connect()
        elif time.monotonic() - self._last_used > self.config.keep_alive_s:
            try:
                self._db.conn.execute("SELECT 1")
            except sqlite3.Error as e:
                logger.warning("Broker keep-alive check failed, reconnecting: %s", e)
                self._db = self._connect()
        return self._db

    def retry_delay(self, times: int) -> float:
        """Backoff before transport retry number ``times`` (1-based)."""
        return min(times * self.config.retry_step_s, self.config.retry_cap_s)

    def run(self, fn: Callable[..., T], *args: Any) -> T:
        """Run ``fn(db, *args)`` with lock-contention retries.

        Raises:
            BrokerUnavailableError: If ``max_retries_per_request`` is set and
                exhausted, or the connection was shut down
        """
        times = 0
        while True:
            try:
                with self._command_lock:
                    db = self._ensure_alive()
                    result = fn(db, *args)
                    self._last_used = time.monotonic()
                    return result
            except sqlite3.OperationalError as e:
                if not _is_retryable(e):
                    raise
                times += 1
                limit = self.config.max_retries_per_request
                if limit is not None and times > limit:
                    raise BrokerUnavailableError(
                        f"Broker unavailable after {limit} retries: {e}"
                    ) from e
                delay = self.retry_delay(times)
                logger.warning("Broker retry attempt %d, delay: %.1fs", times, delay)
                time.sleep(delay)

    async def call(self, fn: Callable[..., T], *args: Any) -> T:
        """Async wrapper around ``run`` that keeps the event loop free."""
        return await asyncio.to_thread(self.run, fn, *args)

    def ensure_schema(self, name: str, script: str) -> None:
        """Run a schema script once per connection."""
        if name in self._schemas:
            return

        def _apply(db: Database) -> None:
            db.executescript(script)

        self.run(_apply)
        self._schemas.add(name)

    async def prepare_schema(self, name: str, script: str) -> None:
        """Apply a schema script off the event loop, ahead of first use."""
        await asyncio.to_thread(self.ensure_schema, name, script)

    def close(self) -> None:
        with self._command_lock:
            if self._db is not None:
                self._db.conn.close()
                self._db = None
            self._closed = True
            self._schemas.clear()


class ConnectionPool:
    """Owner of the process-wide broker connection.

    Constructed explicitly at process start and passed to everything that
    needs the broker. ``get_connection`` hands out the same object every time.
    """

    def __init__(self, config: BrokerConfig):
        self.config = config
        self._lock = threading.Lock()
        self._connection: Optional[PooledConnection] = None
        self._acquisitions = 0

    def get_connection(self) -> PooledConnection:
        """Return the shared connection, creating it on first request."""
        with self._lock:
            if self._connection is None:
                self._connection = PooledConnection(self.config)
                logger.info("Broker connection pool created for %s", self.config.db_path)
            self._acquisitions += 1
            logger.debug("Broker connection requested, total acquisitions: %d", self._acquisitions)
            return self._connection

    def stats(self) -> Dict[str, Any]:
        """Connection statistics (observability only)."""
        connection = self._connection
        return {
            "has_connection": connection is not None,
            "status": connection.status if connection is not None else "none",
            "acquisitions": self._acquisitions,
        }

    async def shutdown(self) -> None:
        """Close the connection and reset pool state (call once at exit)."""
        with self._lock:
            connection = self._connection
            self._connection = None
            self._acquisitions = 0

        if connection is not None:
            await asyncio.to_thread(connection.close)
            logger.info("Broker connection pool closed")
