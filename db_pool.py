"""Pooled SQLite connections shared by the progress and escalation stores."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Queue
from typing import Generator

logger = logging.getLogger(__name__)

class SQLiteConnectionPool:
    """Thread-safe SQLite connection pool.

    Connections are created lazily up to ``max_connections`` and shared
    across threads, so they are opened with ``check_same_thread=False``.
    """

    def __init__(self, database: str, max_connections: int = 5, timeout: float = 5.0):
        self.database = database
        self.max_connections = max_connections
        self.timeout = timeout
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._created_connections = 0

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database, timeout=self.timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a connection from the pool or create a new one if needed."""
        connection = None
        try:
            connection = self._pool.get(block=False)
        except Empty:
            with self._lock:
                if self._created_connections < self.max_connections:
                    connection = self._create_connection()
                    self._created_connections += 1
                    logger.debug("Created new connection to %s (total: %d)", self.database, self._created_connections)
            if connection is None:
                # Limit reached, wait for a connection to come back
                connection = self._pool.get(block=True)

        try:
            yield connection
        finally:
            try:
                # Discard anything the caller left uncommitted
                connection.rollback()
                self._pool.put(connection)
            except sqlite3.Error as e:
                logger.error("Error returning connection to pool: %s", e)
                connection.close()
                with self._lock:
                    self._created_connections -= 1

    def close_all(self) -> None:
        """Close every idle connection; used on shutdown and between tests."""
        closed = 0
        while True:
            try:
                connection = self._pool.get(block=False)
            except Empty:
                break
            connection.close()
            closed += 1
        with self._lock:
            self._created_connections -= closed
        logger.debug("Closed %d pooled connections to %s", closed, self.database)
