"""Shared DuckDB handle for the user directory and the conversation store.

Both services run against one embedded database. DuckDB connections are
not thread-safe, and store calls are issued from the threadpool, so every
statement goes through :meth:`Database.execute` or a :meth:`transaction`
block, both of which hold the same re-entrant lock.

Usage:
    db = Database(":memory:")
    with db.transaction() as conn:
        conn.execute("INSERT ...")
"""
import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Sequence

import duckdb

from homeserve.chat.errors import Transient

logger = logging.getLogger(__name__)


class Database:
    """Owns a single DuckDB connection guarded by a lock."""

    def __init__(self, db_path: str = ":memory:") -> None:
        self._db_path = db_path
        self._lock = threading.RLock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(db_path)
        logger.info("[Database] Opened %s", db_path)

    @property
    def path(self) -> str:
        return self._db_path

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            raise Transient("Database is closed")
        return self._connection

    def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[tuple]:
        """Run one statement and return all rows (empty for DDL/DML)."""
        with self._lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(sql, params or [])
                return cursor.fetchall() if cursor.description else []
            except duckdb.ConstraintException:
                raise
            except duckdb.Error as exc:
                logger.error("[Database] Statement failed: %s", exc)
                raise Transient("Store unavailable") from exc

    @contextmanager
    def transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Run a block atomically; rolls back on any exception."""
        with self._lock:
            conn = self._get_connection()
            conn.execute("BEGIN TRANSACTION")
            try:
                yield conn
            except duckdb.Error as exc:
                self._rollback(conn)
                logger.error("[Database] Transaction failed: %s", exc)
                raise Transient("Store unavailable") from exc
            except BaseException:
                self._rollback(conn)
                raise
            else:
                try:
                    conn.execute("COMMIT")
                except duckdb.Error as exc:
                    logger.error("[Database] Commit failed: %s", exc)
                    self._rollback(conn)
                    raise Transient("Store unavailable") from exc

    @staticmethod
    def _rollback(conn: duckdb.DuckDBPyConnection) -> None:
        """Best-effort ROLLBACK so the connection never stays inside a transaction."""
        try:
            conn.execute("ROLLBACK")
        except duckdb.Error as exc:
            logger.warning("[Database] Rollback failed: %s", exc)

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
                logger.info("[Database] Closed %s", self._db_path)
