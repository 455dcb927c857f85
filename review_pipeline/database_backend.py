"""
Database backend for the review directory.

Defines the interface the pipeline's persistence layer relies on and a
concrete SQLiteBackend. Connections run in autocommit mode; anything that
must be atomic (queue claims, bulk enqueue, tally increments) goes through
transaction(), which takes the write lock up front with BEGIN IMMEDIATE.
"""

import logging
import sqlite3
from contextlib import contextmanager
from typing import Protocol, Dict, Any, Optional, List, Iterator

log = logging.getLogger("pipeline")


class DatabaseBackend(Protocol):
    """Interface the DirectoryDB is written against."""

    # Connection lifecycle
    def connect(self) -> None: ...
    def close(self) -> None: ...

    # Query execution
    def execute(self, sql: str, params: tuple = ()) -> Any: ...
    def executemany(self, sql: str, params_list: List[tuple]) -> Any: ...
    def fetchone(self, sql: str, params: tuple = ()) -> Optional[Dict[str, Any]]: ...
    def fetchall(self, sql: str, params: tuple = ()) -> List[Dict[str, Any]]: ...

    # Transactions
    def transaction(self) -> Any: ...
    def in_transaction(self) -> bool: ...

    # Schema management
    def table_exists(self, name: str) -> bool: ...
    def init_schema(self, version: int, ddl_statements: List[str]) -> None: ...
    def get_schema_version(self) -> int: ...
    def migrate(self, from_version: int, to_version: int,
                migrations: Dict[int, List[str]]) -> None: ...


class SQLiteBackend:
    """SQLite implementation (WAL, one connection per thread)."""

    def __init__(self, db_path: str = "directory.db"):
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None
        self._depth = 0

    def connect(self) -> None:
        # isolation_level=None: no implicit BEGIN, we issue our own.
        self.conn = sqlite3.connect(self.db_path, timeout=30.0,
                                    isolation_level=None)
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=30000")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self.conn.row_factory = sqlite3.Row

    def close(self) -> None:
        if self.conn:
            self.conn.close()
            self.conn = None
            self._depth = 0

    def _ensure_connected(self) -> sqlite3.Connection:
        if self.conn is None:
            self.connect()
        return self.conn  # type: ignore[return-value]

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        return self._ensure_connected().execute(sql, params)

    def executemany(self, sql: str, params_list: List[tuple]) -> sqlite3.Cursor:
        return self._ensure_connected().executemany(sql, params_list)

    def fetchone(self, sql: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        cursor = self.execute(sql, params)
        row = cursor.fetchone()
        return dict(row) if row else None

    def fetchall(self, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
        cursor = self.execute(sql, params)
        return [dict(r) for r in cursor.fetchall()]

    def scalar(self, sql: str, params: tuple = (), default: Any = 0) -> Any:
        """Return the first column of the first row, or *default*."""
        row = self.execute(sql, params).fetchone()
        if row is None or row[0] is None:
            return default
        return row[0]

    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def transaction(self) -> Iterator["SQLiteBackend"]:
        """
        Write transaction with commit on success, rollback on error.

        Nested use joins the outer transaction instead of opening a new one.
        """
        conn = self._ensure_connected()
        if self._depth:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return

        conn.execute("BEGIN IMMEDIATE")
        self._depth = 1
        try:
            yield self
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
        finally:
            self._depth = 0

    def table_exists(self, name: str) -> bool:
        row = self.fetchone(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
            (name,)
        )
        return row is not None

    def init_schema(self, version: int, ddl_statements: List[str]) -> None:
        conn = self._ensure_connected()
        for ddl in ddl_statements:
            conn.executescript(ddl)
        conn.execute(
            "INSERT OR REPLACE INTO schema_version (id, version, applied_at, description) "
            "VALUES (1, ?, datetime('now'), ?)",
            (version, f"Initial schema v{version}")
        )
        log.debug("Initialized schema v%d in %s", version, self.db_path)

    def get_schema_version(self) -> int:
        if not self.table_exists("schema_version"):
            return 0
        row = self.fetchone("SELECT version FROM schema_version WHERE id = 1")
        return row["version"] if row else 0

    def migrate(self, from_version: int, to_version: int,
                migrations: Dict[int, List[str]]) -> None:
        conn = self._ensure_connected()
        for v in range(from_version + 1, to_version + 1):
            if v not in migrations:
                raise ValueError(f"Missing migration for version {v}")
            for sql in migrations[v]:
                conn.executescript(sql)
            conn.execute(
                "UPDATE schema_version SET version = ?, applied_at = datetime('now'), "
                "description = ? WHERE id = 1",
                (v, f"Migration to v{v}")
            )
            log.info("Migrated %s to schema v%d", self.db_path, v)
