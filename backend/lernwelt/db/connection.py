"""
SQLite access for the task library.

One aiosqlite connection per database file. Every statement runs inside
``transaction()``, which holds the manager's lock and records the owning
asyncio task, so statements from two coroutines never interleave.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence

import aiosqlite

from .schema import SCHEMA_SQL, SCHEMA_VERSION

logger = logging.getLogger(__name__)

# Columns introduced after the first schema revision: (table, column, definition)
ADDED_COLUMNS = (
    ("tasks", "display_id", "TEXT"),
    ("tasks", "image_preview", "TEXT"),
    ("tasks", "is_test_data", "INTEGER NOT NULL DEFAULT 0"),
)


class DatabaseManager:
    """Owns the connection, the schema and the transaction lock."""

    def __init__(self, db_path: Path, *, busy_timeout: float = 5.0):
        self.db_path = Path(db_path)
        self.busy_timeout = busy_timeout
        self._conn: Optional[aiosqlite.Connection] = None
        self._open_lock = asyncio.Lock()
        self._lock = asyncio.Lock()
        self._owner: Optional[asyncio.Task] = None

    # ==================== Lifecycle ====================

    async def init(self) -> None:
        """Open the file, create missing tables and columns, stamp the schema version."""
        async with self._open_lock:
            if self._conn is not None:
                return
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = await aiosqlite.connect(str(self.db_path), timeout=self.busy_timeout)
            try:
                conn.row_factory = aiosqlite.Row
                await conn.executescript(SCHEMA_SQL)
                for table, column, definition in ADDED_COLUMNS:
                    await self._add_column(conn, table, column, definition)
                await conn.execute(
                    "INSERT INTO app_metadata (key, value) VALUES ('schema_version', ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (SCHEMA_VERSION,),
                )
                await conn.commit()
            except BaseException:
                await conn.close()
                raise
            self._conn = conn
            logger.info("SQLite database ready: %s (schema %s)", self.db_path, SCHEMA_VERSION)

    async def _add_column(self, conn: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
        # SQLite has no ADD COLUMN IF NOT EXISTS
        async with conn.execute(f"PRAGMA table_info({table})") as cursor:
            present = {row["name"] for row in await cursor.fetchall()}
        if column in present:
            return
        await conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
        logger.info("Upgraded %s: added column %s.%s", self.db_path.name, table, column)

    async def close(self) -> None:
        async with self._lock:
            if self._conn is not None:
                await self._conn.close()
                self._conn = None

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._conn

    # ==================== Statements ====================

    def _check_owner(self, operation: str) -> None:
        if self._owner is None:
            raise RuntimeError(f"{operation} needs 'async with db.transaction()'")
        if self._owner is not asyncio.current_task():
            raise RuntimeError(f"{operation} called while another task holds the transaction")

    async def execute(self, sql: str, parameters: Sequence[Any] = ()) -> aiosqlite.Cursor:
        self._check_owner("execute")
        return await self.connection.execute(sql, parameters)

    async def execute_many(self, sql: str, rows: Iterable[Sequence[Any]]) -> None:
        self._check_owner("execute_many")
        await self.connection.executemany(sql, rows)

    async def fetch_one(self, sql: str, parameters: Sequence[Any] = ()) -> Optional[aiosqlite.Row]:
        self._check_owner("fetch_one")
        async with self.connection.execute(sql, parameters) as cursor:
            return await cursor.fetchone()

    async def fetch_all(self, sql: str, parameters: Sequence[Any] = ()) -> List[aiosqlite.Row]:
        self._check_owner("fetch_all")
        async with self.connection.execute(sql, parameters) as cursor:
            return list(await cursor.fetchall())

    @asynccontextmanager
    async def transaction(self):
        """
        Run the enclosed statements as one unit.

        Commits on normal exit and rolls back on any exception. Not
        reentrant: opening a second transaction from the owning task raises
        instead of deadlocking on the lock.
        """
        task = asyncio.current_task()
        if self._owner is task:
            raise RuntimeError("Nested transaction() is not allowed")

        async with self._lock:
            conn = self.connection
            self._owner = task
            try:
                await conn.execute("BEGIN")
                try:
                    yield self
                except BaseException:
                    await conn.rollback()
                    raise
                await conn.commit()
            finally:
                self._owner = None

    # ==================== Backup ====================

    async def backup_to(self, dest_path: Path) -> Path:
        """Online copy of the live database; waits for any open transaction."""
        dest_path = Path(dest_path)
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._lock:
            target = await aiosqlite.connect(str(dest_path))
            try:
                await self.connection.backup(target)
            finally:
                await target.close()
        return dest_path
