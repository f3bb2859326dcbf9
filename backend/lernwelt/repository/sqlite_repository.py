"""
SQLite repository - relational task storage on aiosqlite.

Provides:
- Upsert of the parent row plus positional child rows in one transaction
- UNIQUE fingerprint enforcement mapped to DuplicateFingerprint
- Raw float32 audio blobs tied to tasks by foreign key (cascade on delete)
- Online backup export
"""

from __future__ import annotations

import logging
import sqlite3
from collections import defaultdict
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..audio.clip import DEFAULT_SAMPLE_RATE, AudioClip
from ..db.connection import DatabaseManager
from ..db.schema import FilterOptions, TaskRecord
from ..errors import DuplicateFingerprint, PersistenceFailure, StorageUnavailable
from .base import RepositoryType
from .rows import (
    STEP_COLUMNS,
    TABLE_ROW_COLUMNS,
    TASK_COLUMNS,
    record_from_rows,
    step_rows,
    table_rows,
    task_to_row,
    teacher_step_rows,
)

logger = logging.getLogger(__name__)

_UPSERT_TASK_SQL = (
    f"INSERT INTO tasks ({', '.join(TASK_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in TASK_COLUMNS)}) "
    "ON CONFLICT(id) DO UPDATE SET "
    + ", ".join(f"{c} = excluded.{c}" for c in TASK_COLUMNS if c != "id")
)
_INSERT_STEP_SQL = (
    f"INSERT INTO task_steps (task_id, position, {', '.join(STEP_COLUMNS)}) "
    f"VALUES (?, ?, {', '.join('?' for _ in STEP_COLUMNS)})"
)
_INSERT_TABLE_ROW_SQL = (
    f"INSERT INTO task_solution_rows (task_id, position, {', '.join(TABLE_ROW_COLUMNS)}) "
    f"VALUES (?, ?, {', '.join('?' for _ in TABLE_ROW_COLUMNS)})"
)
_INSERT_TEACHER_STEP_SQL = (
    "INSERT INTO teacher_student_steps (task_id, position, step_text) VALUES (?, ?, ?)"
)

_CHILD_TABLES = ("task_steps", "task_solution_rows", "teacher_student_steps")

# Stay well below SQLITE_MAX_VARIABLE_NUMBER on old builds
_IN_CHUNK = 500


class SQLiteRepository:
    """
    TaskRepository backed by an embedded SQLite file.

    Encapsulates all database interactions for tasks, child rows, audio and
    metadata. Every public method runs inside exactly one transaction.
    """

    repository_type = RepositoryType.SQLITE

    def __init__(self, db_path: Path, *, sample_rate: int = DEFAULT_SAMPLE_RATE):
        """
        Initialize repository.

        Args:
            db_path: Path to the SQLite database file
            sample_rate: Sample rate attached to audio read back from blobs
        """
        self.db = DatabaseManager(db_path)
        self.sample_rate = sample_rate

    # ==================== Lifecycle ====================

    async def init(self) -> None:
        try:
            await self.db.init()
        except (OSError, sqlite3.Error) as e:
            raise StorageUnavailable(f"SQLite unavailable at {self.db.db_path}: {e}") from e

    async def close(self) -> None:
        await self.db.close()

    async def export_database(self, dest: Path) -> Path:
        """Write a consistent copy of the live database to ``dest``."""
        try:
            path = await self.db.backup_to(dest)
        except (OSError, sqlite3.Error) as e:
            raise PersistenceFailure(f"Database export failed: {e}") from e
        logger.info("Exported SQLite database to %s", path)
        return path

    @asynccontextmanager
    async def _transaction(self, action: str):
        """Transaction whose driver errors surface as PersistenceFailure."""
        try:
            async with self.db.transaction():
                yield
        except sqlite3.Error as e:
            raise PersistenceFailure(f"SQLite {action} failed: {e}") from e

    # ==================== Hydration ====================

    async def _fetch_children(self, table: str, ids: Optional[Sequence[str]]) -> Dict[str, list]:
        grouped: Dict[str, list] = defaultdict(list)
        if ids is None:
            rows = await self.db.fetch_all(
                f"SELECT * FROM {table} ORDER BY task_id, position"
            )
            for row in rows:
                grouped[row["task_id"]].append(row)
            return grouped

        for start in range(0, len(ids), _IN_CHUNK):
            chunk = ids[start:start + _IN_CHUNK]
            placeholders = ", ".join("?" for _ in chunk)
            rows = await self.db.fetch_all(
                f"SELECT * FROM {table} WHERE task_id IN ({placeholders}) "
                "ORDER BY task_id, position",
                tuple(chunk),
            )
            for row in rows:
                grouped[row["task_id"]].append(row)
        return grouped

    async def _hydrate(self, task_rows: list, *, all_tasks: bool = False) -> List[TaskRecord]:
        """Attach child rows; must run inside a transaction."""
        if not task_rows:
            return []
        ids = None if all_tasks else [row["id"] for row in task_rows]
        steps = await self._fetch_children("task_steps", ids)
        solution_rows = await self._fetch_children("task_solution_rows", ids)
        teacher_steps = await self._fetch_children("teacher_student_steps", ids)
        return [
            record_from_rows(
                row,
                steps.get(row["id"], []),
                solution_rows.get(row["id"], []),
                teacher_steps.get(row["id"], []),
            )
            for row in task_rows
        ]

    # ==================== Records ====================

    async def get_all(self) -> List[TaskRecord]:
        async with self._transaction("read tasks"):
            rows = await self.db.fetch_all(
                "SELECT * FROM tasks ORDER BY timestamp DESC, rowid ASC"
            )
            return await self._hydrate(rows, all_tasks=True)

    async def get_by_id(self, task_id: str) -> Optional[TaskRecord]:
        async with self._transaction("read task"):
            row = await self.db.fetch_one("SELECT * FROM tasks WHERE id = ?", (task_id,))
            if row is None:
                return None
            records = await self._hydrate([row])
        return records[0]

    async def save(self, task: TaskRecord) -> None:
        """
        Upsert the parent row and rewrite its child rows.

        The parent is never deleted, so audio_buffers (ON DELETE CASCADE)
        survives a re-save.
        """
        fingerprint = task.file_fingerprint or None
        row = task_to_row(task)
        try:
            async with self.db.transaction():
                if fingerprint:
                    holder = await self.db.fetch_one(
                        "SELECT id, task_title FROM tasks WHERE file_fingerprint = ? AND id != ?",
                        (fingerprint, task.id),
                    )
                    if holder is not None:
                        raise DuplicateFingerprint(
                            fingerprint,
                            existing_id=holder["id"],
                            existing_title=holder["task_title"],
                        )

                await self.db.execute(
                    _UPSERT_TASK_SQL,
                    tuple(int(row[c]) if c == "is_test_data" else row[c] for c in TASK_COLUMNS),
                )
                for table in _CHILD_TABLES:
                    await self.db.execute(f"DELETE FROM {table} WHERE task_id = ?", (task.id,))

                await self.db.execute_many(
                    _INSERT_STEP_SQL,
                    [
                        (r["task_id"], r["position"], *(r[c] for c in STEP_COLUMNS))
                        for r in step_rows(task)
                    ],
                )
                await self.db.execute_many(
                    _INSERT_TABLE_ROW_SQL,
                    [
                        (r["task_id"], r["position"], *(r[c] for c in TABLE_ROW_COLUMNS))
                        for r in table_rows(task)
                    ],
                )
                await self.db.execute_many(
                    _INSERT_TEACHER_STEP_SQL,
                    [
                        (r["task_id"], r["position"], r["step_text"])
                        for r in teacher_step_rows(task)
                    ],
                )
        except sqlite3.IntegrityError as e:
            if fingerprint and "file_fingerprint" in str(e):
                raise DuplicateFingerprint(fingerprint) from e
            raise PersistenceFailure(f"Failed to save task {task.id}: {e}") from e
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Failed to save task {task.id}: {e}") from e

    async def save_batch(self, tasks: Iterable[TaskRecord]) -> None:
        for task in tasks:
            await self.save(task)

    async def delete(self, task_id: str) -> None:
        # Child rows and audio go with the parent via ON DELETE CASCADE
        async with self._transaction("delete"):
            await self.db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))

    async def clear_all(self, only_test_data: bool = False) -> None:
        async with self._transaction("clear"):
            if only_test_data:
                cursor = await self.db.execute("DELETE FROM tasks WHERE is_test_data = 1")
            else:
                cursor = await self.db.execute("DELETE FROM tasks")
                await self.db.execute("DELETE FROM audio_buffers")
            removed = cursor.rowcount
        logger.info(
            "SQLite cleared %d records%s",
            removed,
            " (test data only)" if only_test_data else "",
        )

    async def find_by_fingerprint(self, fingerprint: str) -> Optional[TaskRecord]:
        if not fingerprint:
            return None
        async with self._transaction("fingerprint lookup"):
            row = await self.db.fetch_one(
                "SELECT * FROM tasks WHERE file_fingerprint = ?", (fingerprint,)
            )
            if row is None:
                return None
            records = await self._hydrate([row])
        return records[0]

    async def exists(self, fingerprint: str) -> bool:
        if not fingerprint:
            return False
        async with self._transaction("fingerprint lookup"):
            row = await self.db.fetch_one(
                "SELECT 1 FROM tasks WHERE file_fingerprint = ?", (fingerprint,)
            )
        return row is not None

    async def filter_by_hierarchy(self, options: FilterOptions) -> List[TaskRecord]:
        where, params = self._hierarchy_clause(options)
        async with self._transaction("filter"):
            rows = await self.db.fetch_all(
                f"SELECT * FROM tasks{where} ORDER BY timestamp DESC, rowid ASC",
                params,
            )
            return await self._hydrate(rows)

    @staticmethod
    def _hierarchy_clause(options: FilterOptions, extra: Sequence[str] = ()) -> tuple:
        clauses: List[str] = list(extra)
        params: List[Any] = []
        for column in ("grade", "subject", "sub_subject"):
            value = getattr(options, column)
            if value:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, tuple(params)

    async def _distinct(self, column: str, options: FilterOptions) -> List[str]:
        where, params = self._hierarchy_clause(
            options, extra=(f"{column} IS NOT NULL", f"{column} != ''")
        )
        async with self._transaction("distinct query"):
            rows = await self.db.fetch_all(
                f"SELECT DISTINCT {column} FROM tasks{where} ORDER BY {column}",
                params,
            )
        return [row[column] for row in rows]

    async def get_unique_grades(self) -> List[str]:
        return await self._distinct("grade", FilterOptions())

    async def get_unique_subjects(self, grade: Optional[str] = None) -> List[str]:
        return await self._distinct("subject", FilterOptions(grade=grade))

    async def get_unique_sub_subjects(
        self, grade: Optional[str] = None, subject: Optional[str] = None
    ) -> List[str]:
        return await self._distinct("sub_subject", FilterOptions(grade=grade, subject=subject))

    # ==================== Audio ====================

    async def save_audio(self, key: str, clip: AudioClip) -> None:
        try:
            async with self.db.transaction():
                await self.db.execute(
                    "INSERT INTO audio_buffers (task_id, buffer) VALUES (?, ?) "
                    "ON CONFLICT(task_id) DO UPDATE SET buffer = excluded.buffer",
                    (key, clip.to_bytes()),
                )
        except sqlite3.Error as e:
            # FOREIGN KEY failure when no task holds this key
            raise PersistenceFailure(f"Failed to save audio {key}: {e}") from e

    async def get_audio(self, key: str) -> Optional[AudioClip]:
        async with self._transaction("audio read"):
            row = await self.db.fetch_one(
                "SELECT buffer FROM audio_buffers WHERE task_id = ?", (key,)
            )
        if row is None:
            return None
        try:
            return AudioClip.from_bytes(bytes(row["buffer"]), sample_rate=self.sample_rate)
        except ValueError as e:
            raise PersistenceFailure(f"Corrupt audio blob for {key}: {e}") from e

    async def delete_audio(self, key: str) -> None:
        async with self._transaction("audio delete"):
            await self.db.execute("DELETE FROM audio_buffers WHERE task_id = ?", (key,))

    async def clear_audio(self) -> None:
        async with self._transaction("audio clear"):
            await self.db.execute("DELETE FROM audio_buffers")

    # ==================== Metadata ====================

    async def get_meta(self, key: str) -> Optional[str]:
        async with self._transaction("metadata read"):
            row = await self.db.fetch_one(
                "SELECT value FROM app_metadata WHERE key = ?", (key,)
            )
        return row["value"] if row else None

    async def set_meta(self, key: str, value: str) -> None:
        async with self._transaction("metadata write"):
            await self.db.execute(
                "INSERT INTO app_metadata (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
