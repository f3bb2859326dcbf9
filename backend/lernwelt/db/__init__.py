"""
Database module for task persistence.

Provides SQLite-based storage for:
- Task records with positional child rows (steps, solution rows, teacher steps)
- Raw audio buffers per task
- Application metadata (schema version, migration flags)

Usage:
    from lernwelt.db import DatabaseManager

    db = DatabaseManager(Path("data/lernwelt.sqlite3"))
    await db.init()

    async with db.transaction():
        rows = await db.fetch_all("SELECT id FROM tasks")
"""

from .connection import DatabaseManager
from .schema import (
    SCHEMA_VERSION,
    FilterOptions,
    Step,
    TableRow,
    TaskContent,
    TaskRecord,
    TeacherSection,
    now_ms,
)

__all__ = [
    # Connection
    "DatabaseManager",
    # Models
    "SCHEMA_VERSION",
    "FilterOptions",
    "Step",
    "TableRow",
    "TaskContent",
    "TaskRecord",
    "TeacherSection",
    "now_ms",
]
