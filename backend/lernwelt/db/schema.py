"""
Database schema definitions for task persistence.

Uses SQLite with:
- INTEGER timestamps (epoch milliseconds)
- UNIQUE constraint on the file fingerprint for deduplication
- Foreign key cascades for child rows and audio
- Positional child rows (order is rebuilt from `position`, never from storage order)

The same table layout is used by the remote store, so the two relational
adapters can read each other's data.
"""

import time
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


SCHEMA_VERSION = "1.1.0"


# ==================== Pydantic Models ====================

class Step(BaseModel):
    """One bilingual solution step."""
    title_de: str = ""
    title_vi: str = ""
    description_de: str = ""
    description_vi: str = ""


class TableRow(BaseModel):
    """One row of the solution table."""
    task_number: str = ""
    label_de: str = ""
    label_vi: str = ""
    value_de: str = ""
    value_vi: str = ""


class TeacherSection(BaseModel):
    """Teacher annotation block (German only)."""
    learning_goal_de: str = ""
    student_steps_de: List[str] = Field(default_factory=list)
    explanation_de: str = ""
    summary_de: str = ""


class TaskContent(BaseModel):
    """Structured content produced by the analysis provider."""
    model_config = ConfigDict(from_attributes=True)

    page_number: int = 1
    grade: str = ""
    subject: str = ""
    sub_subject: str = ""
    task_title: str = ""
    task_description_de: str = ""
    task_description_vi: str = ""
    steps: List[Step] = Field(default_factory=list)
    solution_table: List[TableRow] = Field(default_factory=list)
    final_solution_de: str = ""
    final_solution_vi: str = ""
    teacher_section: TeacherSection = Field(default_factory=TeacherSection)
    image_preview: Optional[str] = None  # data URL or remote URL


class TaskRecord(TaskContent):
    """Persisted task record."""
    id: str
    display_id: Optional[str] = None  # e.g. K2_MAT_1, assigned once
    file_fingerprint: Optional[str] = None
    timestamp: int  # epoch milliseconds
    is_test_data: bool = False

    @classmethod
    def from_content(
        cls,
        content: TaskContent,
        *,
        id: str,
        timestamp: Optional[int] = None,
        file_fingerprint: Optional[str] = None,
        is_test_data: bool = False,
    ) -> "TaskRecord":
        """Promote analysis output to a record (caller supplies identity)."""
        return cls(
            **content.model_dump(),
            id=id,
            timestamp=timestamp if timestamp is not None else now_ms(),
            file_fingerprint=file_fingerprint,
            is_test_data=is_test_data,
        )


class FilterOptions(BaseModel):
    """Hierarchy filter; empty fields are ignored."""
    grade: Optional[str] = None
    subject: Optional[str] = None
    sub_subject: Optional[str] = None

    def matches(self, task: TaskRecord) -> bool:
        if self.grade and task.grade != self.grade:
            return False
        if self.subject and task.subject != self.subject:
            return False
        if self.sub_subject and task.sub_subject != self.sub_subject:
            return False
        return True


# ==================== SQL DDL ====================

SCHEMA_SQL = """
PRAGMA foreign_keys = ON;
PRAGMA journal_mode = WAL;
PRAGMA synchronous = NORMAL;
PRAGMA busy_timeout = 5000;

-- Main task table
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    display_id TEXT,
    page_number INTEGER NOT NULL DEFAULT 1,
    grade TEXT NOT NULL DEFAULT '',
    subject TEXT NOT NULL DEFAULT '',
    sub_subject TEXT,
    task_title TEXT NOT NULL DEFAULT '',
    task_description_de TEXT,
    task_description_vi TEXT,
    final_solution_de TEXT,
    final_solution_vi TEXT,
    learning_goal_de TEXT,
    explanation_de TEXT,
    summary_de TEXT,
    file_fingerprint TEXT UNIQUE,  -- NULL for records without a source file
    timestamp INTEGER NOT NULL,
    image_preview TEXT,
    is_test_data INTEGER NOT NULL DEFAULT 0
);

-- Solution steps
CREATE TABLE IF NOT EXISTS task_steps (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    title_de TEXT,
    title_vi TEXT,
    description_de TEXT,
    description_vi TEXT,
    FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE
);

-- Solution table rows
CREATE TABLE IF NOT EXISTS task_solution_rows (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    task_number TEXT,
    label_de TEXT,
    label_vi TEXT,
    value_de TEXT,
    value_vi TEXT,
    FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE
);

-- Recommended instructional steps (teacher section)
CREATE TABLE IF NOT EXISTS teacher_student_steps (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    step_text TEXT NOT NULL,
    FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE
);

-- Singleton metadata (schema version, migration flags)
CREATE TABLE IF NOT EXISTS app_metadata (
    key TEXT PRIMARY KEY,
    value TEXT
);

-- Raw float32 PCM per task
CREATE TABLE IF NOT EXISTS audio_buffers (
    task_id TEXT PRIMARY KEY,
    buffer BLOB NOT NULL,
    FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_tasks_grade ON tasks(grade);
CREATE INDEX IF NOT EXISTS idx_tasks_subject ON tasks(grade, subject);
CREATE INDEX IF NOT EXISTS idx_tasks_timestamp ON tasks(timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_steps_task ON task_steps(task_id, position);
CREATE INDEX IF NOT EXISTS idx_rows_task ON task_solution_rows(task_id, position);
CREATE INDEX IF NOT EXISTS idx_teacher_steps_task ON teacher_student_steps(task_id, position);
"""


# ==================== Helper Functions ====================

def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


def sort_newest_first(tasks: List[TaskRecord]) -> List[TaskRecord]:
    """Sort by timestamp descending; stable, so ties keep their input order."""
    return sorted(tasks, key=lambda t: t.timestamp, reverse=True)
