"""
Row mapping between TaskRecord and the normalized relational layout.

Shared by the SQLite and remote adapters, which use the same tables:
tasks, task_steps, task_solution_rows, teacher_student_steps.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping

from ..db.schema import Step, TableRow, TaskRecord, TeacherSection

TASK_COLUMNS = (
    "id",
    "display_id",
    "page_number",
    "grade",
    "subject",
    "sub_subject",
    "task_title",
    "task_description_de",
    "task_description_vi",
    "final_solution_de",
    "final_solution_vi",
    "learning_goal_de",
    "explanation_de",
    "summary_de",
    "file_fingerprint",
    "timestamp",
    "image_preview",
    "is_test_data",
)

STEP_COLUMNS = ("title_de", "title_vi", "description_de", "description_vi")
TABLE_ROW_COLUMNS = ("task_number", "label_de", "label_vi", "value_de", "value_vi")


def task_to_row(task: TaskRecord) -> Dict[str, Any]:
    """Parent row; empty fingerprints are stored as NULL so UNIQUE ignores them."""
    teacher = task.teacher_section
    return {
        "id": task.id,
        "display_id": task.display_id,
        "page_number": task.page_number,
        "grade": task.grade,
        "subject": task.subject,
        "sub_subject": task.sub_subject,
        "task_title": task.task_title,
        "task_description_de": task.task_description_de,
        "task_description_vi": task.task_description_vi,
        "final_solution_de": task.final_solution_de,
        "final_solution_vi": task.final_solution_vi,
        "learning_goal_de": teacher.learning_goal_de,
        "explanation_de": teacher.explanation_de,
        "summary_de": teacher.summary_de,
        "file_fingerprint": task.file_fingerprint or None,
        "timestamp": task.timestamp,
        "image_preview": task.image_preview,
        "is_test_data": task.is_test_data,
    }


def step_rows(task: TaskRecord) -> List[Dict[str, Any]]:
    return [
        {"task_id": task.id, "position": i, **step.model_dump()}
        for i, step in enumerate(task.steps)
    ]


def table_rows(task: TaskRecord) -> List[Dict[str, Any]]:
    return [
        {"task_id": task.id, "position": i, **row.model_dump()}
        for i, row in enumerate(task.solution_table)
    ]


def teacher_step_rows(task: TaskRecord) -> List[Dict[str, Any]]:
    return [
        {"task_id": task.id, "position": i, "step_text": text}
        for i, text in enumerate(task.teacher_section.student_steps_de)
    ]


def _by_position(rows: Iterable[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
    return sorted(rows, key=lambda r: r["position"])


def record_from_rows(
    task_row: Mapping[str, Any],
    steps: Iterable[Mapping[str, Any]],
    solution_rows: Iterable[Mapping[str, Any]],
    teacher_steps: Iterable[Mapping[str, Any]],
) -> TaskRecord:
    """Hydrate a record; child order is rebuilt from ``position``."""
    row = dict(task_row)
    return TaskRecord(
        id=row["id"],
        display_id=row.get("display_id"),
        page_number=row.get("page_number") or 1,
        grade=row.get("grade") or "",
        subject=row.get("subject") or "",
        sub_subject=row.get("sub_subject") or "",
        task_title=row.get("task_title") or "",
        task_description_de=row.get("task_description_de") or "",
        task_description_vi=row.get("task_description_vi") or "",
        final_solution_de=row.get("final_solution_de") or "",
        final_solution_vi=row.get("final_solution_vi") or "",
        file_fingerprint=row.get("file_fingerprint"),
        timestamp=int(row["timestamp"]),
        image_preview=row.get("image_preview"),
        is_test_data=bool(row.get("is_test_data")),
        steps=[
            Step(**{c: s[c] or "" for c in STEP_COLUMNS}) for s in _by_position(steps)
        ],
        solution_table=[
            TableRow(**{c: r[c] or "" for c in TABLE_ROW_COLUMNS})
            for r in _by_position(solution_rows)
        ],
        teacher_section=TeacherSection(
            learning_goal_de=row.get("learning_goal_de") or "",
            student_steps_de=[t["step_text"] for t in _by_position(teacher_steps)],
            explanation_de=row.get("explanation_de") or "",
            summary_de=row.get("summary_de") or "",
        ),
    )
