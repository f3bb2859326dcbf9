"""
Gemini response parser.

Parses the structured JSON answer (camelCase keys) into TaskContent.
"""

import json
import re
from typing import Any, Dict

from pydantic import ValidationError

from ...db.schema import Step, TableRow, TaskContent, TeacherSection
from ...errors import AnalysisFailure

_FENCE = re.compile(r"^\s*```(?:json)?\s*(.*?)\s*```\s*$", re.DOTALL)


def _text(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    return str(value) if value is not None else ""


def parse_task_content(text: str, page_number: int = 1) -> TaskContent:
    """
    Parse the analysis answer.

    Args:
        text: Response text, optionally wrapped in a ```json fence
        page_number: Page index passed to the analysis call

    Raises:
        AnalysisFailure: not JSON or not the expected shape
    """
    match = _FENCE.match(text or "")
    raw = match.group(1) if match else (text or "")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise AnalysisFailure(f"Analysis response is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise AnalysisFailure("Analysis response is not a JSON object")

    teacher = data.get("teacherSection") or {}
    try:
        return TaskContent(
            page_number=page_number,
            grade=_text(data, "grade"),
            subject=_text(data, "subject"),
            sub_subject=_text(data, "subSubject"),
            task_title=_text(data, "taskTitle"),
            task_description_de=_text(data, "taskDescription_de"),
            task_description_vi=_text(data, "taskDescription_vi"),
            steps=[Step(**s) for s in data.get("steps") or []],
            solution_table=[
                TableRow(
                    task_number=_text(r, "taskNumber"),
                    label_de=_text(r, "label_de"),
                    label_vi=_text(r, "label_vi"),
                    value_de=_text(r, "value_de"),
                    value_vi=_text(r, "value_vi"),
                )
                for r in data.get("solutionTable") or []
            ],
            final_solution_de=_text(data, "finalSolution_de"),
            final_solution_vi=_text(data, "finalSolution_vi"),
            teacher_section=TeacherSection(
                learning_goal_de=_text(teacher, "learningGoal_de"),
                student_steps_de=[str(s) for s in teacher.get("studentSteps_de") or []],
                explanation_de=_text(teacher, "explanation_de"),
                summary_de=_text(teacher, "summary_de"),
            ),
        )
    except (ValidationError, TypeError, AttributeError) as e:
        raise AnalysisFailure(f"Analysis response has an unexpected shape: {e}") from e
