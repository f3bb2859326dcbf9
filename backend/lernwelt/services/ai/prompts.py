"""
Prompt templates and the structured-output schema for the Gemini API.
"""

from ...db.schema import TaskRecord

ANALYSIS_PROMPT = (
    "Analysiere diese Buchseite. Bestimme Klasse, Fach und Thema. "
    "Erstelle Hilfen für Eltern (DE/VI) und Lehrerin-Erklärung (DE)."
)

NARRATION_PREFIX = "Sprich als freundliche Lehrerin: "


def _string(description: str = "") -> dict:
    schema = {"type": "STRING"}
    if description:
        schema["description"] = description
    return schema


_STEP_KEYS = ["title_de", "title_vi", "description_de", "description_vi"]
_ROW_KEYS = ["taskNumber", "label_de", "label_vi", "value_de", "value_vi"]
_TEACHER_KEYS = ["learningGoal_de", "studentSteps_de", "explanation_de", "summary_de"]

RESPONSE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "grade": _string("Die Klassenstufe, z.B. Klasse 2"),
        "subject": _string("Das Schulfach, z.B. Deutsch"),
        "subSubject": _string("Das Thema, z.B. Leseverständnis oder Grammatik"),
        "taskTitle": _string(),
        "taskDescription_de": _string(),
        "taskDescription_vi": _string(),
        "steps": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {k: _string() for k in _STEP_KEYS},
                "required": _STEP_KEYS,
            },
        },
        "solutionTable": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {k: _string() for k in _ROW_KEYS},
                "required": _ROW_KEYS,
            },
        },
        "finalSolution_de": _string(),
        "finalSolution_vi": _string(),
        "teacherSection": {
            "type": "OBJECT",
            "properties": {
                "learningGoal_de": _string(),
                "studentSteps_de": {"type": "ARRAY", "items": _string()},
                "explanation_de": _string(),
                "summary_de": _string(),
            },
            "required": _TEACHER_KEYS,
        },
    },
    "required": [
        "grade",
        "subject",
        "subSubject",
        "taskTitle",
        "taskDescription_de",
        "taskDescription_vi",
        "steps",
        "solutionTable",
        "finalSolution_de",
        "finalSolution_vi",
        "teacherSection",
    ],
}


def build_narration(task: TaskRecord) -> str:
    """Teacher narration: learning goal, recommended steps, final solution."""
    teacher = task.teacher_section
    parts = [teacher.learning_goal_de, *teacher.student_steps_de, task.final_solution_de]
    text = ". ".join(p.strip().rstrip(".") for p in parts if p and p.strip())
    return f"{text}." if text else ""


def build_speech_prompt(text: str) -> str:
    return f"{NARRATION_PREFIX}{text}"
