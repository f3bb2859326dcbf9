"""
Mock AI Provider

Used for development and test mode: simulated tasks and a sine tone instead
of real analysis and speech.
"""

from __future__ import annotations

import asyncio
import random
import uuid
from typing import List, Optional

import numpy as np

from ...audio.clip import DEFAULT_SAMPLE_RATE, AudioClip
from ...db.schema import Step, TableRow, TaskContent, TaskRecord, TeacherSection, now_ms

SUBJECTS = [
    ("Mathematik", ["Addition", "Subtraktion", "Geometrie", "Maßeinheiten"]),
    ("Deutsch", ["Grammatik", "Rechtschreibung", "Leseverständnis", "Aufsatz"]),
    ("Sachunterricht", ["Natur", "Heimatkunde", "Verkehrserziehung", "Tiere"]),
]

# Grey placeholder with the caption "Simulation-Bild"
PLACEHOLDER_PREVIEW = (
    "data:image/svg+xml;base64,PHN2ZyB3aWR0aD0iNDAwIiBoZWlnaHQ9IjMwMCIgeG1sbnM9Imh0dHA6"
    "Ly93d3cudzMub3JnLzIwMDAvc3ZnIj48cmVjdCB3aWR0aD0iMTAwJSIgaGVpZ2h0PSIxMDAlIiBmaWxsPSIj"
    "ZjFmNWY5Ii8+PHRleHQgeD0iNTAlIiB5PSI1MCUiIGZvbnQtZmFtaWx5PSJBcmlhbCIgZm9udC1zaXplPSIy"
    "NCIgZmlsbD0iIzY0NzQ4YiIgdGV4dC1hbmNob3I9Im1pZGRsZSI+U2ltdWxhdGlvbi1CaWxkPC90ZXh0Pjwv"
    "c3ZnPg=="
)


class MockProvider:
    """Mock AI provider (development and test mode)."""

    def __init__(self, *, seed: Optional[int] = None, sample_rate: int = DEFAULT_SAMPLE_RATE):
        self._random = random.Random(seed)
        self.sample_rate = sample_rate

    def _content(self, index: int, page_number: Optional[int] = None) -> TaskContent:
        subject, topics = self._random.choice(SUBJECTS)
        topic = self._random.choice(topics)
        return TaskContent(
            page_number=page_number or self._random.randint(1, 100),
            grade="Klasse 2",
            subject=subject,
            sub_subject=topic,
            task_title=f"Simulierte {subject} Aufgabe #{index + 1}",
            task_description_de=f"Dies ist eine automatisch generierte Test-Aufgabe zum Thema {topic}.",
            task_description_vi=f"Đây là một bài tập kiểm tra được tạo tự động về chủ đề {topic}.",
            steps=[
                Step(
                    title_de="Schritt 1: Vorbereitung",
                    title_vi="Bước 1: Chuẩn bị",
                    description_de="Lies dir die Aufgabe genau durch.",
                    description_vi="Hãy đọc kỹ bài tập.",
                ),
                Step(
                    title_de="Schritt 2: Durchführung",
                    title_vi="Bước 2: Thực hiện",
                    description_de="Berechne das Ergebnis im Kopf.",
                    description_vi="Hãy tính kết quả trong đầu.",
                ),
            ],
            solution_table=[
                TableRow(task_number="1", label_de="Ergebnis", label_vi="Kết quả", value_de="42", value_vi="42"),
            ],
            final_solution_de="Das ist die simulierte Lösung der Aufgabe.",
            final_solution_vi="Đây là lời giải mô phỏng của bài tập.",
            teacher_section=TeacherSection(
                learning_goal_de=f"Die Kinder sollen Sicherheit im Bereich {topic} gewinnen.",
                student_steps_de=[
                    "Die Aufgabe laut vorlesen.",
                    "Bekannte Werte markieren.",
                    "Lösungsweg skizzieren.",
                ],
                explanation_de="Nutzen Sie zur Veranschaulichung Rechenstäbchen oder andere Hilfsmittel.",
                summary_de="Eine typische Übung für diese Klassenstufe.",
            ),
            image_preview=PLACEHOLDER_PREVIEW,
        )

    def generate_tasks(self, count: int) -> List[TaskRecord]:
        """Simulated records flagged as test data, each with its own fingerprint."""
        now = now_ms()
        tasks = []
        for i in range(count):
            task_id = f"mock-{now}-{i}-{uuid.uuid4().hex[:5]}"
            tasks.append(
                TaskRecord.from_content(
                    self._content(i),
                    id=task_id,
                    timestamp=now,
                    file_fingerprint=f"fp-mock-{task_id}",
                    is_test_data=True,
                )
            )
        return tasks

    async def analyze(
        self,
        image_bytes: bytes,
        page_number: int,
        mime_type: str = "image/jpeg",
    ) -> TaskContent:
        await asyncio.sleep(0)
        return self._content(0, page_number=page_number)

    async def synthesize(self, text: str, cache_key: str) -> AudioClip:
        """Short 440 Hz tone, longer for longer text."""
        await asyncio.sleep(0)
        seconds = min(2.0, 0.25 + len(text) / 400.0)
        t = np.arange(int(self.sample_rate * seconds), dtype=np.float32) / self.sample_rate
        return AudioClip(0.2 * np.sin(2 * np.pi * 440.0 * t), sample_rate=self.sample_rate)
