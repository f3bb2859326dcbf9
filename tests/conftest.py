# tests/conftest.py

from __future__ import annotations

import itertools
from pathlib import Path
from typing import List, Optional

import numpy as np
import pytest
import pytest_asyncio

from lernwelt.audio.clip import AudioClip
from lernwelt.config import AppConfig
from lernwelt.db.schema import Step, TableRow, TaskRecord, TeacherSection
from lernwelt.repository.base import RepositoryType
from lernwelt.repository.factory import RepositoryFactory
from lernwelt.repository.local_store import LocalObjectRepository
from lernwelt.repository.remote_repository import SupabaseRepository
from lernwelt.repository.sqlite_repository import SQLiteRepository

from .fakes import FakeSupabase

SUPABASE_URL = "https://demo.supabase.test"

_counter = itertools.count(1)


def make_task(
    task_id: Optional[str] = None,
    *,
    fingerprint: Optional[str] = None,
    grade: str = "Klasse 2",
    subject: str = "Mathematik",
    sub_subject: str = "Addition",
    timestamp: Optional[int] = None,
    steps: Optional[List[str]] = None,
    is_test_data: bool = False,
    display_id: Optional[str] = None,
    title: Optional[str] = None,
) -> TaskRecord:
    """Small but fully populated record; each call gets a fresh id and timestamp."""
    n = next(_counter)
    step_titles = steps if steps is not None else ["A", "B"]
    return TaskRecord(
        id=task_id or f"task-{n}",
        display_id=display_id,
        page_number=n,
        grade=grade,
        subject=subject,
        sub_subject=sub_subject,
        task_title=title or f"Aufgabe {n}",
        task_description_de="Rechne.",
        task_description_vi="Tính.",
        steps=[
            Step(title_de=t, title_vi=f"{t}-vi", description_de=f"{t} de", description_vi=f"{t} vi")
            for t in step_titles
        ],
        solution_table=[
            TableRow(task_number="1", label_de="Ergebnis", label_vi="Kết quả", value_de="5", value_vi="5"),
            TableRow(task_number="2", label_de="Rest", label_vi="Dư", value_de="0", value_vi="0"),
        ],
        final_solution_de="5",
        final_solution_vi="5",
        teacher_section=TeacherSection(
            learning_goal_de="Addieren bis 10",
            student_steps_de=["Lesen", "Rechnen", "Prüfen"],
            explanation_de="Mit Fingern zählen.",
            summary_de="Gut gemacht.",
        ),
        file_fingerprint=fingerprint,
        timestamp=timestamp if timestamp is not None else 1_700_000_000_000 + n,
        is_test_data=is_test_data,
    )


def make_clip(seconds: float = 0.5, freq: float = 440.0, sample_rate: int = 24000) -> AudioClip:
    t = np.arange(int(sample_rate * seconds), dtype=np.float32) / sample_rate
    return AudioClip(0.3 * np.sin(2 * np.pi * freq * t), sample_rate=sample_rate)


@pytest.fixture()
def app_config(tmp_path: Path) -> AppConfig:
    """Config isolated to tmp_path; never reads the developer's .env values."""
    return AppConfig(
        data_dir=tmp_path,
        repository_type="sqlite",
        supabase_url="",
        supabase_key="",
        gemini_api_key="",
    )


@pytest.fixture()
def fake_supabase() -> FakeSupabase:
    return FakeSupabase()


def supabase_builder(fake: FakeSupabase):
    def build(cfg: AppConfig) -> SupabaseRepository:
        return SupabaseRepository(SUPABASE_URL, fake.key, transport=fake.transport())

    return build


@pytest_asyncio.fixture()
async def factory(app_config: AppConfig, fake_supabase: FakeSupabase):
    f = RepositoryFactory(
        app_config,
        builders={RepositoryType.SUPABASE: supabase_builder(fake_supabase)},
    )
    yield f
    await f.aclose()


@pytest_asyncio.fixture(params=["local", "sqlite", "supabase"])
async def repository(request, tmp_path: Path, fake_supabase: FakeSupabase):
    """Every backend adapter, initialized against a fresh store."""
    if request.param == "local":
        repo = LocalObjectRepository(tmp_path / "objects")
    elif request.param == "sqlite":
        repo = SQLiteRepository(tmp_path / "lernwelt.sqlite3")
    else:
        repo = SupabaseRepository(SUPABASE_URL, fake_supabase.key, transport=fake_supabase.transport())
    await repo.init()
    yield repo
    await repo.close()
