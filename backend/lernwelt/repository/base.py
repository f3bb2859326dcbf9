"""
Repository abstraction - the async contract every storage backend implements.

This module provides:
- RepositoryType enum naming the available backends
- TaskRepository protocol (records, audio, metadata)
- Small helpers shared by the adapters

Callers (catalog, factory, CLI) only ever talk to TaskRepository and never
branch on the concrete adapter.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Iterable, List, Optional, Protocol, runtime_checkable

from ..audio.clip import AudioClip
from ..db.schema import FilterOptions, TaskRecord


class RepositoryType(str, Enum):
    """Available storage backends."""

    LOCAL = "local"
    SQLITE = "sqlite"
    SUPABASE = "supabase"

    @classmethod
    def parse(cls, value: "str | RepositoryType") -> "RepositoryType":
        if isinstance(value, RepositoryType):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as e:
            raise ValueError(f"Unknown repository type: {value!r}") from e


@runtime_checkable
class TaskRepository(Protocol):
    """
    Protocol for task storage backends.

    All methods are coroutines. NotFound is modeled as None, never raised.
    I/O failures raise StorageError subclasses.
    """

    repository_type: RepositoryType

    async def init(self) -> None:
        """Open or create the store. Idempotent; raises StorageUnavailable."""
        ...

    async def close(self) -> None:
        """Release connections and clients. Idempotent."""
        ...

    async def get_all(self) -> List[TaskRecord]:
        """All records, newest first, ties by insertion order."""
        ...

    async def get_by_id(self, task_id: str) -> Optional[TaskRecord]:
        ...

    async def save(self, task: TaskRecord) -> None:
        """Insert or replace by id; raises DuplicateFingerprint on conflict."""
        ...

    async def save_batch(self, tasks: Iterable[TaskRecord]) -> None:
        ...

    async def delete(self, task_id: str) -> None:
        """Remove the record, its child rows and its audio."""
        ...

    async def clear_all(self, only_test_data: bool = False) -> None:
        ...

    async def find_by_fingerprint(self, fingerprint: str) -> Optional[TaskRecord]:
        ...

    async def exists(self, fingerprint: str) -> bool:
        ...

    async def filter_by_hierarchy(self, options: FilterOptions) -> List[TaskRecord]:
        ...

    async def get_unique_grades(self) -> List[str]:
        ...

    async def get_unique_subjects(self, grade: Optional[str] = None) -> List[str]:
        ...

    async def get_unique_sub_subjects(
        self, grade: Optional[str] = None, subject: Optional[str] = None
    ) -> List[str]:
        ...

    async def save_audio(self, key: str, clip: AudioClip) -> None:
        ...

    async def get_audio(self, key: str) -> Optional[AudioClip]:
        ...

    async def delete_audio(self, key: str) -> None:
        ...

    async def clear_audio(self) -> None:
        ...

    async def get_meta(self, key: str) -> Optional[str]:
        ...

    async def set_meta(self, key: str, value: str) -> None:
        ...


# ==================== Helpers ====================

_SAFE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")


def safe_component(value: str) -> str:
    """Sanitize a key for use as a file or object name."""
    value = value.strip() or "unnamed"
    return _SAFE_PATTERN.sub("_", value)[:128]


def unique_sorted(values: Iterable[Optional[str]]) -> List[str]:
    """Sorted distinct non-empty values."""
    return sorted({v for v in values if v})
