"""
Task catalog - the one component the upload, speech and CLI layers talk to.

Owns the in-memory cache of TaskRecords and the business rules the storage
adapters do not know about:
- fingerprint dedup on insert (cache first, then backend)
- display-ID assignment
- startup integrity sweep for duplicate fingerprints
- one-time cold migration from a legacy backend

Binding state: Unbound until the first load() (explicit or implicit), Bound
afterwards, back to Unbound only through reset().
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Iterable, List, Optional, Set, Tuple, Union

from ..audio.clip import AudioClip
from ..db.schema import FilterOptions, TaskRecord, sort_newest_first
from ..errors import DuplicateFingerprint
from ..repository.base import RepositoryType, TaskRepository, unique_sorted
from ..repository.factory import RepositoryFactory
from .display_id import next_display_id

logger = logging.getLogger(__name__)

MIGRATION_FLAG = "migration_completed"
MIGRATION_STARTED = "migration_started"


class TaskCatalog:
    """Authoritative cache over the active repository."""

    def __init__(
        self,
        factory: RepositoryFactory,
        repository_type: Union[str, RepositoryType, None] = None,
        legacy_type: Union[str, RepositoryType, None] = None,
    ):
        self.factory = factory
        self.repository_type = (
            RepositoryType.parse(repository_type) if repository_type is not None else None
        )
        self.legacy_type = RepositoryType.parse(legacy_type) if legacy_type else None

        self._repository: Optional[TaskRepository] = None
        self._tasks: List[TaskRecord] = []
        self._add_lock = asyncio.Lock()
        self._load_lock = asyncio.Lock()
        self._removal_listeners: List[Callable[[str], None]] = []

    @property
    def is_bound(self) -> bool:
        return self._repository is not None

    @property
    def repository(self) -> Optional[TaskRepository]:
        return self._repository

    def on_remove(self, callback: Callable[[str], None]) -> None:
        """Call ``callback(task_id)`` whenever a task leaves the catalog."""
        self._removal_listeners.append(callback)

    def _notify_removed(self, task_ids: Iterable[str]) -> None:
        for task_id in task_ids:
            for callback in self._removal_listeners:
                callback(task_id)

    # ==================== Loading ====================

    async def load(self) -> List[TaskRecord]:
        """Bind the repository, migrate if needed, sweep and cache all records."""
        async with self._load_lock:
            repository = await self.factory.get_repository(self.repository_type)
            self._repository = repository

            await self._maybe_migrate(repository)

            tasks = await repository.get_all()
            self._tasks = await self._sweep_duplicates(repository, tasks)
            logger.info(
                "Catalog loaded %d tasks from %s",
                len(self._tasks),
                repository.repository_type.value,
            )
            return list(self._tasks)

    async def _ensure_loaded(self) -> TaskRepository:
        if self._repository is None:
            await self.load()
        return self._repository

    async def _sweep_duplicates(
        self, repository: TaskRepository, tasks: List[TaskRecord]
    ) -> List[TaskRecord]:
        """
        Keep the first record per fingerprint in get_all() order (newest
        first) and delete the others from the backend.
        """
        seen: Set[str] = set()
        kept: List[TaskRecord] = []
        doomed: List[TaskRecord] = []
        for task in tasks:
            fingerprint = task.file_fingerprint
            if fingerprint and fingerprint in seen:
                doomed.append(task)
                continue
            if fingerprint:
                seen.add(fingerprint)
            kept.append(task)

        for task in doomed:
            logger.warning(
                "Integrity sweep: removing duplicate %s (fingerprint %s)",
                task.id,
                task.file_fingerprint,
            )
            await repository.delete(task.id)
        if doomed:
            logger.info("Integrity sweep removed %d duplicate records", len(doomed))
        return kept

    async def _maybe_migrate(self, repository: TaskRepository) -> None:
        """
        Copy a legacy backend into the active backend, once.

        Failures never reach load(): they are logged, the completion flag
        stays unset and the next load() resumes. A ``migration_started``
        marker keeps a partially copied store eligible, and the copy skips
        what is already present, so a resumed run only fills the gaps.
        """
        legacy_type = self.legacy_type
        if legacy_type is None or legacy_type == repository.repository_type:
            return

        try:
            if await repository.get_meta(MIGRATION_FLAG):
                return
            if not await repository.get_meta(MIGRATION_STARTED):
                if await repository.get_all():
                    return
                await repository.set_meta(MIGRATION_STARTED, "true")

            legacy = await self.factory.create(legacy_type)
            try:
                copied, copied_audio = await self._copy_from(legacy, repository)
            finally:
                await legacy.close()

            await repository.set_meta(MIGRATION_FLAG, "true")
            logger.info(
                "Cold migration %s -> %s: copied %d tasks, %d audio clips",
                legacy_type.value,
                repository.repository_type.value,
                copied,
                copied_audio,
            )
        except Exception as e:
            logger.exception(f"Cold migration from {legacy_type.value} failed, will retry: {e}")

    async def _copy_from(self, legacy: TaskRepository, repository: TaskRepository) -> Tuple[int, int]:
        copied = copied_audio = 0
        # Oldest first so insertion order mirrors the legacy store
        for task in reversed(await legacy.get_all()):
            if await repository.get_by_id(task.id) is None:
                try:
                    await repository.save(task)
                except DuplicateFingerprint as e:
                    logger.warning(f"Cold migration skipped {task.id}: {e}")
                    continue
                copied += 1
            if await repository.get_audio(task.id) is not None:
                continue
            clip = await legacy.get_audio(task.id)
            if clip is not None:
                await repository.save_audio(task.id, clip)
                copied_audio += 1
        return copied, copied_audio

    # ==================== Mutations ====================

    async def add_tasks(self, new_tasks: Iterable[TaskRecord]) -> List[TaskRecord]:
        """
        Insert records, dropping fingerprint duplicates.

        Returns the updated cache (newest first).
        """
        repository = await self._ensure_loaded()
        async with self._add_lock:
            known_fingerprints = {t.file_fingerprint for t in self._tasks if t.file_fingerprint}
            display_ids = [t.display_id for t in self._tasks if t.display_id]
            added: List[TaskRecord] = []

            for task in new_tasks:
                fingerprint = task.file_fingerprint
                if fingerprint:
                    if fingerprint in known_fingerprints:
                        logger.warning(
                            "Skipping duplicate %r: fingerprint %s already in catalog",
                            task.task_title,
                            fingerprint,
                        )
                        continue
                    if await repository.exists(fingerprint):
                        logger.warning(
                            "Skipping duplicate %r: fingerprint %s already stored",
                            task.task_title,
                            fingerprint,
                        )
                        continue

                if not task.display_id:
                    task = task.model_copy(
                        update={
                            "display_id": next_display_id(task.grade, task.subject, display_ids)
                        }
                    )
                try:
                    await repository.save(task)
                except DuplicateFingerprint as e:
                    logger.warning(f"Skipping duplicate {task.task_title!r}: {e}")
                    continue

                if fingerprint:
                    known_fingerprints.add(fingerprint)
                display_ids.append(task.display_id)
                added.append(task)

            if added:
                self._tasks = sort_newest_first(added + self._tasks)
                logger.info("Added %d tasks to catalog", len(added))
            return list(self._tasks)

    async def remove_task(self, task_id: str) -> List[TaskRecord]:
        repository = await self._ensure_loaded()
        await repository.delete(task_id)
        remaining = [t for t in self._tasks if t.id != task_id]
        if len(remaining) == len(self._tasks):
            logger.warning("remove_task: %s was not in the catalog", task_id)
        self._tasks = remaining
        self._notify_removed([task_id])
        return list(self._tasks)

    async def clear(self, only_test_data: bool = False) -> List[TaskRecord]:
        """Wipe the backend, then reload the cache from it."""
        repository = await self._ensure_loaded()
        before = {t.id for t in self._tasks}
        await repository.clear_all(only_test_data=only_test_data)
        self._tasks = await repository.get_all()
        self._notify_removed(sorted(before - {t.id for t in self._tasks}))
        return list(self._tasks)

    def reset(self) -> None:
        """Back to Unbound with an empty cache."""
        self._repository = None
        self._tasks = []

    # ==================== Reads (cache only) ====================

    def get_all(self) -> List[TaskRecord]:
        return list(self._tasks)

    def get_by_id(self, task_id: str) -> Optional[TaskRecord]:
        return next((t for t in self._tasks if t.id == task_id), None)

    def get_by_fingerprint(self, fingerprint: str) -> Optional[TaskRecord]:
        if not fingerprint:
            return None
        return next((t for t in self._tasks if t.file_fingerprint == fingerprint), None)

    def exists(self, fingerprint: str) -> bool:
        return self.get_by_fingerprint(fingerprint) is not None

    def get_unique_grades(self) -> List[str]:
        return unique_sorted(t.grade for t in self._tasks)

    def get_unique_subjects(self, grade: Optional[str] = None) -> List[str]:
        return unique_sorted(t.subject for t in self.filter_local(FilterOptions(grade=grade)))

    def get_unique_sub_subjects(
        self, grade: Optional[str] = None, subject: Optional[str] = None
    ) -> List[str]:
        options = FilterOptions(grade=grade, subject=subject)
        return unique_sorted(t.sub_subject for t in self.filter_local(options))

    def filter_local(self, options: FilterOptions) -> List[TaskRecord]:
        return [t for t in self._tasks if options.matches(t)]

    async def filter(self, options: FilterOptions) -> List[TaskRecord]:
        """Backend-fresh hierarchical filter."""
        repository = await self._ensure_loaded()
        return await repository.filter_by_hierarchy(options)

    # ==================== Audio pass-through ====================

    async def save_audio(self, key: str, clip: AudioClip) -> None:
        repository = await self._ensure_loaded()
        await repository.save_audio(key, clip)

    async def get_audio(self, key: str) -> Optional[AudioClip]:
        repository = await self._ensure_loaded()
        return await repository.get_audio(key)

    async def delete_audio(self, key: str) -> None:
        repository = await self._ensure_loaded()
        await repository.delete_audio(key)

    async def clear_audio(self) -> None:
        repository = await self._ensure_loaded()
        await repository.clear_audio()
