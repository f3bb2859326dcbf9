"""
Local object repository - key-value task store on the local filesystem.

Layout under ``base_dir``:

    manifest.json        insertion sequence, fingerprint index, test-data flags
    tasks/<id>.json      one record per file
    audio/<key>.f32      raw little-endian float32 samples
    metadata.json        app metadata (schema version, migration flags)

All writes are atomic (unique temp file, fsync, rename). Disk I/O runs in a
worker thread behind one asyncio.Lock, so the manifest never interleaves.
This adapter has no external engine and is the factory's fallback target.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from ..audio.clip import DEFAULT_SAMPLE_RATE, AudioClip
from ..db.schema import SCHEMA_VERSION, FilterOptions, TaskRecord
from ..errors import DuplicateFingerprint, PersistenceFailure, StorageUnavailable
from .base import RepositoryType, safe_component, unique_sorted

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
METADATA_NAME = "metadata.json"


def _atomic_write(path: Path, data: bytes) -> None:
    """Write to a unique temp file, fsync, then rename over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.parent / f".tmp-{uuid.uuid4().hex}-{path.name}"
    try:
        with open(tmp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except Exception:
        if tmp_path.exists():
            tmp_path.unlink()
        raise


def _dump_json(obj: Any) -> bytes:
    return json.dumps(obj, ensure_ascii=False, indent=2).encode("utf-8")


class LocalObjectRepository:
    """Filesystem-backed TaskRepository."""

    repository_type = RepositoryType.LOCAL

    def __init__(self, base_dir: Path, *, sample_rate: int = DEFAULT_SAMPLE_RATE):
        self.base_dir = Path(base_dir)
        self.sample_rate = sample_rate
        self._tasks_dir = self.base_dir / "tasks"
        self._audio_dir = self.base_dir / "audio"
        self._lock = asyncio.Lock()
        self._initialized = False

        # {"next_seq": int, "entries": {id: {"seq", "fingerprint", "test"}}}
        self._manifest: Dict[str, Any] = {"next_seq": 1, "entries": {}}
        self._metadata: Dict[str, str] = {}

    # ==================== Lifecycle ====================

    async def init(self) -> None:
        if self._initialized:
            return
        async with self._lock:
            if self._initialized:
                return
            try:
                await asyncio.to_thread(self._open_sync)
            except (OSError, ValueError) as e:
                raise StorageUnavailable(f"Local store unavailable at {self.base_dir}: {e}") from e
            self._initialized = True
            logger.info(
                "Local object store ready: %s (%d records)",
                self.base_dir,
                len(self._manifest["entries"]),
            )

    def _open_sync(self) -> None:
        self._tasks_dir.mkdir(parents=True, exist_ok=True)
        self._audio_dir.mkdir(parents=True, exist_ok=True)

        manifest_path = self.base_dir / MANIFEST_NAME
        if manifest_path.exists():
            self._manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
        else:
            self._manifest = self._rebuild_manifest_sync()
            _atomic_write(manifest_path, _dump_json(self._manifest))

        metadata_path = self.base_dir / METADATA_NAME
        if metadata_path.exists():
            self._metadata = json.loads(metadata_path.read_text(encoding="utf-8"))
        if self._metadata.get("schema_version") != SCHEMA_VERSION:
            self._metadata["schema_version"] = SCHEMA_VERSION
            _atomic_write(metadata_path, _dump_json(self._metadata))

    def _rebuild_manifest_sync(self) -> Dict[str, Any]:
        """Recreate the manifest from the record files (oldest first)."""
        records = []
        for path in self._tasks_dir.glob("*.json"):
            try:
                records.append(TaskRecord.model_validate_json(path.read_bytes()))
            except ValidationError as e:
                logger.warning("Skipping unreadable record %s: %s", path.name, e)
        records.sort(key=lambda r: r.timestamp)

        entries: Dict[str, Dict[str, Any]] = {}
        for seq, record in enumerate(records, start=1):
            entries[record.id] = {
                "seq": seq,
                "fingerprint": record.file_fingerprint or None,
                "test": record.is_test_data,
            }
        if entries:
            logger.info("Rebuilt local manifest from %d record files", len(entries))
        return {"next_seq": len(entries) + 1, "entries": entries}

    async def close(self) -> None:
        async with self._lock:
            self._initialized = False

    def _require_init(self) -> None:
        if not self._initialized:
            raise RuntimeError("Local store not initialized. Call init() first.")

    # ==================== Paths ====================

    def _task_path(self, task_id: str) -> Path:
        return self._tasks_dir / f"{safe_component(task_id)}.json"

    def _audio_path(self, key: str) -> Path:
        return self._audio_dir / f"{safe_component(key)}.f32"

    def _write_manifest_sync(self) -> None:
        _atomic_write(self.base_dir / MANIFEST_NAME, _dump_json(self._manifest))

    def _read_task_sync(self, task_id: str) -> Optional[TaskRecord]:
        path = self._task_path(task_id)
        try:
            return TaskRecord.model_validate_json(path.read_bytes())
        except FileNotFoundError:
            return None
        except (OSError, ValidationError) as e:
            raise PersistenceFailure(f"Unreadable record file {path.name}: {e}") from e

    def _owner_of(self, fingerprint: str) -> Optional[str]:
        for task_id, entry in self._manifest["entries"].items():
            if entry.get("fingerprint") == fingerprint:
                return task_id
        return None

    # ==================== Records ====================

    async def get_all(self) -> List[TaskRecord]:
        self._require_init()
        async with self._lock:
            return await asyncio.to_thread(self._get_all_sync)

    def _get_all_sync(self) -> List[TaskRecord]:
        entries = self._manifest["entries"]
        records = []
        for task_id in entries:
            try:
                record = self._read_task_sync(task_id)
            except PersistenceFailure as e:
                logger.warning(f"Skipping {task_id}: {e}")
                continue
            if record is None:
                logger.warning("Manifest lists %s but its record file is missing", task_id)
                continue
            records.append(record)
        records.sort(key=lambda r: (-r.timestamp, entries[r.id]["seq"]))
        return records

    async def get_by_id(self, task_id: str) -> Optional[TaskRecord]:
        self._require_init()
        async with self._lock:
            if task_id not in self._manifest["entries"]:
                return None
            return await asyncio.to_thread(self._read_task_sync, task_id)

    async def save(self, task: TaskRecord) -> None:
        self._require_init()
        async with self._lock:
            await asyncio.to_thread(self._save_sync, task)

    def _save_sync(self, task: TaskRecord) -> None:
        fingerprint = task.file_fingerprint or None
        if fingerprint:
            owner = self._owner_of(fingerprint)
            if owner is not None and owner != task.id:
                try:
                    existing = self._read_task_sync(owner)
                except PersistenceFailure:
                    existing = None
                raise DuplicateFingerprint(
                    fingerprint,
                    existing_id=owner,
                    existing_title=existing.task_title if existing else None,
                )

        entries = self._manifest["entries"]
        if task.id in entries:
            entry = dict(entries[task.id])
        else:
            entry = {"seq": self._manifest["next_seq"]}
            self._manifest["next_seq"] += 1
        entry["fingerprint"] = fingerprint
        entry["test"] = task.is_test_data

        try:
            _atomic_write(self._task_path(task.id), task.model_dump_json().encode("utf-8"))
            entries[task.id] = entry
            self._write_manifest_sync()
        except OSError as e:
            raise PersistenceFailure(f"Failed to save task {task.id}: {e}") from e

    async def save_batch(self, tasks: Iterable[TaskRecord]) -> None:
        for task in tasks:
            await self.save(task)

    async def delete(self, task_id: str) -> None:
        self._require_init()
        async with self._lock:
            await asyncio.to_thread(self._delete_many_sync, [task_id])

    def _delete_many_sync(self, task_ids: List[str]) -> None:
        entries = self._manifest["entries"]
        try:
            for task_id in task_ids:
                entries.pop(task_id, None)
            self._write_manifest_sync()
            for task_id in task_ids:
                self._task_path(task_id).unlink(missing_ok=True)
                self._audio_path(task_id).unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceFailure(f"Failed to delete tasks: {e}") from e

    async def clear_all(self, only_test_data: bool = False) -> None:
        self._require_init()
        async with self._lock:
            entries = self._manifest["entries"]
            if only_test_data:
                doomed = [tid for tid, entry in entries.items() if entry.get("test")]
            else:
                doomed = list(entries)
            await asyncio.to_thread(self._delete_many_sync, doomed)
            if not only_test_data:
                await asyncio.to_thread(self._clear_audio_sync)
        logger.info(
            "Local store cleared %d records%s",
            len(doomed),
            " (test data only)" if only_test_data else "",
        )

    async def find_by_fingerprint(self, fingerprint: str) -> Optional[TaskRecord]:
        self._require_init()
        if not fingerprint:
            return None
        async with self._lock:
            owner = self._owner_of(fingerprint)
            if owner is None:
                return None
            return await asyncio.to_thread(self._read_task_sync, owner)

    async def exists(self, fingerprint: str) -> bool:
        self._require_init()
        if not fingerprint:
            return False
        return self._owner_of(fingerprint) is not None

    async def filter_by_hierarchy(self, options: FilterOptions) -> List[TaskRecord]:
        return [t for t in await self.get_all() if options.matches(t)]

    async def get_unique_grades(self) -> List[str]:
        return unique_sorted(t.grade for t in await self.get_all())

    async def get_unique_subjects(self, grade: Optional[str] = None) -> List[str]:
        tasks = await self.filter_by_hierarchy(FilterOptions(grade=grade))
        return unique_sorted(t.subject for t in tasks)

    async def get_unique_sub_subjects(
        self, grade: Optional[str] = None, subject: Optional[str] = None
    ) -> List[str]:
        tasks = await self.filter_by_hierarchy(FilterOptions(grade=grade, subject=subject))
        return unique_sorted(t.sub_subject for t in tasks)

    # ==================== Audio ====================

    async def save_audio(self, key: str, clip: AudioClip) -> None:
        self._require_init()
        async with self._lock:
            try:
                await asyncio.to_thread(_atomic_write, self._audio_path(key), clip.to_bytes())
            except OSError as e:
                raise PersistenceFailure(f"Failed to save audio {key}: {e}") from e

    async def get_audio(self, key: str) -> Optional[AudioClip]:
        self._require_init()
        async with self._lock:
            try:
                data = await asyncio.to_thread(self._audio_path(key).read_bytes)
            except FileNotFoundError:
                return None
            except OSError as e:
                raise PersistenceFailure(f"Failed to read audio {key}: {e}") from e
        try:
            return AudioClip.from_bytes(data, sample_rate=self.sample_rate)
        except ValueError as e:
            raise PersistenceFailure(f"Corrupt audio file for {key}: {e}") from e

    async def delete_audio(self, key: str) -> None:
        self._require_init()
        async with self._lock:
            try:
                await asyncio.to_thread(self._audio_path(key).unlink, True)
            except OSError as e:
                raise PersistenceFailure(f"Failed to delete audio {key}: {e}") from e

    async def clear_audio(self) -> None:
        self._require_init()
        async with self._lock:
            await asyncio.to_thread(self._clear_audio_sync)

    def _clear_audio_sync(self) -> None:
        for path in self._audio_dir.glob("*.f32"):
            path.unlink(missing_ok=True)

    # ==================== Metadata ====================

    async def get_meta(self, key: str) -> Optional[str]:
        self._require_init()
        return self._metadata.get(key)

    async def set_meta(self, key: str, value: str) -> None:
        self._require_init()
        async with self._lock:
            self._metadata[key] = value
            try:
                await asyncio.to_thread(
                    _atomic_write, self.base_dir / METADATA_NAME, _dump_json(self._metadata)
                )
            except OSError as e:
                raise PersistenceFailure(f"Failed to write metadata {key}: {e}") from e
