"""
Supabase repository - remote relational store plus object storage.

Talks to a PostgREST endpoint (``/rest/v1/<table>``) for the normalized task
tables and to Supabase Storage (``/storage/v1/object/...``) for media:

    <bucket>/previews/<id>.<ext>   image previews (uploaded from data URLs)
    <bucket>/audio/<key>.ogg       narration, Ogg/Vorbis encoded

A save is an ordered request sequence, not a transaction: fingerprint check,
preview upload, parent upsert, child delete, child insert. A failure midway
can leave stale child rows that the next save of the same id rewrites.
"""

from __future__ import annotations

import base64
import logging
import re
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import httpx

from ..audio import codec
from ..audio.clip import DEFAULT_SAMPLE_RATE, AudioClip
from ..db.schema import FilterOptions, TaskRecord, sort_newest_first
from ..errors import DuplicateFingerprint, PersistenceFailure, StorageUnavailable
from .base import RepositoryType, safe_component, unique_sorted
from .rows import (
    record_from_rows,
    step_rows,
    table_rows,
    task_to_row,
    teacher_step_rows,
)

logger = logging.getLogger(__name__)

DEFAULT_BUCKET = "tasks-media"

_DATA_URL = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.*)$", re.DOTALL)
_IN_CHUNK = 100
_LIST_PAGE = 1000

Params = List[Tuple[str, str]]


def _quote(value: str) -> str:
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def in_filter(values: Sequence[str]) -> str:
    """PostgREST ``in`` operator value, e.g. in.("a","b")."""
    return f"in.({','.join(_quote(v) for v in values)})"


def _extension_for(mime: str) -> str:
    subtype = mime.split("/", 1)[-1].lower()
    return {"jpeg": "jpg", "svg+xml": "svg"}.get(subtype, safe_component(subtype))


class SupabaseRepository:
    """TaskRepository backed by a Supabase project (PostgREST + Storage)."""

    repository_type = RepositoryType.SUPABASE

    def __init__(
        self,
        url: str,
        key: str,
        *,
        bucket: str = DEFAULT_BUCKET,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = (url or "").rstrip("/")
        self.key = key or ""
        self.bucket = bucket
        self.sample_rate = sample_rate
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    # ==================== Lifecycle ====================

    async def init(self) -> None:
        if self._client is not None:
            return
        if not self.url or not self.key:
            raise StorageUnavailable("Supabase URL or key not configured")

        client = httpx.AsyncClient(
            base_url=self.url,
            headers={
                "apikey": self.key,
                "Authorization": f"Bearer {self.key}",
            },
            timeout=self.timeout,
            transport=self._transport,
            trust_env=False,
        )
        try:
            response = await client.get(
                "/rest/v1/app_metadata", params=[("select", "key"), ("limit", "1")]
            )
        except httpx.HTTPError as e:
            await client.aclose()
            raise StorageUnavailable(f"Supabase unreachable at {self.url}: {e}") from e
        if response.status_code >= 400:
            await client.aclose()
            raise StorageUnavailable(
                f"Supabase probe failed with status {response.status_code}: {response.text[:200]}"
            )

        self._client = client
        logger.info("Supabase repository ready: %s (bucket %s)", self.url, self.bucket)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Supabase repository not initialized. Call init() first.")
        return self._client

    def public_url(self, path: str) -> str:
        return f"{self.url}/storage/v1/object/public/{self.bucket}/{path}"

    # ==================== HTTP helpers ====================

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self.client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise PersistenceFailure(f"Supabase {method} {path} failed: {e}") from e

    @staticmethod
    def _check(response: httpx.Response, what: str) -> None:
        if response.status_code >= 400:
            raise PersistenceFailure(
                f"{what} failed with status {response.status_code}: {response.text[:200]}"
            )

    async def _select(self, table: str, params: Params) -> List[Dict[str, Any]]:
        response = await self._send("GET", f"/rest/v1/{table}", params=params)
        self._check(response, f"Select from {table}")
        return response.json()

    async def _upsert(self, table: str, rows: List[Dict[str, Any]]) -> httpx.Response:
        return await self._send(
            "POST",
            f"/rest/v1/{table}",
            json=rows,
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )

    async def _insert(self, table: str, rows: List[Dict[str, Any]]) -> None:
        if not rows:
            return
        response = await self._send(
            "POST",
            f"/rest/v1/{table}",
            json=rows,
            headers={"Prefer": "return=minimal"},
        )
        self._check(response, f"Insert into {table}")

    async def _delete_where(self, table: str, params: Params) -> None:
        response = await self._send("DELETE", f"/rest/v1/{table}", params=params)
        self._check(response, f"Delete from {table}")

    # ==================== Storage helpers ====================

    async def _upload(self, path: str, data: bytes, content_type: str) -> None:
        response = await self._send(
            "POST",
            f"/storage/v1/object/{self.bucket}/{path}",
            content=data,
            headers={"Content-Type": content_type, "x-upsert": "true"},
        )
        self._check(response, f"Upload of {path}")

    async def _download(self, path: str) -> Optional[bytes]:
        response = await self._send("GET", f"/storage/v1/object/{self.bucket}/{path}")
        # Storage answers 400 for missing objects on some versions
        if response.status_code in (400, 404):
            return None
        self._check(response, f"Download of {path}")
        return response.content

    async def _remove(self, paths: List[str]) -> None:
        if not paths:
            return
        response = await self._send(
            "DELETE", f"/storage/v1/object/{self.bucket}", json={"prefixes": paths}
        )
        self._check(response, "Storage remove")

    async def _list(self, prefix: str) -> List[str]:
        """Full object paths under a folder prefix such as ``audio``."""
        paths: List[str] = []
        offset = 0
        while True:
            response = await self._send(
                "POST",
                f"/storage/v1/object/list/{self.bucket}",
                json={"prefix": prefix, "limit": _LIST_PAGE, "offset": offset},
            )
            self._check(response, f"Storage list {prefix}")
            items = response.json()
            paths.extend(f"{prefix}/{item['name']}" for item in items)
            if len(items) < _LIST_PAGE:
                return paths
            offset += _LIST_PAGE

    def _audio_path(self, key: str) -> str:
        return f"audio/{safe_component(key)}.{codec.EXTENSION}"

    def _preview_path_of(self, image_preview: Optional[str]) -> Optional[str]:
        prefix = self.public_url("")
        if image_preview and image_preview.startswith(prefix):
            return image_preview[len(prefix):]
        return None

    async def _store_preview(self, task: TaskRecord) -> Optional[str]:
        """Upload a data-URL preview and return its public URL."""
        preview = task.image_preview
        match = _DATA_URL.match(preview or "")
        if not match:
            return preview
        mime = match.group("mime")
        try:
            data = base64.b64decode(match.group("data"), validate=False)
        except ValueError as e:
            raise PersistenceFailure(f"Invalid image preview for task {task.id}: {e}") from e
        path = f"previews/{safe_component(task.id)}.{_extension_for(mime)}"
        await self._upload(path, data, mime)
        return self.public_url(path)

    # ==================== Hydration ====================

    async def _children(self, table: str, ids: Optional[Sequence[str]]) -> Dict[str, list]:
        grouped: Dict[str, list] = defaultdict(list)
        if ids is None:
            batches: List[Params] = [[("select", "*"), ("order", "task_id,position")]]
        else:
            batches = [
                [
                    ("select", "*"),
                    ("task_id", in_filter(ids[start:start + _IN_CHUNK])),
                    ("order", "task_id,position"),
                ]
                for start in range(0, len(ids), _IN_CHUNK)
            ]
        for params in batches:
            for row in await self._select(table, params):
                grouped[row["task_id"]].append(row)
        return grouped

    async def _hydrate(self, task_rows: List[Dict[str, Any]], *, all_tasks: bool = False) -> List[TaskRecord]:
        if not task_rows:
            return []
        ids = None if all_tasks else [row["id"] for row in task_rows]
        steps = await self._children("task_steps", ids)
        solution_rows = await self._children("task_solution_rows", ids)
        teacher_steps = await self._children("teacher_student_steps", ids)
        records = [
            record_from_rows(
                row,
                steps.get(row["id"], []),
                solution_rows.get(row["id"], []),
                teacher_steps.get(row["id"], []),
            )
            for row in task_rows
        ]
        return sort_newest_first(records)

    # ==================== Records ====================

    async def get_all(self) -> List[TaskRecord]:
        rows = await self._select("tasks", [("select", "*"), ("order", "timestamp.desc")])
        return await self._hydrate(rows, all_tasks=True)

    async def get_by_id(self, task_id: str) -> Optional[TaskRecord]:
        rows = await self._select("tasks", [("select", "*"), ("id", f"eq.{task_id}")])
        records = await self._hydrate(rows)
        return records[0] if records else None

    async def save(self, task: TaskRecord) -> None:
        fingerprint = task.file_fingerprint or None
        if fingerprint:
            holders = await self._select(
                "tasks",
                [
                    ("select", "id,task_title"),
                    ("file_fingerprint", f"eq.{fingerprint}"),
                    ("id", f"neq.{task.id}"),
                ],
            )
            if holders:
                raise DuplicateFingerprint(
                    fingerprint,
                    existing_id=holders[0]["id"],
                    existing_title=holders[0].get("task_title"),
                )

        row = task_to_row(task)
        row["image_preview"] = await self._store_preview(task)

        response = await self._upsert("tasks", [row])
        if response.status_code == 409 and fingerprint:
            raise DuplicateFingerprint(fingerprint)
        self._check(response, f"Upsert of task {task.id}")

        for table in ("task_steps", "task_solution_rows", "teacher_student_steps"):
            await self._delete_where(table, [("task_id", f"eq.{task.id}")])
        await self._insert("task_steps", step_rows(task))
        await self._insert("task_solution_rows", table_rows(task))
        await self._insert("teacher_student_steps", teacher_step_rows(task))

    async def save_batch(self, tasks: Iterable[TaskRecord]) -> None:
        for task in tasks:
            await self.save(task)

    async def _delete_ids(self, rows: List[Dict[str, Any]]) -> None:
        ids = [row["id"] for row in rows]
        for start in range(0, len(ids), _IN_CHUNK):
            chunk = ids[start:start + _IN_CHUNK]
            for table in ("task_steps", "task_solution_rows", "teacher_student_steps"):
                await self._delete_where(table, [("task_id", in_filter(chunk))])
            await self._delete_where("tasks", [("id", in_filter(chunk))])

        media = [self._audio_path(task_id) for task_id in ids]
        media.extend(
            p for p in (self._preview_path_of(row.get("image_preview")) for row in rows) if p
        )
        await self._remove(media)

    async def delete(self, task_id: str) -> None:
        rows = await self._select(
            "tasks", [("select", "id,image_preview"), ("id", f"eq.{task_id}")]
        )
        if rows:
            await self._delete_ids(rows)

    async def clear_all(self, only_test_data: bool = False) -> None:
        params: Params = [("select", "id,image_preview")]
        if only_test_data:
            params.append(("is_test_data", "eq.true"))
        rows = await self._select("tasks", params)
        await self._delete_ids(rows)
        if not only_test_data:
            await self._remove(await self._list("audio") + await self._list("previews"))
        logger.info(
            "Supabase cleared %d records%s",
            len(rows),
            " (test data only)" if only_test_data else "",
        )

    async def find_by_fingerprint(self, fingerprint: str) -> Optional[TaskRecord]:
        if not fingerprint:
            return None
        rows = await self._select(
            "tasks",
            [("select", "*"), ("file_fingerprint", f"eq.{fingerprint}"), ("limit", "1")],
        )
        records = await self._hydrate(rows)
        return records[0] if records else None

    async def exists(self, fingerprint: str) -> bool:
        if not fingerprint:
            return False
        rows = await self._select(
            "tasks",
            [("select", "id"), ("file_fingerprint", f"eq.{fingerprint}"), ("limit", "1")],
        )
        return bool(rows)

    @staticmethod
    def _hierarchy_params(options: FilterOptions) -> Params:
        params: Params = []
        for column in ("grade", "subject", "sub_subject"):
            value = getattr(options, column)
            if value:
                params.append((column, f"eq.{value}"))
        return params

    async def filter_by_hierarchy(self, options: FilterOptions) -> List[TaskRecord]:
        rows = await self._select(
            "tasks",
            [("select", "*"), *self._hierarchy_params(options), ("order", "timestamp.desc")],
        )
        return await self._hydrate(rows)

    async def _distinct(self, column: str, options: FilterOptions) -> List[str]:
        rows = await self._select(
            "tasks", [("select", column), *self._hierarchy_params(options)]
        )
        return unique_sorted(row.get(column) for row in rows)

    async def get_unique_grades(self) -> List[str]:
        return await self._distinct("grade", FilterOptions())

    async def get_unique_subjects(self, grade: Optional[str] = None) -> List[str]:
        return await self._distinct("subject", FilterOptions(grade=grade))

    async def get_unique_sub_subjects(
        self, grade: Optional[str] = None, subject: Optional[str] = None
    ) -> List[str]:
        return await self._distinct("sub_subject", FilterOptions(grade=grade, subject=subject))

    # ==================== Audio ====================

    async def save_audio(self, key: str, clip: AudioClip) -> None:
        data = await codec.encode_clip(clip)
        await self._upload(self._audio_path(key), data, codec.CONTENT_TYPE)

    async def get_audio(self, key: str) -> Optional[AudioClip]:
        data = await self._download(self._audio_path(key))
        if data is None:
            return None
        return await codec.decode_clip(data)

    async def delete_audio(self, key: str) -> None:
        await self._remove([self._audio_path(key)])

    async def clear_audio(self) -> None:
        await self._remove(await self._list("audio"))

    # ==================== Metadata ====================

    async def get_meta(self, key: str) -> Optional[str]:
        rows = await self._select(
            "app_metadata", [("select", "value"), ("key", f"eq.{key}")]
        )
        return rows[0].get("value") if rows else None

    async def set_meta(self, key: str, value: str) -> None:
        response = await self._upsert("app_metadata", [{"key": key, "value": value}])
        self._check(response, f"Write of metadata {key}")
