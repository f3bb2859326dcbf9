"""
Upload pipeline - turns picked files into catalog records.

For each file: fingerprint, reject if already analyzed, analyze (with
backoff on rate limits), attach a JPEG preview and add through the catalog.
In test mode 1-3 simulated tasks are generated instead.
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import random
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from PIL import Image, UnidentifiedImageError

from ..catalog.fingerprint import file_fingerprint, guess_mime
from ..catalog.task_catalog import TaskCatalog
from ..db.schema import TaskRecord, now_ms
from ..errors import AnalysisFailure, StorageError
from .ai.backoff import DEFAULT_DELAYS, retry_with_backoff
from .ai.base import AnalysisProvider
from .ai.mock_provider import MockProvider

logger = logging.getLogger(__name__)

PREVIEW_MAX_SIZE = (800, 800)
PREVIEW_QUALITY = 80


@dataclass
class UploadNotice:
    """User-facing message about one file."""
    kind: str  # "duplicate" | "analysis_failure" | "storage_error" | "unreadable"
    file_name: str
    message: str


@dataclass
class UploadReport:
    added: List[TaskRecord] = field(default_factory=list)
    notices: List[UploadNotice] = field(default_factory=list)


def make_preview(image_bytes: bytes) -> Optional[str]:
    """Downscaled JPEG data URL, or None when Pillow cannot read the file."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            img = img.convert("RGB")
            img.thumbnail(PREVIEW_MAX_SIZE)
            buf = io.BytesIO()
            img.save(buf, format="JPEG", quality=PREVIEW_QUALITY, optimize=True)
    except (UnidentifiedImageError, OSError) as e:
        logger.debug(f"No preview: {e}")
        return None
    return "data:image/jpeg;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def new_task_id() -> str:
    return f"task-{now_ms()}-{uuid.uuid4().hex[:8]}"


class UploadPipeline:
    """Processes picked files into catalog records."""

    def __init__(
        self,
        catalog: TaskCatalog,
        analyzer: AnalysisProvider,
        *,
        test_mode: bool = False,
        mock: Optional[MockProvider] = None,
        retry_delays: Sequence[float] = DEFAULT_DELAYS,
    ):
        self.catalog = catalog
        self.analyzer = analyzer
        self.test_mode = test_mode
        self.mock = mock or MockProvider()
        self.retry_delays = retry_delays

    async def generate_test_tasks(self, count: Optional[int] = None) -> UploadReport:
        count = count or random.randint(1, 3)
        logger.info(f"[TestMode] Generating {count} simulated tasks")
        tasks = self.mock.generate_tasks(count)
        await self.catalog.add_tasks(tasks)
        return UploadReport(added=[t for t in tasks if self.catalog.get_by_id(t.id)])

    def _duplicate_notice(self, path: Path, existing: TaskRecord) -> UploadNotice:
        label = existing.display_id or existing.id
        logger.warning(
            f'Duplicate detected: "{path.name}" collides with task '
            f'"{existing.task_title}" ({label})'
        )
        return UploadNotice(
            "duplicate",
            path.name,
            f'"{path.name}" was already analyzed (as "{existing.task_title}").',
        )

    async def _find_existing(self, fingerprint: str) -> Optional[TaskRecord]:
        """Cache first, then the backend (records written by another session)."""
        existing = self.catalog.get_by_fingerprint(fingerprint)
        if existing is None and self.catalog.repository is not None:
            existing = await self.catalog.repository.find_by_fingerprint(fingerprint)
        return existing

    async def process_files(self, paths: Iterable[Path]) -> UploadReport:
        if self.test_mode:
            return await self.generate_test_tasks()

        if not self.catalog.is_bound:
            await self.catalog.load()

        report = UploadReport()
        pending = []
        for path in map(Path, paths):
            try:
                fingerprint = file_fingerprint(path)
            except OSError as e:
                report.notices.append(UploadNotice("unreadable", path.name, f"{path.name}: {e}"))
                continue

            try:
                existing = await self._find_existing(fingerprint)
            except StorageError as e:
                logger.error(f"Duplicate check for {path.name} failed: {e}")
                report.notices.append(UploadNotice("storage_error", path.name, e.message))
                continue
            if existing is not None:
                report.notices.append(self._duplicate_notice(path, existing))
                continue
            pending.append((path, fingerprint))

        logger.info(
            f"Processing {len(pending)} files; catalog holds {len(self.catalog.get_all())} tasks"
        )
        for path, fingerprint in pending:
            try:
                task = await self._analyze_file(path, fingerprint)
                await self.catalog.add_tasks([task])
                stored = self.catalog.get_by_id(task.id)
                existing = None
                if stored is None:
                    existing = await self._find_existing(fingerprint)
            except AnalysisFailure as e:
                logger.error(f"Analysis failed for {path.name}: {e}")
                report.notices.append(UploadNotice(e.kind, path.name, f"Analysis failed: {e.message}"))
                continue
            except StorageError as e:
                logger.error(f"Saving {path.name} failed: {e}")
                report.notices.append(UploadNotice("storage_error", path.name, e.message))
                continue

            if stored is not None:
                report.added.append(stored)
            elif existing is not None:
                # Another writer stored the same file while this one was analyzed
                report.notices.append(self._duplicate_notice(path, existing))
            else:
                report.notices.append(
                    UploadNotice("storage_error", path.name, f'"{path.name}" was not stored.')
                )
        return report

    async def _analyze_file(self, path: Path, fingerprint: str) -> TaskRecord:
        image_bytes = await asyncio.to_thread(path.read_bytes)
        mime_type = guess_mime(path)
        page_number = len(self.catalog.get_all()) + 1

        content = await retry_with_backoff(
            self.analyzer.analyze,
            image_bytes,
            page_number,
            mime_type,
            delays=self.retry_delays,
        )
        record = TaskRecord.from_content(
            content,
            id=new_task_id(),
            file_fingerprint=fingerprint,
        )
        preview = await asyncio.to_thread(make_preview, image_bytes)
        if preview:
            record = record.model_copy(update={"image_preview": preview})
        return record
