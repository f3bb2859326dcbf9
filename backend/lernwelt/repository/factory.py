"""
Repository factory - builds, initializes and caches the active backend.

The active handle is replaced, never mutated. When the requested backend
cannot be opened (StorageUnavailable) the factory falls back to the local
object store and records what was actually built in ``active_type``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Mapping, Optional, Union

from ..config import AppConfig
from ..errors import StorageUnavailable
from .base import RepositoryType, TaskRepository
from .local_store import LocalObjectRepository
from .remote_repository import SupabaseRepository
from .sqlite_repository import SQLiteRepository

logger = logging.getLogger(__name__)

Builder = Callable[[AppConfig], TaskRepository]


def _build_local(cfg: AppConfig) -> TaskRepository:
    return LocalObjectRepository(cfg.resolved_local_store_dir, sample_rate=cfg.audio_sample_rate)


def _build_sqlite(cfg: AppConfig) -> TaskRepository:
    return SQLiteRepository(cfg.resolved_sqlite_path, sample_rate=cfg.audio_sample_rate)


def _build_supabase(cfg: AppConfig) -> TaskRepository:
    return SupabaseRepository(
        cfg.supabase_url,
        cfg.supabase_key,
        bucket=cfg.supabase_bucket,
        sample_rate=cfg.audio_sample_rate,
    )


DEFAULT_BUILDERS: Dict[RepositoryType, Builder] = {
    RepositoryType.LOCAL: _build_local,
    RepositoryType.SQLITE: _build_sqlite,
    RepositoryType.SUPABASE: _build_supabase,
}


class RepositoryFactory:
    """Holds at most one active repository handle."""

    def __init__(
        self,
        config: AppConfig,
        builders: Optional[Mapping[RepositoryType, Builder]] = None,
    ):
        self.config = config
        self._builders: Dict[RepositoryType, Builder] = dict(DEFAULT_BUILDERS)
        if builders:
            self._builders.update(builders)

        self._repository: Optional[TaskRepository] = None
        # Type the caller asked for vs. type actually built (differs after fallback)
        self._requested_type: Optional[RepositoryType] = None
        self.active_type: Optional[RepositoryType] = None
        self._lock = asyncio.Lock()

    @property
    def repository(self) -> Optional[TaskRepository]:
        return self._repository

    @property
    def default_type(self) -> RepositoryType:
        return RepositoryType.parse(self.config.repository_type)

    async def get_repository(
        self,
        type: Union[str, RepositoryType, None] = None,
        force_new: bool = False,
    ) -> TaskRepository:
        """
        Return the active handle, building it when needed.

        A cached handle is reused only if it was requested with the same type
        and ``force_new`` is false.
        """
        requested = RepositoryType.parse(type) if type is not None else self.default_type

        async with self._lock:
            if (
                self._repository is not None
                and not force_new
                and self._requested_type == requested
            ):
                return self._repository

            try:
                repository = await self.create(requested)
            except StorageUnavailable as e:
                if requested == RepositoryType.LOCAL:
                    raise
                logger.warning(
                    "Repository %s unavailable (%s); falling back to local object store",
                    requested.value,
                    e,
                )
                repository = await self.create(RepositoryType.LOCAL)

            previous = self._repository
            self._repository = repository
            self._requested_type = requested
            self.active_type = repository.repository_type

        if previous is not None and previous is not repository:
            await previous.close()
        logger.info("Active repository: %s", self.active_type.value)
        return repository

    async def create(self, type: Union[str, RepositoryType]) -> TaskRepository:
        """Build and initialize a standalone adapter; the active handle is untouched."""
        repository_type = RepositoryType.parse(type)
        repository = self._builders[repository_type](self.config)
        await repository.init()
        return repository

    def reset(self) -> None:
        """Forget the active handle (it is not closed)."""
        self._repository = None
        self._requested_type = None
        self.active_type = None

    async def aclose(self) -> None:
        """Close and forget the active handle."""
        repository = self._repository
        self.reset()
        if repository is not None:
            await repository.close()
