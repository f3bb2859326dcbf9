"""
Two-tier read-through audio cache.

Tier 1: bounded in-memory LRU (OrderedDict, most recent at the end).
Tier 2: the catalog's persistent audio storage on the active backend.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import TYPE_CHECKING, Iterable, Optional

from ..errors import StorageError
from .clip import AudioClip

if TYPE_CHECKING:
    from ..catalog.task_catalog import TaskCatalog

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 50


class AudioCache:
    """Strict LRU in front of durable audio storage."""

    def __init__(self, catalog: "TaskCatalog", capacity: int = DEFAULT_CAPACITY):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.catalog = catalog
        self.capacity = capacity
        self._memory: "OrderedDict[str, AudioClip]" = OrderedDict()
        catalog.on_remove(self.discard)

    def __len__(self) -> int:
        return len(self._memory)

    def contains(self, key: str) -> bool:
        """Tier 1 residency only."""
        return key in self._memory

    def discard(self, key: str) -> bool:
        """Drop a Tier 1 entry; returns whether it was resident."""
        return self._memory.pop(key, None) is not None

    def _put(self, key: str, clip: AudioClip) -> None:
        self._memory[key] = clip
        self._memory.move_to_end(key)
        while len(self._memory) > self.capacity:
            evicted, _ = self._memory.popitem(last=False)
            logger.debug("Audio cache evicted %s", evicted)

    async def get(self, key: str) -> Optional[AudioClip]:
        clip = self._memory.get(key)
        if clip is not None:
            self._memory.move_to_end(key)
            return clip

        clip = await self.catalog.get_audio(key)
        if clip is not None:
            self._put(key, clip)
        return clip

    async def set(self, key: str, clip: AudioClip) -> None:
        """Cache in memory; a failed durable write is logged and the clip stays usable."""
        self._put(key, clip)
        try:
            await self.catalog.save_audio(key, clip)
        except StorageError as e:
            logger.warning(f"Audio for {key} kept in memory only: {e}")

    async def clear_all(self) -> None:
        self._memory.clear()
        await self.catalog.clear_audio()

    async def preload(self, keys: Iterable[str]) -> int:
        """Warm Tier 1 for keys not yet resident; returns how many were loaded."""
        warmed = 0
        for key in keys:
            if key in self._memory:
                continue
            try:
                clip = await self.catalog.get_audio(key)
            except StorageError as e:
                logger.warning(f"Audio preload skipped {key}: {e}")
                continue
            if clip is not None:
                self._put(key, clip)
                warmed += 1
        return warmed
