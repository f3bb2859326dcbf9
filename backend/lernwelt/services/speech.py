"""
Speech service - narration audio through the two-tier audio cache.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, Optional

from ..audio.cache import AudioCache
from ..audio.clip import AudioClip
from ..db.schema import TaskRecord
from ..errors import LernweltError, SynthesisFailure
from .ai.base import SpeechProvider
from .ai.prompts import build_narration

logger = logging.getLogger(__name__)

READY = "ready"
MISSING = "missing"
LOADING = "loading"
ERROR = "error"


class SpeechService:
    """Read-through synthesis: cache first, provider on miss."""

    def __init__(self, cache: AudioCache, provider: SpeechProvider):
        self.cache = cache
        self.provider = provider

    async def speak(self, task: TaskRecord) -> AudioClip:
        return await self.speak_text(build_narration(task), task.id)

    async def speak_text(self, text: str, cache_key: str) -> AudioClip:
        cached = await self.cache.get(cache_key)
        if cached is not None:
            return cached

        if not text.strip():
            raise SynthesisFailure(f"Nothing to narrate for {cache_key}")
        clip = await self.provider.synthesize(text, cache_key)
        await self.cache.set(cache_key, clip)
        return clip


class AudioStatusTracker:
    """Per-task audio status: ready, missing, loading or error."""

    def __init__(self, speech: SpeechService, *, pause: float = 0.5):
        self.speech = speech
        self.pause = pause
        self.statuses: Dict[str, str] = {}

    def status(self, task_id: str) -> Optional[str]:
        return self.statuses.get(task_id)

    async def check(self, tasks: Iterable[TaskRecord]) -> Dict[str, str]:
        """Refresh statuses; a task being generated stays loading."""
        updated: Dict[str, str] = {}
        for task in tasks:
            clip = await self.speech.cache.get(task.id)
            if clip is not None:
                updated[task.id] = READY
            elif self.statuses.get(task.id) == LOADING:
                updated[task.id] = LOADING
            else:
                updated[task.id] = MISSING
        self.statuses = updated
        return dict(updated)

    async def generate(self, task: TaskRecord) -> str:
        self.statuses[task.id] = LOADING
        try:
            await self.speech.speak(task)
        except LernweltError as e:
            logger.error(f"Audio generation failed for {task.id}: {e}")
            self.statuses[task.id] = ERROR
        else:
            self.statuses[task.id] = READY
        return self.statuses[task.id]

    async def generate_missing(self, tasks: Iterable[TaskRecord]) -> int:
        """Generate audio for every task not ready; returns how many succeeded."""
        generated = 0
        for task in tasks:
            if self.statuses.get(task.id) == READY:
                continue
            if await self.generate(task) == READY:
                generated += 1
            await asyncio.sleep(self.pause)
        return generated
