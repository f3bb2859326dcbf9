"""
AI provider protocols.

Two collaborators sit next to the storage core:
- AnalysisProvider turns a textbook page image into TaskContent
- SpeechProvider turns narration text into an AudioClip

Implementations raise AnalysisFailure (RateLimited for HTTP 429) or
SynthesisFailure; callers apply retry_with_backoff for rate limits.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from ...audio.clip import AudioClip
from ...db.schema import TaskContent


@runtime_checkable
class AnalysisProvider(Protocol):
    """Image analysis collaborator."""

    async def analyze(
        self,
        image_bytes: bytes,
        page_number: int,
        mime_type: str = "image/jpeg",
    ) -> TaskContent:
        """
        Extract structured task content from one page image.

        Raises:
            AnalysisFailure: provider error (RateLimited on HTTP 429)
        """
        ...


@runtime_checkable
class SpeechProvider(Protocol):
    """Text-to-speech collaborator."""

    async def synthesize(self, text: str, cache_key: str) -> AudioClip:
        """
        Synthesize mono PCM for ``text``.

        Raises:
            SynthesisFailure: provider error or empty audio
        """
        ...
