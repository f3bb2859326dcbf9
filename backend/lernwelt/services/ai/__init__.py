"""
AI Services Module

Analysis and speech collaborators for the task catalog.
"""

from .backoff import retry_with_backoff
from .base import AnalysisProvider, SpeechProvider
from .gemini import GeminiProvider
from .mock_provider import MockProvider
from .parser import parse_task_content
from .prompts import build_narration, build_speech_prompt

__all__ = [
    # Base
    "AnalysisProvider",
    "SpeechProvider",
    # Providers
    "GeminiProvider",
    "MockProvider",
    "retry_with_backoff",
    # Prompts / parsing
    "build_narration",
    "build_speech_prompt",
    "parse_task_content",
]
