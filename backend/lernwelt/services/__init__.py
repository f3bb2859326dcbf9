"""Collaborators around the catalog: AI providers, uploads and speech."""

from .speech import AudioStatusTracker, SpeechService
from .uploads import UploadNotice, UploadPipeline, UploadReport

__all__ = [
    "AudioStatusTracker",
    "SpeechService",
    "UploadNotice",
    "UploadPipeline",
    "UploadReport",
]
