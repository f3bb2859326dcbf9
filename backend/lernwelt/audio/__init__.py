"""Audio clips, the remote codec and the two-tier audio cache."""

from .cache import AudioCache
from .clip import DEFAULT_SAMPLE_RATE, AudioClip

__all__ = ["AudioCache", "AudioClip", "DEFAULT_SAMPLE_RATE"]
