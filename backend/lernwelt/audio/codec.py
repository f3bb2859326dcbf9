"""
Lossy Ogg/Vorbis codec for clips stored in remote object storage.

Encoding and decoding process bounded chunks and yield to the event loop
between chunks so long clips never stall other coroutines.
"""

from __future__ import annotations

import asyncio
import io
import logging

import numpy as np
import soundfile as sf

from ..errors import PersistenceFailure
from .clip import AudioClip

logger = logging.getLogger(__name__)

CHUNK_FRAMES = 16384
CONTENT_TYPE = "audio/ogg"
EXTENSION = "ogg"


async def encode_clip(clip: AudioClip, *, chunk_frames: int = CHUNK_FRAMES) -> bytes:
    """Encode a clip to Ogg/Vorbis bytes."""
    buf = io.BytesIO()
    try:
        with sf.SoundFile(
            buf,
            mode="w",
            samplerate=clip.sample_rate,
            channels=1,
            format="OGG",
            subtype="VORBIS",
        ) as out:
            samples = clip.samples
            for start in range(0, len(samples), chunk_frames):
                out.write(samples[start:start + chunk_frames])
                await asyncio.sleep(0)
    except RuntimeError as e:
        raise PersistenceFailure(f"Audio encoding failed: {e}") from e
    return buf.getvalue()


async def decode_clip(data: bytes, *, chunk_frames: int = CHUNK_FRAMES) -> AudioClip:
    """Decode Ogg/Vorbis bytes back to float32 PCM (downmixed to mono)."""
    parts = []
    try:
        with sf.SoundFile(io.BytesIO(data), mode="r") as src:
            sample_rate = src.samplerate
            for block in src.blocks(blocksize=chunk_frames, dtype="float32", always_2d=True):
                parts.append(block.mean(axis=1))
                await asyncio.sleep(0)
    except RuntimeError as e:
        raise PersistenceFailure(f"Audio decoding failed: {e}") from e

    samples = np.concatenate(parts) if parts else np.zeros(0, dtype=np.float32)
    logger.debug("Decoded %d frames at %d Hz", samples.shape[0], sample_rate)
    return AudioClip(samples, sample_rate=sample_rate)
