"""
File fingerprints for upload deduplication.

Format: ``<name>-<size>-<mtime_ms>-<mime>``. Cheap to compute and stable for
the same file picked twice, which is all the dedup check needs.
"""

import mimetypes
from pathlib import Path
from typing import Optional


def guess_mime(path: Path) -> str:
    mime, _ = mimetypes.guess_type(path.name)
    return mime or "application/octet-stream"


def make_fingerprint(name: str, size: int, modified_ms: int, mime: str) -> str:
    return f"{name}-{size}-{modified_ms}-{mime}"


def file_fingerprint(path: Path, mime: Optional[str] = None) -> str:
    """Fingerprint of a file on disk."""
    path = Path(path)
    stat = path.stat()
    return make_fingerprint(
        path.name,
        stat.st_size,
        int(stat.st_mtime * 1000),
        mime or guess_mime(path),
    )
