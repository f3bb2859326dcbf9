"""
Error taxonomy shared by the storage layer and the AI collaborators.

Every error carries a machine-readable ``kind`` plus a human-readable
message so a thin UI layer can render a notice without inspecting types.
"""

from __future__ import annotations

from typing import Optional


class LernweltError(Exception):
    """Base class for all lernwelt errors."""

    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


# ==================== Storage ====================

class StorageError(LernweltError):
    """I/O failure in a backend adapter (disk, network, quota)."""

    kind = "storage_error"


class StorageUnavailable(StorageError):
    """Backend cannot be opened; callers fall back to a simpler adapter."""

    kind = "storage_unavailable"


class PersistenceFailure(StorageError):
    """A write did not reach durable storage."""

    kind = "persistence_failure"


class DuplicateFingerprint(StorageError):
    """Insert rejected because another record holds the same fingerprint."""

    kind = "duplicate_fingerprint"

    def __init__(
        self,
        fingerprint: str,
        existing_id: Optional[str] = None,
        existing_title: Optional[str] = None,
    ):
        label = existing_title or existing_id or "unknown"
        super().__init__(f"Fingerprint {fingerprint!r} already belongs to task {label!r}")
        self.fingerprint = fingerprint
        self.existing_id = existing_id
        self.existing_title = existing_title


# ==================== Collaborators ====================

class AnalysisFailure(LernweltError):
    """The analysis provider could not turn an image into a task."""

    kind = "analysis_failure"


class RateLimited(AnalysisFailure):
    """Provider quota exhausted (HTTP 429); retry with backoff."""

    kind = "rate_limited"


class SynthesisFailure(LernweltError):
    """The speech provider could not synthesize audio."""

    kind = "synthesis_failure"
