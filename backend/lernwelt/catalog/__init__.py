"""Task catalog: cached, deduplicated view over the active repository."""

from .display_id import build_prefix, next_display_id
from .fingerprint import file_fingerprint, make_fingerprint
from .task_catalog import MIGRATION_FLAG, TaskCatalog

__all__ = [
    "TaskCatalog",
    "MIGRATION_FLAG",
    "build_prefix",
    "next_display_id",
    "file_fingerprint",
    "make_fingerprint",
]
