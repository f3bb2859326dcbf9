"""
lernwelt - persistence and deduplication layer of a homework assistant.

Tasks extracted from textbook pages are stored behind one async repository
contract (local files, SQLite or Supabase), deduplicated by file fingerprint
and cached by the TaskCatalog; narration audio goes through AudioCache.
"""

__version__ = "0.1.0"
