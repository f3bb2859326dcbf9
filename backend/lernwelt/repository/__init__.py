"""
Storage backends behind one async TaskRepository contract.

Usage:
    from lernwelt.repository import RepositoryFactory

    factory = RepositoryFactory(config)
    repo = await factory.get_repository("sqlite")
    tasks = await repo.get_all()
"""

from .base import RepositoryType, TaskRepository
from .factory import RepositoryFactory
from .local_store import LocalObjectRepository
from .remote_repository import SupabaseRepository
from .sqlite_repository import SQLiteRepository

__all__ = [
    "RepositoryType",
    "TaskRepository",
    "RepositoryFactory",
    "LocalObjectRepository",
    "SQLiteRepository",
    "SupabaseRepository",
]
