"""
Repository factory tests - caching, replacement and fallback.
"""

import pytest

from lernwelt.errors import StorageUnavailable
from lernwelt.repository.base import RepositoryType
from lernwelt.repository.factory import RepositoryFactory
from lernwelt.repository.local_store import LocalObjectRepository
from lernwelt.repository.remote_repository import SupabaseRepository
from lernwelt.repository.sqlite_repository import SQLiteRepository


async def test_default_type_from_config(factory):
    repo = await factory.get_repository()
    assert isinstance(repo, SQLiteRepository)
    assert factory.active_type == RepositoryType.SQLITE


async def test_cached_handle_reused(factory):
    first = await factory.get_repository("sqlite")
    second = await factory.get_repository("sqlite")
    assert first is second


async def test_force_new_replaces_handle(factory):
    first = await factory.get_repository("local")
    second = await factory.get_repository("local", force_new=True)
    assert first is not second
    assert factory.repository is second


async def test_type_change_replaces_handle(factory):
    await factory.get_repository("sqlite")
    repo = await factory.get_repository("supabase")
    assert isinstance(repo, SupabaseRepository)
    assert factory.active_type == RepositoryType.SUPABASE


async def test_fallback_when_sqlite_cannot_open(app_config, tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    app_config.sqlite_path = blocker / "lernwelt.sqlite3"
    factory = RepositoryFactory(app_config)
    try:
        repo = await factory.get_repository("sqlite")
        assert isinstance(repo, LocalObjectRepository)
        assert factory.active_type == RepositoryType.LOCAL

        # Asking again for sqlite reuses the fallback handle
        assert await factory.get_repository("sqlite") is repo
    finally:
        await factory.aclose()


async def test_fallback_when_supabase_not_configured(app_config):
    factory = RepositoryFactory(app_config)
    try:
        repo = await factory.get_repository("supabase")
        assert isinstance(repo, LocalObjectRepository)
    finally:
        await factory.aclose()


async def test_fallback_when_supabase_offline(factory, fake_supabase):
    fake_supabase.offline = True
    repo = await factory.get_repository("supabase")
    assert repo.repository_type == RepositoryType.LOCAL


async def test_local_failure_is_not_masked(app_config, tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    app_config.local_store_dir = blocker / "objects"
    factory = RepositoryFactory(app_config)
    with pytest.raises(StorageUnavailable):
        await factory.get_repository("local")


async def test_create_does_not_touch_active_handle(factory):
    active = await factory.get_repository("sqlite")
    standalone = await factory.create("local")
    try:
        assert factory.repository is active
        assert isinstance(standalone, LocalObjectRepository)
    finally:
        await standalone.close()


async def test_reset_and_aclose(factory):
    await factory.get_repository("local")
    factory.reset()
    assert factory.repository is None
    assert factory.active_type is None

    await factory.get_repository("sqlite")
    await factory.aclose()
    assert factory.repository is None


async def test_unknown_type_rejected(factory):
    with pytest.raises(ValueError):
        await factory.get_repository("indexeddb")
