"""
Task catalog tests - dedup, display IDs, sweep, migration, cache/backend convergence.

Runs against the local object store and SQLite.
"""

import pytest
import pytest_asyncio

from lernwelt.catalog.task_catalog import MIGRATION_FLAG, MIGRATION_STARTED, TaskCatalog
from lernwelt.db.schema import FilterOptions
from lernwelt.errors import PersistenceFailure
from lernwelt.repository.base import RepositoryType
from lernwelt.repository.factory import RepositoryFactory
from lernwelt.repository.local_store import LocalObjectRepository

from .conftest import make_clip, make_task


@pytest_asyncio.fixture(params=["local", "sqlite"])
async def catalog(request, factory):
    c = TaskCatalog(factory, repository_type=request.param)
    await c.load()
    yield c
    c.reset()


async def test_load_binds_repository(factory):
    c = TaskCatalog(factory, repository_type="local")
    assert not c.is_bound
    assert await c.load() == []
    assert c.is_bound
    assert c.repository.repository_type == RepositoryType.LOCAL


async def test_display_ids_and_unique_grades_after_delete(catalog):
    await catalog.add_tasks([make_task("t1", fingerprint="f1")])
    await catalog.add_tasks([make_task("t2", fingerprint="f2")])

    assert catalog.get_by_id("t1").display_id == "K2_MAT_1"
    assert catalog.get_by_id("t2").display_id == "K2_MAT_2"

    await catalog.remove_task("t1")
    assert catalog.get_unique_grades() == ["Klasse 2"]
    assert [t.id for t in catalog.get_all()] == ["t2"]


async def test_display_ids_within_one_batch(catalog):
    tasks = [make_task(f"t{i}", fingerprint=f"f{i}") for i in range(3)]
    tasks.append(make_task("d1", fingerprint="fd", subject="Deutsch"))
    await catalog.add_tasks(tasks)

    ids = {t.id: t.display_id for t in catalog.get_all()}
    assert [ids["t0"], ids["t1"], ids["t2"]] == ["K2_MAT_1", "K2_MAT_2", "K2_MAT_3"]
    assert ids["d1"] == "K2_DEU_1"


async def test_existing_display_id_kept(catalog):
    await catalog.add_tasks([make_task("t1", display_id="K2_MAT_9")])
    assert catalog.get_by_id("t1").display_id == "K2_MAT_9"
    stored = await catalog.repository.get_by_id("t1")
    assert stored.display_id == "K2_MAT_9"


async def test_intra_batch_duplicate_dropped(catalog):
    result = await catalog.add_tasks(
        [make_task("a", fingerprint="X"), make_task("b", fingerprint="X")]
    )
    assert [t.id for t in result] == ["a"]
    assert len(await catalog.repository.get_all()) == 1


async def test_duplicate_of_cached_record_dropped(catalog):
    await catalog.add_tasks([make_task("a", fingerprint="X")])
    await catalog.add_tasks([make_task("b", fingerprint="X")])
    assert [t.id for t in catalog.get_all()] == ["a"]


async def test_duplicate_of_backend_record_dropped(catalog):
    # Written behind the catalog's back, so only the backend knows it
    await catalog.repository.save(make_task("a", fingerprint="X"))
    await catalog.add_tasks([make_task("b", fingerprint="X")])
    assert catalog.get_by_fingerprint("X") is None
    assert (await catalog.repository.find_by_fingerprint("X")).id == "a"


async def test_clear_only_test_data(catalog):
    await catalog.add_tasks([make_task("real"), make_task("mock", is_test_data=True)])
    result = await catalog.clear(only_test_data=True)
    assert [t.id for t in result] == ["real"]
    assert len(catalog.get_all()) == 1


async def test_clear_reloads_from_backend(catalog):
    await catalog.add_tasks([make_task("a")])
    # Record the cache does not know about
    await catalog.repository.save(make_task("outside", is_test_data=False))
    await catalog.add_tasks([make_task("mock", is_test_data=True)])

    result = await catalog.clear(only_test_data=True)
    assert {t.id for t in result} == {"a", "outside"}
    assert [t.id for t in result] == [t.id for t in await catalog.repository.get_all()]


async def test_delete_then_reupload(catalog):
    await catalog.add_tasks([make_task("old", fingerprint="page.jpg-1-2-image/jpeg")])
    await catalog.remove_task("old")
    await catalog.add_tasks([make_task("new", fingerprint="page.jpg-1-2-image/jpeg")])

    assert catalog.get_by_fingerprint("page.jpg-1-2-image/jpeg").id == "new"
    assert catalog.get_by_id("old") is None
    found = await catalog.repository.find_by_fingerprint("page.jpg-1-2-image/jpeg")
    assert found.id == "new"


async def test_remove_unknown_id_returns_cache(catalog):
    await catalog.add_tasks([make_task("a")])
    result = await catalog.remove_task("ghost")
    assert [t.id for t in result] == ["a"]


async def test_cache_sorted_newest_first(catalog):
    await catalog.add_tasks([make_task("old", timestamp=1)])
    await catalog.add_tasks([make_task("new", timestamp=3), make_task("mid", timestamp=2)])
    assert [t.id for t in catalog.get_all()] == ["new", "mid", "old"]


async def test_order_preserved_after_reload(catalog, factory):
    await catalog.add_tasks([make_task("t1", steps=["A", "B", "C"])])
    catalog.reset()
    await catalog.load()
    assert [s.title_de for s in catalog.get_by_id("t1").steps] == ["A", "B", "C"]


async def test_local_and_backend_filters(catalog):
    await catalog.add_tasks([
        make_task("a", subject="Mathematik", sub_subject="Addition"),
        make_task("b", subject="Deutsch", sub_subject="Grammatik"),
    ])
    options = FilterOptions(grade="Klasse 2", subject="Deutsch")
    assert [t.id for t in catalog.filter_local(options)] == ["b"]
    assert [t.id for t in await catalog.filter(options)] == ["b"]
    assert catalog.get_unique_subjects("Klasse 2") == ["Deutsch", "Mathematik"]
    assert catalog.get_unique_sub_subjects("Klasse 2", "Deutsch") == ["Grammatik"]


async def test_audio_pass_through_loads_lazily(factory):
    c = TaskCatalog(factory, repository_type="sqlite")
    assert await c.get_audio("x") is None
    assert c.is_bound

    await c.add_tasks([make_task("t1")])
    await c.save_audio("t1", make_clip())
    assert await c.get_audio("t1") is not None
    await c.delete_audio("t1")
    assert await c.get_audio("t1") is None


async def test_startup_sweep_removes_duplicates(app_config, tmp_path):
    # Simulate drift: two files claiming the same fingerprint
    factory = RepositoryFactory(app_config)
    try:
        repo = await factory.get_repository("local")
        await repo.save(make_task("older", fingerprint="dup", timestamp=1000))
        await repo.save(make_task("newer", fingerprint="other", timestamp=2000))
        drifted = make_task("newer", fingerprint="dup", timestamp=2000)
        (repo.base_dir / "tasks" / "newer.json").write_text(drifted.model_dump_json())
        (repo.base_dir / "manifest.json").unlink()
        repo = await factory.get_repository("local", force_new=True)
        assert len(await repo.get_all()) == 2

        c = TaskCatalog(factory, repository_type="local")
        tasks = await c.load()

        assert [t.id for t in tasks] == ["newer"]
        assert [t.id for t in await repo.get_all()] == ["newer"]
    finally:
        await factory.aclose()


async def test_cold_migration_copies_records_and_audio(factory):
    legacy = await factory.create("local")
    await legacy.save(make_task("t1", fingerprint="f1", timestamp=1000, display_id="K2_MAT_1"))
    await legacy.save(make_task("t2", fingerprint="f2", timestamp=2000, display_id="K2_MAT_2"))
    await legacy.save_audio("t1", make_clip())
    await legacy.close()

    c = TaskCatalog(factory, repository_type="sqlite", legacy_type="local")
    tasks = await c.load()

    assert [t.id for t in tasks] == ["t2", "t1"]
    assert await c.get_audio("t1") is not None
    assert await c.repository.get_meta(MIGRATION_FLAG) == "true"

    # Flag set: a second load does not copy again even after the store empties
    await c.clear()
    c.reset()
    assert await c.load() == []


async def test_cold_migration_with_empty_legacy_sets_flag(factory):
    c = TaskCatalog(factory, repository_type="sqlite", legacy_type="local")
    assert await c.load() == []
    assert await c.repository.get_meta(MIGRATION_FLAG) == "true"


async def test_cold_migration_skipped_when_active_has_data(factory):
    legacy = await factory.create("local")
    await legacy.save(make_task("legacy"))
    await legacy.close()

    active = await factory.get_repository("sqlite")
    await active.save(make_task("current"))

    c = TaskCatalog(factory, repository_type="sqlite", legacy_type="local")
    tasks = await c.load()
    assert [t.id for t in tasks] == ["current"]


async def test_cold_migration_failure_is_retried(factory, fake_supabase):
    fake_supabase.offline = True
    c = TaskCatalog(factory, repository_type="sqlite", legacy_type="supabase")
    assert await c.load() == []
    assert await c.repository.get_meta(MIGRATION_FLAG) is None

    fake_supabase.offline = False
    remote = await factory.create("supabase")
    await remote.save(make_task("from-remote"))
    await remote.close()

    c.reset()
    tasks = await c.load()
    assert [t.id for t in tasks] == ["from-remote"]
    assert await c.repository.get_meta(MIGRATION_FLAG) == "true"


class FlakyAudioStore(LocalObjectRepository):
    """Local store whose audio reads fail a set number of times."""

    failures = 0

    async def get_audio(self, key):
        if FlakyAudioStore.failures:
            FlakyAudioStore.failures -= 1
            raise PersistenceFailure("disk hiccup")
        return await super().get_audio(key)


async def test_interrupted_migration_resumes_on_next_load(app_config):
    seed = LocalObjectRepository(app_config.resolved_local_store_dir)
    await seed.init()
    await seed.save(make_task("t1", fingerprint="f1", timestamp=1000))
    await seed.save(make_task("t2", fingerprint="f2", timestamp=2000))
    await seed.save_audio("t1", make_clip())
    await seed.close()

    FlakyAudioStore.failures = 1
    factory = RepositoryFactory(
        app_config,
        builders={RepositoryType.LOCAL: lambda cfg: FlakyAudioStore(cfg.resolved_local_store_dir)},
    )
    try:
        c = TaskCatalog(factory, repository_type="sqlite", legacy_type="local")
        partial = await c.load()
        assert [t.id for t in partial] == ["t1"]
        assert await c.repository.get_meta(MIGRATION_FLAG) is None
        assert await c.repository.get_meta(MIGRATION_STARTED) == "true"

        c.reset()
        tasks = await c.load()
        assert [t.id for t in tasks] == ["t2", "t1"]
        assert await c.get_audio("t1") is not None
        assert await c.repository.get_meta(MIGRATION_FLAG) == "true"
    finally:
        FlakyAudioStore.failures = 0
        await factory.aclose()


async def test_migration_skips_unreadable_legacy_record(factory):
    legacy = await factory.create("local")
    await legacy.save(make_task("t1", fingerprint="f1", timestamp=1000))
    await legacy.save(make_task("t2", fingerprint="f2", timestamp=2000))
    (legacy.base_dir / "tasks" / "t1.json").write_text("{not json", encoding="utf-8")
    await legacy.close()

    c = TaskCatalog(factory, repository_type="sqlite", legacy_type="local")
    tasks = await c.load()

    assert [t.id for t in tasks] == ["t2"]
    assert await c.repository.get_meta(MIGRATION_FLAG) == "true"


async def test_resumed_migration_skips_fingerprint_conflicts(factory):
    legacy = await factory.create("local")
    await legacy.save(make_task("t1", fingerprint="f1", timestamp=1000))
    await legacy.save(make_task("t2", fingerprint="f2", timestamp=2000))
    await legacy.close()

    active = await factory.get_repository("sqlite")
    await active.set_meta(MIGRATION_STARTED, "true")
    await active.save(make_task("other", fingerprint="f1", timestamp=500))

    c = TaskCatalog(factory, repository_type="sqlite", legacy_type="local")
    tasks = await c.load()

    assert [t.id for t in tasks] == ["t2", "other"]
    assert await c.repository.get_meta(MIGRATION_FLAG) == "true"


@pytest.mark.parametrize("repository_type", ["local", "sqlite"])
async def test_reset_returns_to_unbound(factory, repository_type):
    c = TaskCatalog(factory, repository_type=repository_type)
    await c.add_tasks([make_task("a")])
    c.reset()
    assert not c.is_bound
    assert c.get_all() == []
